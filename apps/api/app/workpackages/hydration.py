from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from opentelemetry import trace
from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app import audit, events
from app.context import get_correlation_id
from app.metrics import observe_assembly
from app.workpackages.collateral import APPROVED
from app.workpackages.concurrency import claim_write, run_serialized
from app.workpackages.csv_rows import parse_rows
from app.workpackages.duration import DataQualityWarning, resolve_unit
from app.workpackages.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
    pydantic_error_details,
)
from app.workpackages.models import WorkPackage, WorkPackageItem, WorkPackagePhase
from app.workpackages.repository import TemplateCatalogRepository, WorkPackageRepository
from app.workpackages.scheduling import PhaseDueDateService
from app.workpackages.schemas import (
    INITIAL_ITEM_STATUS,
    AssemblyRequest,
    BlankAssemblyRequest,
    CloneAssemblyRequest,
    CsvAssemblyRequest,
    CsvRow,
    TemplatesAssemblyRequest,
)


logger = logging.getLogger("app.workpackages.hydration")
tracer = trace.get_tracer("app.workpackages.hydration")

DEFAULT_TITLE = "Untitled Work Package"
DEFAULT_CSV_TITLE = "Imported Work Package"

_assembly_request_adapter: TypeAdapter[Any] = TypeAdapter(AssemblyRequest)


@dataclass
class ItemSpec:
    deliverable_type: str
    deliverable_label: str
    deliverable_description: str | None
    quantity: int
    unit_of_measure: str
    estimated_hours_each: Decimal
    # None leaves an existing item's status alone.
    status: str | None = None
    row_index: int | None = None


@dataclass
class PhaseSpec:
    name: str
    position: int | None
    description: str | None = None
    items: list[ItemSpec] = field(default_factory=list)


@dataclass
class HydrationSummary:
    assembly_type: str
    phases_created: int = 0
    phases_updated: int = 0
    items_created: int = 0
    items_updated: int = 0
    total_estimated_hours: Decimal = Decimal("0")
    warnings: list[DataQualityWarning] = field(default_factory=list)


@dataclass
class HydrationResult:
    work_package: WorkPackage
    summary: HydrationSummary


def parse_assembly_request(payload: BaseModel | Mapping[str, Any]) -> Any:
    if isinstance(payload, BaseModel):
        return payload
    try:
        return _assembly_request_adapter.validate_python(payload)
    except PydanticValidationError as exc:
        raise ValidationError("invalid assembly request", details={"errors": pydantic_error_details(exc)}) from exc


def _unit(raw: str | None) -> str:
    cleaned = (raw or "").strip().lower()
    return resolve_unit(cleaned) or cleaned


def group_csv_rows(rows: list[CsvRow]) -> list[PhaseSpec]:
    """Group rows into phases by name, keeping first-seen order."""
    phases: dict[str, PhaseSpec] = {}
    label_types: dict[tuple[str, str], str] = {}
    for index, row in enumerate(rows):
        name = row.phase_name.strip()
        spec = phases.get(name)
        if spec is None:
            spec = PhaseSpec(name=name, position=row.phase_position, description=row.phase_description)
            phases[name] = spec
        else:
            if row.phase_position is not None:
                if spec.position is not None and spec.position != row.phase_position:
                    raise ConflictError(
                        f"phase '{name}' appears with positions {spec.position} and {row.phase_position}",
                        details={"row_index": index, "phase_name": name},
                    )
                spec.position = row.phase_position
            if spec.description is None and row.phase_description:
                spec.description = row.phase_description

        label = row.deliverable_label.strip()
        seen_type = label_types.get((name, label))
        if seen_type is not None and seen_type != row.deliverable_type:
            raise ConflictError(
                f"deliverable '{label}' is claimed as both {seen_type} and {row.deliverable_type}",
                details={"row_index": index, "phase_name": name, "deliverable_label": label},
            )
        label_types[(name, label)] = row.deliverable_type

        item = ItemSpec(
            deliverable_type=row.deliverable_type,
            deliverable_label=label,
            deliverable_description=row.deliverable_description,
            quantity=row.quantity,
            unit_of_measure=_unit(row.unit_of_measure),
            estimated_hours_each=row.estimated_hours_each,
            status=row.status if "status" in row.model_fields_set else None,
            row_index=index,
        )
        # A repeated label within one file overrides the earlier row.
        spec.items = [existing for existing in spec.items if existing.deliverable_label != label]
        spec.items.append(item)
    return list(phases.values())


def validate_structure(phases: list[PhaseSpec]) -> None:
    """Positions unique and present, labels unique per phase."""
    seen_positions: set[int] = set()
    for phase in phases:
        if not phase.name.strip():
            raise ValidationError("phase name is required")
        if phase.position is None or phase.position < 1:
            raise ValidationError(f"phase '{phase.name}' needs a position >= 1")
        if phase.position in seen_positions:
            raise ValidationError(
                f"phase position {phase.position} is used more than once",
                details={"position": phase.position},
            )
        seen_positions.add(phase.position)
        labels: set[str] = set()
        for item in phase.items:
            if item.deliverable_label in labels:
                raise ValidationError(
                    f"deliverable label '{item.deliverable_label}' repeats in phase '{phase.name}'",
                    details={"phase_name": phase.name, "deliverable_label": item.deliverable_label},
                )
            labels.add(item.deliverable_label)


@dataclass
class HydrationService:
    scheduler: PhaseDueDateService = field(default_factory=PhaseDueDateService)
    repository: WorkPackageRepository = field(default_factory=WorkPackageRepository)
    catalog: TemplateCatalogRepository = field(default_factory=TemplateCatalogRepository)

    def assemble(
        self,
        session: Session,
        payload: BaseModel | Mapping[str, Any],
        *,
        actor_user_id: str,
    ) -> HydrationResult:
        request = parse_assembly_request(payload)
        assembly_type = request.assembly_type
        started = time.perf_counter()

        with tracer.start_as_current_span("workpackage.assemble") as span:
            span.set_attribute("assembly_type", assembly_type)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                work_package_id, summary = run_serialized(session, lambda: self._assemble_once(session, request))
            except Exception:
                span.set_attribute("outcome", "error")
                observe_assembly(assembly_type, "error", time.perf_counter() - started)
                raise
            span.set_attribute("outcome", "success")
            span.set_attribute("work_package_id", str(work_package_id))

        duration = time.perf_counter() - started
        observe_assembly(assembly_type, "success", duration)
        work_package = self.repository.get(session, work_package_id)
        logger.info(
            "workpackage.assembled",
            extra={
                "work_package_id": str(work_package_id),
                "assembly_type": assembly_type,
                "phases_created": summary.phases_created,
                "items_created": summary.items_created,
                "duration_ms": round(duration * 1000, 2),
            },
        )
        audit.record(
            actor_user_id=actor_user_id,
            entity_type="work_package",
            entity_id=str(work_package_id),
            action="assemble",
            before=None,
            after={
                "assembly_type": assembly_type,
                "title": work_package.title,
                "contact_id": str(work_package.contact_id),
                "company_id": str(work_package.company_id) if work_package.company_id else None,
                "phases": summary.phases_created,
                "items": summary.items_created,
            },
        )
        events.publish(
            "workpackage.assembled",
            actor_user_id=actor_user_id,
            payload={
                "work_package_id": str(work_package_id),
                "assembly_type": assembly_type,
                "total_estimated_hours": str(summary.total_estimated_hours),
            },
        )
        return HydrationResult(work_package=work_package, summary=summary)

    def import_csv(
        self,
        session: Session,
        work_package_id: uuid.UUID,
        *,
        rows: Iterable[Mapping[str, Any]] | None = None,
        csv_text: str | None = None,
        actor_user_id: str,
    ) -> HydrationResult:
        """Merge CSV rows into an existing work package; all rows land or none do."""
        parsed = parse_rows(rows, csv_text)
        specs = group_csv_rows(parsed)
        started = time.perf_counter()

        def operation() -> HydrationSummary:
            work_package = self.repository.get(session, work_package_id)
            claim_write(session, work_package)
            self._apply_proposal_fields(work_package, parsed[0])
            summary = HydrationSummary(assembly_type="csv")
            self._merge(session, work_package, specs, summary)
            self._finish(session, work_package, summary, trigger="csv_import")
            return summary

        with tracer.start_as_current_span("workpackage.assemble") as span:
            span.set_attribute("assembly_type", "csv_import")
            span.set_attribute("correlation_id", get_correlation_id() or "")
            span.set_attribute("work_package_id", str(work_package_id))
            try:
                summary = run_serialized(session, operation)
            except Exception:
                span.set_attribute("outcome", "error")
                observe_assembly("csv_import", "error", time.perf_counter() - started)
                raise
            span.set_attribute("outcome", "success")

        duration = time.perf_counter() - started
        observe_assembly("csv_import", "success", duration)
        logger.info(
            "workpackage.csv_imported",
            extra={
                "work_package_id": str(work_package_id),
                "row_count": len(parsed),
                "phases_created": summary.phases_created,
                "items_created": summary.items_created,
                "items_updated": summary.items_updated,
                "duration_ms": round(duration * 1000, 2),
            },
        )
        audit.record(
            actor_user_id=actor_user_id,
            entity_type="work_package",
            entity_id=str(work_package_id),
            action="csv_import",
            before=None,
            after={
                "rows": len(parsed),
                "phases_created": summary.phases_created,
                "phases_updated": summary.phases_updated,
                "items_created": summary.items_created,
                "items_updated": summary.items_updated,
            },
        )
        events.publish(
            "workpackage.csv_imported",
            actor_user_id=actor_user_id,
            payload={
                "work_package_id": str(work_package_id),
                "rows": len(parsed),
                "items_created": summary.items_created,
                "items_updated": summary.items_updated,
            },
        )
        return HydrationResult(work_package=self.repository.get(session, work_package_id), summary=summary)

    def _assemble_once(self, session: Session, request: Any) -> tuple[uuid.UUID, HydrationSummary]:
        contact = self.repository.ensure_contact(session, request.contact_id)
        company_id = request.company_id
        if company_id is not None:
            self.repository.ensure_company(session, company_id)
        else:
            company_id = contact.account_id

        title = request.title
        description = request.description
        total_cost = request.total_cost
        if isinstance(request, TemplatesAssemblyRequest):
            specs = self._template_specs(session, request)
            validate_structure(specs)
        elif isinstance(request, CsvAssemblyRequest):
            parsed = parse_rows(request.rows, request.csv_text)
            specs = group_csv_rows(parsed)
            first = parsed[0]
            title = title or first.proposal_description or DEFAULT_CSV_TITLE
            description = description if description is not None else first.proposal_description
            total_cost = total_cost if total_cost is not None else first.proposal_total_cost
        elif isinstance(request, CloneAssemblyRequest):
            source = self.repository.get(session, request.source_work_package_id)
            specs = self._clone_specs(source)
            title = title or source.title
            description = description if description is not None else source.description
            total_cost = total_cost if total_cost is not None else source.total_cost
        elif isinstance(request, BlankAssemblyRequest):
            specs = [
                PhaseSpec(
                    name=phase.name.strip(),
                    position=phase.position,
                    description=phase.description,
                    items=[
                        ItemSpec(
                            deliverable_type=item.deliverable_type,
                            deliverable_label=item.deliverable_label.strip(),
                            deliverable_description=item.deliverable_description,
                            quantity=item.quantity,
                            unit_of_measure=_unit(item.unit_of_measure),
                            estimated_hours_each=item.estimated_hours_each,
                            status=item.status,
                        )
                        for item in phase.items
                    ],
                )
                for phase in request.phases
            ]
            validate_structure(specs)
        else:
            raise ValidationError(f"unsupported assembly type '{request.assembly_type}'")

        work_package = WorkPackage(
            id=uuid.uuid4(),
            contact_id=contact.id,
            company_id=company_id,
            title=title or DEFAULT_TITLE,
            description=description,
            total_cost=total_cost,
            effective_start_date=request.effective_start_date,
            status="draft",
            row_version=1,
        )
        session.add(work_package)
        summary = HydrationSummary(assembly_type=request.assembly_type)
        self._merge(session, work_package, specs, summary)
        self._finish(session, work_package, summary, trigger="assembly")
        return work_package.id, summary

    def _template_specs(self, session: Session, request: TemplatesAssemblyRequest) -> list[PhaseSpec]:
        phase_templates = self.catalog.phase_templates(session, [phase.phase_template_id for phase in request.phases])
        refs = [ref for phase in request.phases for ref in phase.deliverables]
        by_id = self.catalog.deliverable_templates_by_id(
            session, [ref.deliverable_template_id for ref in refs if ref.deliverable_template_id is not None]
        )
        by_type = self.catalog.deliverable_templates_by_type(
            session, [ref.deliverable_type for ref in refs if ref.deliverable_template_id is None and ref.deliverable_type]
        )

        specs: list[PhaseSpec] = []
        for phase_ref in request.phases:
            phase_template = phase_templates.get(phase_ref.phase_template_id)
            if phase_template is None:
                raise NotFoundError("phase template", phase_ref.phase_template_id)
            spec = PhaseSpec(
                name=(phase_ref.name or phase_template.name).strip(),
                position=phase_ref.position,
                description=phase_ref.description if phase_ref.description is not None else phase_template.description,
            )
            for ref in phase_ref.deliverables:
                if ref.deliverable_template_id is not None:
                    template = by_id.get(ref.deliverable_template_id)
                    if template is None:
                        raise NotFoundError("deliverable template", ref.deliverable_template_id)
                else:
                    template = by_type.get(ref.deliverable_type or "")
                    if template is None:
                        raise NotFoundError("deliverable template", ref.deliverable_type)
                # Values are copied so later template edits never reach this package.
                spec.items.append(
                    ItemSpec(
                        deliverable_type=template.deliverable_type,
                        deliverable_label=(ref.deliverable_label or template.deliverable_label).strip(),
                        deliverable_description=(
                            ref.deliverable_description
                            if ref.deliverable_description is not None
                            else template.description
                        ),
                        quantity=ref.quantity if ref.quantity is not None else template.default_quantity,
                        unit_of_measure=_unit(ref.unit_of_measure or template.default_unit_of_measure),
                        estimated_hours_each=(
                            ref.estimated_hours_each
                            if ref.estimated_hours_each is not None
                            else template.default_estimated_hours_each
                        ),
                    )
                )
            specs.append(spec)
        return specs

    @staticmethod
    def _clone_specs(source: WorkPackage) -> list[PhaseSpec]:
        return [
            PhaseSpec(
                name=phase.name,
                position=phase.position,
                description=phase.description,
                items=[
                    ItemSpec(
                        deliverable_type=item.deliverable_type,
                        deliverable_label=item.deliverable_label,
                        deliverable_description=item.deliverable_description,
                        quantity=item.quantity,
                        unit_of_measure=item.unit_of_measure,
                        estimated_hours_each=item.estimated_hours_each,
                        status=INITIAL_ITEM_STATUS,
                    )
                    for item in phase.items
                ],
            )
            for phase in sorted(source.phases, key=lambda phase: phase.position)
        ]

    @staticmethod
    def _apply_proposal_fields(work_package: WorkPackage, first_row: CsvRow) -> None:
        if first_row.proposal_description is not None:
            work_package.description = first_row.proposal_description
        if first_row.proposal_total_cost is not None:
            work_package.total_cost = first_row.proposal_total_cost

    def _merge(
        self,
        session: Session,
        work_package: WorkPackage,
        specs: list[PhaseSpec],
        summary: HydrationSummary,
    ) -> None:
        """Upsert phases by (name, position) and items by (phase, label)."""
        by_identity: dict[tuple[str, int], WorkPackagePhase] = {}
        by_position: dict[int, WorkPackagePhase] = {}
        by_name: dict[str, WorkPackagePhase] = {}
        for phase in sorted(work_package.phases, key=lambda existing: existing.position):
            by_identity[(phase.name, phase.position)] = phase
            by_position[phase.position] = phase
            by_name.setdefault(phase.name, phase)

        next_position = max(by_position, default=0) + 1
        explicit = {spec.position for spec in specs if spec.position is not None}
        touched_phases: set[uuid.UUID] = set()

        for spec in specs:
            position = spec.position
            if position is None:
                named = by_name.get(spec.name)
                if named is not None:
                    position = named.position
                else:
                    while next_position in by_position or next_position in explicit:
                        next_position += 1
                    position = next_position
                    next_position += 1

            phase = by_identity.get((spec.name, position))
            if phase is None:
                occupant = by_position.get(position)
                if occupant is not None:
                    raise ConflictError(
                        f"position {position} is already taken by phase '{occupant.name}'",
                        details={"phase_name": spec.name, "position": position},
                    )
                phase = WorkPackagePhase(
                    id=uuid.uuid4(),
                    name=spec.name,
                    position=position,
                    description=spec.description,
                    total_estimated_hours=Decimal("0"),
                    phase_total_duration=0,
                    status="not_started",
                )
                work_package.phases.append(phase)
                by_identity[(spec.name, position)] = phase
                by_position[position] = phase
                by_name.setdefault(spec.name, phase)
                summary.phases_created += 1
                touched_phases.add(phase.id)
            else:
                if spec.description is not None:
                    phase.description = spec.description
                if phase.id not in touched_phases:
                    summary.phases_updated += 1
                    touched_phases.add(phase.id)

            self._merge_items(session, work_package, phase, spec.items, summary)

    def _merge_items(
        self,
        session: Session,
        work_package: WorkPackage,
        phase: WorkPackagePhase,
        specs: list[ItemSpec],
        summary: HydrationSummary,
    ) -> None:
        by_label = {item.deliverable_label: item for item in phase.items}
        for spec in specs:
            item = by_label.get(spec.deliverable_label)
            if item is None:
                item = WorkPackageItem(
                    id=uuid.uuid4(),
                    work_package_id=work_package.id,
                    deliverable_type=spec.deliverable_type,
                    deliverable_label=spec.deliverable_label,
                    deliverable_description=spec.deliverable_description,
                    quantity=spec.quantity,
                    unit_of_measure=spec.unit_of_measure,
                    estimated_hours_each=spec.estimated_hours_each,
                    status=spec.status or INITIAL_ITEM_STATUS,
                )
                phase.items.append(item)
                by_label[spec.deliverable_label] = item
                summary.items_created += 1
                continue

            if item.deliverable_type != spec.deliverable_type:
                details: dict[str, Any] = {
                    "phase_name": phase.name,
                    "deliverable_label": spec.deliverable_label,
                    "existing_type": item.deliverable_type,
                    "incoming_type": spec.deliverable_type,
                }
                if spec.row_index is not None:
                    details["row_index"] = spec.row_index
                raise ConflictError(
                    f"deliverable '{spec.deliverable_label}' already exists as {item.deliverable_type}",
                    details=details,
                )
            if spec.deliverable_description is not None:
                item.deliverable_description = spec.deliverable_description
            item.quantity = spec.quantity
            item.unit_of_measure = spec.unit_of_measure
            item.estimated_hours_each = spec.estimated_hours_each
            if spec.status is not None:
                if spec.status == APPROVED and item.status != APPROVED:
                    self._require_approved_collateral(session, phase, item, spec)
                item.status = spec.status
            summary.items_updated += 1

    def _require_approved_collateral(
        self,
        session: Session,
        phase: WorkPackagePhase,
        item: WorkPackageItem,
        spec: ItemSpec,
    ) -> None:
        pending = [status for status in self.repository.list_collateral_statuses(session, item.id) if status != APPROVED]
        if not pending:
            return
        details: dict[str, Any] = {
            "phase_name": phase.name,
            "deliverable_label": spec.deliverable_label,
            "pending_collateral": len(pending),
        }
        if spec.row_index is not None:
            details["row_index"] = spec.row_index
        raise ConflictError(
            f"deliverable '{spec.deliverable_label}' has collateral that is not yet approved",
            details=details,
        )

    def _finish(
        self,
        session: Session,
        work_package: WorkPackage,
        summary: HydrationSummary,
        *,
        trigger: str,
    ) -> None:
        summary.warnings = self.scheduler.recalculate_schedule(session, work_package, trigger=trigger)
        summary.total_estimated_hours = sum(
            (phase.total_estimated_hours for phase in work_package.phases),
            Decimal("0"),
        )


hydration_service = HydrationService()
