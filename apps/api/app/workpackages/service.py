from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from app import audit, events
from app.workpackages.collateral import APPROVED, CollateralStatusResult
from app.workpackages.concurrency import claim_write, run_serialized
from app.workpackages.hydration import HydrationResult, HydrationSummary
from app.workpackages.models import WorkPackage, WorkPackageItem, WorkPackagePhase
from app.workpackages.repository import WorkPackageRepository
from app.workpackages.schemas import (
    CollateralRead,
    CollateralStatusResultRead,
    DataQualityWarningRead,
    HydrationResultRead,
    HydrationSummaryRead,
    ItemRead,
    PhaseRead,
    ProgressRead,
    WorkPackageRead,
)


logger = logging.getLogger("app.workpackages.service")


def _percentage(completed: int, total: int) -> int:
    if total <= 0:
        return 0
    # Half-up rounding on non-negative integers.
    return (completed * 200 + total) // (2 * total)


def _progress(completed: int, total: int) -> ProgressRead:
    return ProgressRead(completed=completed, total=total, percentage=_percentage(completed, total))


def item_to_read(item: WorkPackageItem) -> ItemRead:
    approved = sum(1 for collateral in item.collateral if collateral.status == APPROVED)
    return ItemRead(
        id=item.id,
        work_package_id=item.work_package_id,
        phase_id=item.phase_id,
        deliverable_type=item.deliverable_type,
        deliverable_label=item.deliverable_label,
        deliverable_description=item.deliverable_description,
        quantity=item.quantity,
        unit_of_measure=item.unit_of_measure,
        estimated_hours_each=item.estimated_hours_each,
        status=item.status,
        collateral_count=len(item.collateral),
        progress=_progress(approved, item.quantity),
    )


def phase_to_read(phase: WorkPackagePhase) -> PhaseRead:
    return PhaseRead(
        id=phase.id,
        work_package_id=phase.work_package_id,
        name=phase.name,
        position=phase.position,
        description=phase.description,
        total_estimated_hours=phase.total_estimated_hours,
        phase_total_duration=phase.phase_total_duration,
        estimated_start_date=phase.estimated_start_date,
        estimated_end_date=phase.estimated_end_date,
        actual_start_date=phase.actual_start_date,
        actual_end_date=phase.actual_end_date,
        status=phase.status,
        items=[item_to_read(item) for item in phase.items],
    )


def to_read(work_package: WorkPackage) -> WorkPackageRead:
    phases = [phase_to_read(phase) for phase in sorted(work_package.phases, key=lambda phase: phase.position)]
    items = [item for phase in phases for item in phase.items]
    completed_items = sum(1 for item in items if item.progress.completed >= item.progress.total)
    completed_phases = sum(1 for phase in phases if phase.status == "completed")
    current_phase = next((phase for phase in phases if phase.status != "completed"), None)
    return WorkPackageRead(
        id=work_package.id,
        contact_id=work_package.contact_id,
        company_id=work_package.company_id,
        title=work_package.title,
        description=work_package.description,
        total_cost=work_package.total_cost,
        effective_start_date=work_package.effective_start_date,
        status=work_package.status,
        row_version=work_package.row_version,
        created_at=work_package.created_at,
        updated_at=work_package.updated_at,
        phases=phases,
        progress=_progress(completed_items, len(items)),
        phase_progress=_progress(completed_phases, len(phases)),
        current_phase_id=current_phase.id if current_phase else None,
    )


def summary_to_read(summary: HydrationSummary) -> HydrationSummaryRead:
    return HydrationSummaryRead(
        assembly_type=summary.assembly_type,
        phases_created=summary.phases_created,
        phases_updated=summary.phases_updated,
        items_created=summary.items_created,
        items_updated=summary.items_updated,
        total_estimated_hours=summary.total_estimated_hours,
        warnings=[
            DataQualityWarningRead(
                code=warning.code,
                message=warning.message,
                phase_name=warning.phase_name,
                deliverable_label=warning.deliverable_label,
            )
            for warning in summary.warnings
        ],
    )


def hydration_result_to_read(result: HydrationResult) -> HydrationResultRead:
    return HydrationResultRead(work_package=to_read(result.work_package), summary=summary_to_read(result.summary))


def collateral_result_to_read(result: CollateralStatusResult) -> CollateralStatusResultRead:
    return CollateralStatusResultRead(
        collateral=CollateralRead.model_validate(result.collateral) if result.collateral is not None else None,
        item_id=result.item_id,
        item_status=result.item_status,
        item_status_changed=result.item_status_changed,
    )


@dataclass
class WorkPackageReadService:
    repository: WorkPackageRepository = field(default_factory=WorkPackageRepository)

    def get_work_package(self, session: Session, work_package_id: uuid.UUID) -> WorkPackageRead:
        return to_read(self.repository.get(session, work_package_id))

    def delete_work_package(self, session: Session, work_package_id: uuid.UUID, *, actor_user_id: str) -> None:
        """Remove a work package with its phases, items and collateral."""
        before: dict[str, str] = {}

        def operation() -> None:
            work_package = self.repository.get(session, work_package_id)
            before["title"] = work_package.title
            claim_write(session, work_package)
            session.delete(work_package)
            session.flush()

        run_serialized(session, operation)
        logger.info("workpackage.deleted", extra={"work_package_id": str(work_package_id)})
        audit.record(
            actor_user_id=actor_user_id,
            entity_type="work_package",
            entity_id=str(work_package_id),
            action="delete",
            before=before,
            after=None,
        )
        events.publish(
            "workpackage.deleted",
            actor_user_id=actor_user_id,
            payload={"work_package_id": str(work_package_id)},
        )


work_package_read_service = WorkPackageReadService()
