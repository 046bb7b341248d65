from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal

from opentelemetry import trace
from sqlalchemy.orm import Session

from app import audit, events
from app.context import get_correlation_id
from app.core.config import get_settings
from app.metrics import observe_schedule_recalculation
from app.workpackages.concurrency import claim_write, run_serialized
from app.workpackages.duration import DataQualityWarning, DurationNormalizationService, resolve_unit
from app.workpackages.errors import NotFoundError, StateError, ValidationError
from app.workpackages.models import WorkPackage, WorkPackagePhase, utcnow
from app.workpackages.repository import WorkPackageRepository
from app.workpackages.schemas import ItemEffortUpdate


logger = logging.getLogger("app.workpackages.scheduling")
tracer = trace.get_tracer("app.workpackages.scheduling")

PHASE_STATUSES: tuple[str, ...] = ("not_started", "in_progress", "completed")


def add_business_days(start: date, days: int) -> date:
    """Advance ``start`` by ``days`` weekdays, skipping Saturdays and Sundays."""
    current = start
    remaining = days
    while remaining > 0:
        current += timedelta(days=1)
        if current.weekday() < 5:
            remaining -= 1
    return current


@dataclass
class PhaseDueDateService:
    duration: DurationNormalizationService = field(default_factory=DurationNormalizationService)
    repository: WorkPackageRepository = field(default_factory=WorkPackageRepository)
    null_anchor_policy: str | None = None
    today: Callable[[], date] = date.today

    def resolve_anchor(self, work_package: WorkPackage) -> date | None:
        if work_package.effective_start_date is not None:
            return work_package.effective_start_date
        policy = (self.null_anchor_policy or get_settings().workpackage_null_anchor_policy).strip().lower()
        if policy == "unscheduled":
            return None
        if policy == "today":
            return self.today()
        raise StateError(
            "work package has no effective start date",
            details={"work_package_id": str(work_package.id), "policy": policy},
        )

    def recalculate_schedule(
        self,
        session: Session,
        work_package: WorkPackage,
        *,
        trigger: str,
    ) -> list[DataQualityWarning]:
        """Recompute phase totals and cascade estimated dates from the anchor.

        Phases run back to back in position order; each starts where the
        previous one ends. Actual dates are left untouched. Nothing is
        committed here; callers own the transaction.
        """
        with tracer.start_as_current_span("workpackage.schedule.recalculate") as span:
            span.set_attribute("work_package_id", str(work_package.id))
            span.set_attribute("trigger", trigger)
            span.set_attribute("correlation_id", get_correlation_id() or "")

            anchor = self.resolve_anchor(work_package)
            phases = sorted(work_package.phases, key=lambda phase: phase.position)
            warnings: list[DataQualityWarning] = []
            cursor = anchor
            for phase in phases:
                effort = self.duration.summarize_phase(phase.items, phase_name=phase.name)
                warnings.extend(effort.warnings)
                phase.total_estimated_hours = effort.total_hours
                phase.phase_total_duration = effort.duration_days
                if cursor is None:
                    phase.estimated_start_date = None
                    phase.estimated_end_date = None
                    continue
                phase.estimated_start_date = cursor
                phase.estimated_end_date = add_business_days(cursor, effort.duration_days)
                cursor = phase.estimated_end_date
            session.flush()

            span.set_attribute("phase_count", len(phases))
            span.set_attribute("scheduled", anchor is not None)

        observe_schedule_recalculation(trigger)
        logger.info(
            "workpackage.schedule.recalculated",
            extra={
                "work_package_id": str(work_package.id),
                "trigger": trigger,
                "phase_count": len(phases),
                "anchor": anchor.isoformat() if anchor else None,
            },
        )
        return warnings

    def set_effective_start_date(
        self,
        session: Session,
        work_package_id: uuid.UUID,
        new_date: date | None,
        *,
        actor_user_id: str,
    ) -> WorkPackage:
        before: dict[str, str | None] = {}

        def operation() -> WorkPackage:
            work_package = self.repository.get(session, work_package_id)
            before["effective_start_date"] = _iso(work_package.effective_start_date)
            claim_write(session, work_package)
            work_package.effective_start_date = new_date
            self.recalculate_schedule(session, work_package, trigger="effective_start_date")
            return work_package

        work_package = run_serialized(session, operation)
        self._record_recalculated(
            work_package,
            actor_user_id=actor_user_id,
            action="effective_start_date.update",
            before=before,
            trigger="effective_start_date",
        )
        return self.repository.get(session, work_package_id)

    def update_phase_status(
        self,
        session: Session,
        work_package_id: uuid.UUID,
        phase_id: uuid.UUID,
        status: str,
        *,
        actor_user_id: str,
    ) -> WorkPackagePhase:
        normalized = status.strip().lower()
        if normalized not in PHASE_STATUSES:
            raise ValidationError(
                f"unsupported phase status '{status}'",
                details={"allowed": list(PHASE_STATUSES)},
            )
        before: dict[str, str | None] = {}

        def operation() -> WorkPackagePhase:
            work_package = self.repository.get_header(session, work_package_id)
            phase = self.repository.get_phase(session, work_package_id, phase_id)
            before["status"] = phase.status
            claim_write(session, work_package)
            phase.status = normalized
            now = utcnow()
            if normalized == "in_progress" and phase.actual_start_date is None:
                phase.actual_start_date = now
            if normalized == "completed" and phase.actual_end_date is None:
                phase.actual_end_date = now
            session.flush()
            return phase

        phase = run_serialized(session, operation)
        audit.record(
            actor_user_id=actor_user_id,
            entity_type="work_package_phase",
            entity_id=str(phase.id),
            action="status.update",
            before=before,
            after={"status": phase.status},
        )
        events.publish(
            "workpackage.phase.status_changed",
            actor_user_id=actor_user_id,
            payload={
                "work_package_id": str(work_package_id),
                "phase_id": str(phase.id),
                "from_status": before.get("status"),
                "to_status": phase.status,
            },
        )
        return phase

    def update_item_effort(
        self,
        session: Session,
        work_package_id: uuid.UUID,
        item_id: uuid.UUID,
        dto: ItemEffortUpdate,
        *,
        actor_user_id: str,
    ) -> WorkPackage:
        changes = dto.model_dump(exclude_unset=True)
        if "unit_of_measure" in changes and changes["unit_of_measure"] is not None:
            unit = changes["unit_of_measure"].strip().lower()
            changes["unit_of_measure"] = resolve_unit(unit) or unit
        before: dict[str, object] = {}

        def operation() -> WorkPackage:
            work_package = self.repository.get(session, work_package_id)
            item = next(
                (candidate for phase in work_package.phases for candidate in phase.items if candidate.id == item_id),
                None,
            )
            if item is None:
                raise NotFoundError("item", item_id)
            before.update({key: _jsonable(getattr(item, key)) for key in changes})
            claim_write(session, work_package)
            for key, value in changes.items():
                if value is None and key != "deliverable_description":
                    continue
                setattr(item, key, value)
            self.recalculate_schedule(session, work_package, trigger="item_effort")
            return work_package

        work_package = run_serialized(session, operation)
        self._record_recalculated(
            work_package,
            actor_user_id=actor_user_id,
            action="item_effort.update",
            before={"item_id": str(item_id), **before},
            trigger="item_effort",
        )
        return self.repository.get(session, work_package_id)

    def _record_recalculated(
        self,
        work_package: WorkPackage,
        *,
        actor_user_id: str,
        action: str,
        before: dict[str, object],
        trigger: str,
    ) -> None:
        phases = sorted(work_package.phases, key=lambda phase: phase.position)
        schedule = [
            {
                "phase_id": str(phase.id),
                "position": phase.position,
                "estimated_start_date": _iso(phase.estimated_start_date),
                "estimated_end_date": _iso(phase.estimated_end_date),
                "phase_total_duration": phase.phase_total_duration,
            }
            for phase in phases
        ]
        audit.record(
            actor_user_id=actor_user_id,
            entity_type="work_package",
            entity_id=str(work_package.id),
            action=action,
            before=before,
            after={"effective_start_date": _iso(work_package.effective_start_date), "schedule": schedule},
        )
        events.publish(
            "workpackage.schedule.recalculated",
            actor_user_id=actor_user_id,
            payload={
                "work_package_id": str(work_package.id),
                "trigger": trigger,
                "effective_start_date": _iso(work_package.effective_start_date),
                "schedule": schedule,
            },
        )


def _iso(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _jsonable(value: object) -> object:
    if isinstance(value, Decimal):
        return str(value)
    return value


phase_due_date_service = PhaseDueDateService()
