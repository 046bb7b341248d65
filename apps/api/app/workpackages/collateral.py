from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from app import audit, events
from app.metrics import observe_item_status_propagation
from app.workpackages.concurrency import claim_write, run_serialized
from app.workpackages.errors import ValidationError
from app.workpackages.models import WorkCollateral, WorkPackageItem, utcnow
from app.workpackages.repository import WorkPackageRepository
from app.workpackages.schemas import ITEM_STATUSES, CollateralCreate, CollateralUpdate


logger = logging.getLogger("app.workpackages.collateral")

APPROVED = "APPROVED"
IN_REVIEW = "IN_REVIEW"


@dataclass
class CollateralStatusResult:
    collateral: WorkCollateral | None
    item_id: uuid.UUID
    item_status: str
    item_status_changed: bool


@dataclass
class _Propagation:
    outcome: str
    changed: bool
    previous_status: str


def normalize_status(raw: str) -> str:
    status = raw.strip().upper().replace(" ", "_").replace("-", "_")
    if status not in ITEM_STATUSES:
        raise ValidationError(
            f"unsupported collateral status '{raw}'",
            details={"field": "status", "allowed": list(ITEM_STATUSES)},
        )
    return status


def _stamp_review(collateral: WorkCollateral, status: str) -> None:
    now = utcnow()
    if status == IN_REVIEW:
        collateral.review_requested_at = now
    elif status == APPROVED:
        collateral.review_completed_at = now


@dataclass
class CollateralStatusService:
    """Keeps an item's status in step with the review state of its collateral.

    Any status other than APPROVED is mirrored onto the item as-is. APPROVED
    promotes the item only once every sibling artifact is APPROVED, judged
    from a fresh read of the sibling set inside the same transaction.
    """

    repository: WorkPackageRepository = field(default_factory=WorkPackageRepository)

    def create_collateral(
        self,
        session: Session,
        item_id: uuid.UUID,
        dto: CollateralCreate,
        *,
        actor_user_id: str,
    ) -> CollateralStatusResult:
        status = normalize_status(dto.status)

        def operation() -> tuple[WorkCollateral, WorkPackageItem, _Propagation]:
            item = self._claim_item(session, item_id)
            collateral = WorkCollateral(
                id=uuid.uuid4(),
                item_id=item.id,
                collateral_type=dto.collateral_type,
                title=dto.title,
                content_json=dto.content_json,
                status=status,
            )
            _stamp_review(collateral, status)
            session.add(collateral)
            session.flush()
            return collateral, item, self._propagate(session, item, status)

        collateral, item, propagation = run_serialized(session, operation)
        self._after_write(
            item,
            collateral_id=collateral.id,
            action="create",
            before=None,
            after={"status": status, "collateral_type": dto.collateral_type},
            propagation=propagation,
            actor_user_id=actor_user_id,
        )
        session.refresh(collateral)
        return CollateralStatusResult(
            collateral=collateral,
            item_id=item.id,
            item_status=item.status,
            item_status_changed=propagation.changed,
        )

    def update_collateral(
        self,
        session: Session,
        item_id: uuid.UUID,
        collateral_id: uuid.UUID,
        dto: CollateralUpdate,
        *,
        actor_user_id: str,
    ) -> CollateralStatusResult:
        changes = dto.model_dump(exclude_unset=True)
        status = normalize_status(changes["status"]) if changes.get("status") is not None else None
        before: dict[str, str | None] = {}

        def operation() -> tuple[WorkCollateral, WorkPackageItem, _Propagation | None]:
            item = self._claim_item(session, item_id)
            collateral = self.repository.get_collateral(session, item_id, collateral_id)
            before["status"] = collateral.status
            if "title" in changes:
                collateral.title = changes["title"]
            if "content_json" in changes:
                collateral.content_json = changes["content_json"]
            propagation: _Propagation | None = None
            if status is not None:
                if status != collateral.status:
                    _stamp_review(collateral, status)
                collateral.status = status
                session.flush()
                propagation = self._propagate(session, item, status)
            else:
                session.flush()
            return collateral, item, propagation

        collateral, item, propagation = run_serialized(session, operation)
        self._after_write(
            item,
            collateral_id=collateral.id,
            action="update",
            before=before,
            after={"status": collateral.status},
            propagation=propagation,
            actor_user_id=actor_user_id,
        )
        session.refresh(collateral)
        return CollateralStatusResult(
            collateral=collateral,
            item_id=item.id,
            item_status=item.status,
            item_status_changed=propagation.changed if propagation else False,
        )

    def delete_collateral(
        self,
        session: Session,
        item_id: uuid.UUID,
        collateral_id: uuid.UUID,
        *,
        actor_user_id: str,
    ) -> CollateralStatusResult:
        before: dict[str, str | None] = {}

        def operation() -> tuple[WorkPackageItem, _Propagation]:
            item = self._claim_item(session, item_id)
            collateral = self.repository.get_collateral(session, item_id, collateral_id)
            before["status"] = collateral.status
            session.delete(collateral)
            session.flush()
            return item, self._reevaluate(session, item)

        item, propagation = run_serialized(session, operation)
        self._after_write(
            item,
            collateral_id=collateral_id,
            action="delete",
            before=before,
            after=None,
            propagation=propagation,
            actor_user_id=actor_user_id,
        )
        return CollateralStatusResult(
            collateral=None,
            item_id=item.id,
            item_status=item.status,
            item_status_changed=propagation.changed,
        )

    def _claim_item(self, session: Session, item_id: uuid.UUID) -> WorkPackageItem:
        item = self.repository.get_item(session, item_id)
        claim_write(session, self.repository.get_header(session, item.work_package_id))
        return item

    def _propagate(self, session: Session, item: WorkPackageItem, status: str) -> _Propagation:
        if status != APPROVED:
            previous = item.status
            item.status = status
            session.flush()
            return _Propagation(outcome="mirrored", changed=previous != status, previous_status=previous)
        return self._reevaluate(session, item)

    def _reevaluate(self, session: Session, item: WorkPackageItem) -> _Propagation:
        previous = item.status
        siblings = self.repository.list_collateral_statuses(session, item.id)
        if siblings and all(sibling == APPROVED for sibling in siblings):
            item.status = APPROVED
            session.flush()
            return _Propagation(outcome="promoted", changed=previous != APPROVED, previous_status=previous)
        return _Propagation(outcome="pending", changed=False, previous_status=previous)

    def _after_write(
        self,
        item: WorkPackageItem,
        *,
        collateral_id: uuid.UUID,
        action: str,
        before: dict[str, str | None] | None,
        after: dict[str, str | None] | None,
        propagation: _Propagation | None,
        actor_user_id: str,
    ) -> None:
        audit.record(
            actor_user_id=actor_user_id,
            entity_type="work_collateral",
            entity_id=str(collateral_id),
            action=action,
            before=before,
            after=after,
        )
        if propagation is None:
            return
        observe_item_status_propagation(propagation.outcome)
        logger.info(
            "workpackage.item_status_propagated",
            extra={
                "item_id": str(item.id),
                "outcome": propagation.outcome,
                "status": item.status,
            },
        )
        if not propagation.changed:
            return
        audit.record(
            actor_user_id=actor_user_id,
            entity_type="work_package_item",
            entity_id=str(item.id),
            action="status.update",
            before={"status": propagation.previous_status},
            after={"status": item.status},
        )
        events.publish(
            "workpackage.item.status_changed",
            actor_user_id=actor_user_id,
            payload={
                "work_package_id": str(item.work_package_id),
                "item_id": str(item.id),
                "from_status": propagation.previous_status,
                "to_status": item.status,
            },
        )


collateral_status_service = CollateralStatusService()
