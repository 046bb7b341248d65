from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base
from app.crm.models import CRMAccount, CRMContact
from app.workpackages.collateral import CollateralStatusService
from app.workpackages.errors import NotFoundError, ValidationError
from app.workpackages.hydration import HydrationService
from app.workpackages.models import WorkPackageItem
from app.workpackages.schemas import CollateralCreate, CollateralUpdate


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_state() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def item(db_session: Session) -> WorkPackageItem:
    account = CRMAccount(name="Contoso")
    db_session.add(account)
    db_session.flush()
    contact = CRMContact(account_id=account.id, first_name="Alan", last_name="Turing")
    db_session.add(contact)
    db_session.commit()

    result = HydrationService().assemble(
        db_session,
        {
            "assembly_type": "blank",
            "contact_id": str(contact.id),
            "effective_start_date": "2024-01-01",
            "phases": [
                {
                    "name": "Build",
                    "position": 1,
                    "items": [{"deliverable_type": "BLOG", "deliverable_label": "Blog series", "quantity": 3}],
                }
            ],
        },
        actor_user_id="planner-1",
    )
    return result.work_package.phases[0].items[0]


@pytest.fixture()
def service() -> CollateralStatusService:
    return CollateralStatusService()


def _add(service: CollateralStatusService, session: Session, item_id: uuid.UUID, status: str = "IN_PROGRESS"):
    return service.create_collateral(
        session,
        item_id,
        CollateralCreate(collateral_type="blog_post", title="Draft", status=status),
        actor_user_id="writer-1",
    )


def _status_events() -> list[dict]:
    return [event for event in events.published_events if event["event_type"] == "workpackage.item.status_changed"]


def test_item_is_promoted_only_when_every_artifact_is_approved(
    db_session: Session, item: WorkPackageItem, service: CollateralStatusService
) -> None:
    artifacts = [_add(service, db_session, item.id).collateral for _ in range(3)]
    assert all(artifact is not None for artifact in artifacts)

    first = service.update_collateral(
        db_session, item.id, artifacts[0].id, CollateralUpdate(status="APPROVED"), actor_user_id="reviewer-1"
    )
    second = service.update_collateral(
        db_session, item.id, artifacts[1].id, CollateralUpdate(status="approved"), actor_user_id="reviewer-1"
    )
    assert (first.item_status, first.item_status_changed) == ("IN_PROGRESS", False)
    assert (second.item_status, second.item_status_changed) == ("IN_PROGRESS", False)

    third = service.update_collateral(
        db_session, item.id, artifacts[2].id, CollateralUpdate(status="APPROVED"), actor_user_id="reviewer-1"
    )
    assert third.item_status == "APPROVED"
    assert third.item_status_changed is True
    assert third.collateral is not None
    assert third.collateral.review_completed_at is not None
    assert _status_events()[-1]["payload"]["to_status"] == "APPROVED"


def test_non_approved_status_is_mirrored_onto_item(
    db_session: Session, item: WorkPackageItem, service: CollateralStatusService
) -> None:
    created = _add(service, db_session, item.id)
    assert created.item_status == "IN_PROGRESS"
    assert created.item_status_changed is True
    assert created.collateral is not None

    in_review = service.update_collateral(
        db_session, item.id, created.collateral.id, CollateralUpdate(status="in review"), actor_user_id="writer-1"
    )
    assert in_review.item_status == "IN_REVIEW"
    assert in_review.collateral is not None
    assert in_review.collateral.review_requested_at is not None

    changes = service.update_collateral(
        db_session, item.id, created.collateral.id, CollateralUpdate(status="CHANGES_NEEDED"), actor_user_id="reviewer-1"
    )
    assert changes.item_status == "CHANGES_NEEDED"
    assert [event["payload"]["to_status"] for event in _status_events()] == ["IN_PROGRESS", "IN_REVIEW", "CHANGES_NEEDED"]


def test_regression_from_approved_is_mirrored(
    db_session: Session, item: WorkPackageItem, service: CollateralStatusService
) -> None:
    created = _add(service, db_session, item.id, status="APPROVED")
    assert created.item_status == "APPROVED"
    assert created.collateral is not None

    reopened = service.update_collateral(
        db_session, item.id, created.collateral.id, CollateralUpdate(status="CHANGES_IN_PROGRESS"), actor_user_id="reviewer-1"
    )
    assert reopened.item_status == "CHANGES_IN_PROGRESS"


def test_title_only_update_leaves_item_status_alone(
    db_session: Session, item: WorkPackageItem, service: CollateralStatusService
) -> None:
    created = _add(service, db_session, item.id)
    assert created.collateral is not None
    events_before = len(_status_events())

    updated = service.update_collateral(
        db_session, item.id, created.collateral.id, CollateralUpdate(title="Final"), actor_user_id="writer-1"
    )
    assert updated.collateral is not None
    assert updated.collateral.title == "Final"
    assert updated.item_status_changed is False
    assert len(_status_events()) == events_before


def test_deleting_last_unapproved_artifact_promotes_item(
    db_session: Session, item: WorkPackageItem, service: CollateralStatusService
) -> None:
    _add(service, db_session, item.id, status="APPROVED")
    pending = _add(service, db_session, item.id, status="IN_REVIEW")
    assert pending.item_status == "IN_REVIEW"
    assert pending.collateral is not None

    result = service.delete_collateral(db_session, item.id, pending.collateral.id, actor_user_id="reviewer-1")

    assert result.collateral is None
    assert result.item_status == "APPROVED"
    assert result.item_status_changed is True


def test_deleting_every_artifact_keeps_item_status(
    db_session: Session, item: WorkPackageItem, service: CollateralStatusService
) -> None:
    created = _add(service, db_session, item.id, status="IN_REVIEW")
    assert created.collateral is not None

    result = service.delete_collateral(db_session, item.id, created.collateral.id, actor_user_id="reviewer-1")

    assert result.item_status == "IN_REVIEW"
    assert result.item_status_changed is False


def test_unknown_collateral_status_is_rejected(
    db_session: Session, item: WorkPackageItem, service: CollateralStatusService
) -> None:
    with pytest.raises(ValidationError):
        _add(service, db_session, item.id, status="PUBLISHED")


def test_collateral_of_another_item_is_not_found(
    db_session: Session, item: WorkPackageItem, service: CollateralStatusService
) -> None:
    created = _add(service, db_session, item.id)
    assert created.collateral is not None

    with pytest.raises(NotFoundError):
        service.update_collateral(
            db_session, uuid.uuid4(), created.collateral.id, CollateralUpdate(status="APPROVED"), actor_user_id="writer-1"
        )


def test_collateral_writes_are_audited(db_session: Session, item: WorkPackageItem, service: CollateralStatusService) -> None:
    created = _add(service, db_session, item.id)
    assert created.collateral is not None

    collateral_entries = audit.entries_for("work_collateral", str(created.collateral.id))
    item_entries = audit.entries_for("work_package_item", str(item.id))
    assert [entry["action"] for entry in collateral_entries] == ["create"]
    assert collateral_entries[0]["after"]["status"] == "IN_PROGRESS"
    assert item_entries[-1]["before"] == {"status": "NOT_STARTED"}
    assert item_entries[-1]["after"] == {"status": "IN_PROGRESS"}
