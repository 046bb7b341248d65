from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base
from app.crm.models import CRMAccount, CRMContact
from app.workpackages.collateral import CollateralStatusService
from app.workpackages.errors import ConflictError, NotFoundError, ValidationError
from app.workpackages.hydration import HydrationService
from app.workpackages.models import DeliverableTemplate, WorkPackage, WorkPackageItem, WorkPackagePhase
from app.workpackages.scheduling import PhaseDueDateService
from app.workpackages.schemas import CollateralCreate
from app.workpackages.templates import TemplateCatalogService


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
def service() -> HydrationService:
    return HydrationService(scheduler=PhaseDueDateService(null_anchor_policy="unscheduled"))


@pytest.fixture()
def contact(db_session: Session) -> CRMContact:
    account = CRMAccount(name="Northwind")
    db_session.add(account)
    db_session.flush()
    created = CRMContact(account_id=account.id, first_name="Grace", last_name="Hopper")
    db_session.add(created)
    db_session.commit()
    return created


def _row(phase: str, label: str, deliverable_type: str = "BLOG", **extra: object) -> dict[str, object]:
    return {"phaseName": phase, "deliverableLabel": label, "deliverableType": deliverable_type, **extra}


def _count(session: Session, model: type) -> int:
    return session.scalar(select(func.count()).select_from(model)) or 0


def _csv_package(session: Session, service: HydrationService, contact: CRMContact) -> WorkPackage:
    result = service.assemble(
        session,
        {
            "assembly_type": "csv",
            "contact_id": str(contact.id),
            "effective_start_date": "2024-01-01",
            "rows": [
                _row("Discovery", "Persona", "persona", phasePosition=1, quantity=1),
                _row("Build", "Launch post", phasePosition=2, quantity=2),
            ],
        },
        actor_user_id="importer-1",
    )
    return result.work_package


def _seed_catalog(session: Session, catalog: TemplateCatalogService) -> None:
    catalog.ensure_phase_template(session, "Discovery", "Research, interviews and scoping")
    catalog.ensure_deliverable_template(session, "BLOG", "Blog Post", default_unit_of_measure="day")
    catalog.ensure_deliverable_template(
        session,
        "DECK",
        "Presentation Deck",
        default_unit_of_measure="week",
        default_estimated_hours_each=Decimal("40"),
    )
    session.commit()


def test_template_assembly_copies_template_values(
    db_session: Session, service: HydrationService, contact: CRMContact
) -> None:
    catalog = TemplateCatalogService()
    _seed_catalog(db_session, catalog)
    discovery = catalog.ensure_phase_template(db_session, "Discovery")
    blog = db_session.scalar(select(DeliverableTemplate).where(DeliverableTemplate.deliverable_type == "BLOG"))
    assert blog is not None

    result = service.assemble(
        db_session,
        {
            "assembly_type": "templates",
            "contact_id": str(contact.id),
            "effective_start_date": "2024-01-01",
            "phases": [
                {
                    "phase_template_id": str(discovery.id),
                    "position": 1,
                    "deliverables": [
                        {"deliverable_template_id": str(blog.id)},
                        {"deliverable_type": "DECK", "quantity": 2},
                    ],
                }
            ],
        },
        actor_user_id="planner-1",
    )

    work_package = result.work_package
    assert work_package.title == "Untitled Work Package"
    assert work_package.company_id == contact.account_id
    phase = work_package.phases[0]
    assert phase.name == "Discovery"
    assert phase.description == "Research, interviews and scoping"
    assert {item.deliverable_type: item.quantity for item in phase.items} == {"BLOG": 1, "DECK": 2}
    assert phase.total_estimated_hours == Decimal("88")
    assert result.summary.total_estimated_hours == Decimal("88")

    blog.default_quantity = 9
    blog.deliverable_label = "Renamed"
    db_session.commit()

    reloaded = service.repository.get(db_session, work_package.id)
    blog_item = next(item for item in reloaded.phases[0].items if item.deliverable_type == "BLOG")
    assert blog_item.quantity == 1
    assert blog_item.deliverable_label == "Blog Post"


def test_template_assembly_with_unknown_template_is_not_found(
    db_session: Session, service: HydrationService, contact: CRMContact
) -> None:
    with pytest.raises(NotFoundError):
        service.assemble(
            db_session,
            {
                "assembly_type": "templates",
                "contact_id": str(contact.id),
                "phases": [{"phase_template_id": str(uuid.uuid4()), "position": 1}],
            },
            actor_user_id="planner-1",
        )
    assert _count(db_session, WorkPackage) == 0


def test_csv_assembly_groups_rows_and_uses_proposal_fields(
    db_session: Session, service: HydrationService, contact: CRMContact
) -> None:
    csv_text = (
        "Phase Name,phase_position,Deliverable Type,deliverable-label,Quantity,Unit Of Measure,"
        "proposalDescription,proposalTotalCost\n"
        "Discovery,1,persona,Buyer persona,1,day,Spring campaign,1200.50\n"
        "Discovery,,blog,Kickoff notes,2,hours,,\n"
        "Build,2,deck,Pitch deck,1,week,,\n"
    )

    result = service.assemble(
        db_session,
        {"assembly_type": "csv", "contact_id": str(contact.id), "csv_text": csv_text},
        actor_user_id="importer-1",
    )

    work_package = result.work_package
    assert work_package.title == "Spring campaign"
    assert work_package.description == "Spring campaign"
    assert work_package.total_cost == Decimal("1200.50")
    phases = sorted(work_package.phases, key=lambda phase: phase.position)
    assert [(phase.name, phase.position) for phase in phases] == [("Discovery", 1), ("Build", 2)]
    assert sorted(item.deliverable_type for item in phases[0].items) == ["BLOG", "PERSONA"]
    assert next(item for item in phases[0].items if item.deliverable_type == "BLOG").unit_of_measure == "hour"
    assert result.summary.phases_created == 2
    assert result.summary.items_created == 3
    assert all(phase.estimated_start_date is None for phase in phases)


def test_csv_without_title_or_proposal_uses_import_title(
    db_session: Session, service: HydrationService, contact: CRMContact
) -> None:
    result = service.assemble(
        db_session,
        {"assembly_type": "csv", "contact_id": str(contact.id), "rows": [_row("Build", "Post", phasePosition=1)]},
        actor_user_id="importer-1",
    )
    assert result.work_package.title == "Imported Work Package"


def test_csv_reimport_is_idempotent(db_session: Session, service: HydrationService, contact: CRMContact) -> None:
    work_package = _csv_package(db_session, service, contact)
    rows = [
        _row("Discovery", "Persona", "PERSONA", phasePosition=1, quantity=1),
        _row("Build", "Launch post", phasePosition=2, quantity=2),
    ]

    first = service.import_csv(db_session, work_package.id, rows=rows, actor_user_id="importer-1")
    second = service.import_csv(db_session, work_package.id, rows=rows, actor_user_id="importer-1")

    assert _count(db_session, WorkPackagePhase) == 2
    assert _count(db_session, WorkPackageItem) == 2
    assert (second.summary.phases_created, second.summary.items_created) == (0, 0)
    assert second.summary.items_updated == 2
    assert _schedule_dates(first.work_package) == _schedule_dates(second.work_package)


def _schedule_dates(work_package: WorkPackage) -> list[tuple[date | None, date | None]]:
    return [
        (phase.estimated_start_date, phase.estimated_end_date)
        for phase in sorted(work_package.phases, key=lambda phase: phase.position)
    ]


def test_csv_reimport_updates_effort_and_appends_new_phase(
    db_session: Session, service: HydrationService, contact: CRMContact
) -> None:
    work_package = _csv_package(db_session, service, contact)

    result = service.import_csv(
        db_session,
        work_package.id,
        rows=[
            _row("Build", "Launch post", quantity=5),
            _row("Launch", "Recap", "CALL", quantity=3, unitOfMeasure="hour", estimatedHoursEach="2"),
        ],
        actor_user_id="importer-1",
    )

    phases = sorted(result.work_package.phases, key=lambda phase: phase.position)
    assert [(phase.name, phase.position) for phase in phases] == [("Discovery", 1), ("Build", 2), ("Launch", 3)]
    assert phases[1].items[0].quantity == 5
    assert phases[1].phase_total_duration == 5
    assert phases[2].total_estimated_hours == Decimal("6")
    assert phases[2].estimated_start_date == phases[1].estimated_end_date
    assert (result.summary.phases_created, result.summary.phases_updated) == (1, 1)


def test_csv_reimport_only_overwrites_status_when_column_present(
    db_session: Session, service: HydrationService, contact: CRMContact
) -> None:
    work_package = _csv_package(db_session, service, contact)

    service.import_csv(
        db_session,
        work_package.id,
        rows=[_row("Build", "Launch post", phasePosition=2, quantity=2, status="done")],
        actor_user_id="importer-1",
    )
    service.import_csv(
        db_session,
        work_package.id,
        rows=[_row("Build", "Launch post", phasePosition=2, quantity=2)],
        actor_user_id="importer-1",
    )
    item = db_session.scalar(select(WorkPackageItem).where(WorkPackageItem.deliverable_label == "Launch post"))
    assert item is not None
    assert item.status == "APPROVED"

    service.import_csv(
        db_session,
        work_package.id,
        rows=[_row("Build", "Launch post", phasePosition=2, quantity=2, status="In Progress")],
        actor_user_id="importer-1",
    )
    db_session.refresh(item)
    assert item.status == "IN_PROGRESS"


def test_csv_label_with_two_types_in_one_file_conflicts(
    db_session: Session, service: HydrationService, contact: CRMContact
) -> None:
    with pytest.raises(ConflictError) as exc_info:
        service.assemble(
            db_session,
            {
                "assembly_type": "csv",
                "contact_id": str(contact.id),
                "rows": [_row("Build", "Hero", "BLOG", phasePosition=1), _row("Build", "Hero", "DECK")],
            },
            actor_user_id="importer-1",
        )
    assert exc_info.value.details["row_index"] == 1
    assert _count(db_session, WorkPackage) == 0


def test_csv_phase_with_two_positions_conflicts(
    db_session: Session, service: HydrationService, contact: CRMContact
) -> None:
    with pytest.raises(ConflictError):
        service.assemble(
            db_session,
            {
                "assembly_type": "csv",
                "contact_id": str(contact.id),
                "rows": [_row("Build", "One", phasePosition=1), _row("Build", "Two", phasePosition=2)],
            },
            actor_user_id="importer-1",
        )


def test_csv_type_mismatch_with_existing_item_rolls_back_whole_batch(
    db_session: Session, service: HydrationService, contact: CRMContact
) -> None:
    work_package = _csv_package(db_session, service, contact)
    phases_before = _count(db_session, WorkPackagePhase)
    items_before = _count(db_session, WorkPackageItem)

    with pytest.raises(ConflictError) as exc_info:
        service.import_csv(
            db_session,
            work_package.id,
            rows=[
                _row("Wrap-up", "Retro", "CALL"),
                _row("Build", "Launch post", "DECK", phasePosition=2),
            ],
            actor_user_id="importer-1",
        )

    assert exc_info.value.details["row_index"] == 1
    assert exc_info.value.details["existing_type"] == "BLOG"
    assert _count(db_session, WorkPackagePhase) == phases_before
    assert _count(db_session, WorkPackageItem) == items_before


def test_csv_reimport_cannot_approve_item_with_pending_collateral(
    db_session: Session, service: HydrationService, contact: CRMContact
) -> None:
    work_package = _csv_package(db_session, service, contact)
    persona = db_session.scalar(select(WorkPackageItem).where(WorkPackageItem.deliverable_label == "Persona"))
    assert persona is not None
    CollateralStatusService().create_collateral(
        db_session,
        persona.id,
        CollateralCreate(collateral_type="persona_sheet", title="Buyer persona", status="IN_REVIEW"),
        actor_user_id="writer-1",
    )

    with pytest.raises(ConflictError) as exc_info:
        service.import_csv(
            db_session,
            work_package.id,
            rows=[_row("Discovery", "Persona", "persona", phasePosition=1, quantity=1, status="approved")],
            actor_user_id="importer-1",
        )

    assert exc_info.value.details["row_index"] == 0
    assert exc_info.value.details["pending_collateral"] == 1
    db_session.refresh(persona)
    assert persona.status == "IN_REVIEW"


def test_csv_new_phase_on_taken_position_conflicts(
    db_session: Session, service: HydrationService, contact: CRMContact
) -> None:
    work_package = _csv_package(db_session, service, contact)

    with pytest.raises(ConflictError):
        service.import_csv(
            db_session,
            work_package.id,
            rows=[_row("Review", "Checklist", phasePosition=2)],
            actor_user_id="importer-1",
        )


def test_csv_invalid_row_reports_row_index(db_session: Session, service: HydrationService, contact: CRMContact) -> None:
    with pytest.raises(ValidationError) as exc_info:
        service.assemble(
            db_session,
            {
                "assembly_type": "csv",
                "contact_id": str(contact.id),
                "rows": [
                    _row("Build", "One", phasePosition=1),
                    {"deliverableLabel": "Two", "deliverableType": "BLOG"},
                ],
            },
            actor_user_id="importer-1",
        )
    assert exc_info.value.row_index == 1
    assert exc_info.value.details["row_index"] == 1
    assert _count(db_session, WorkPackage) == 0


def test_csv_unsupported_status_is_rejected(db_session: Session, service: HydrationService, contact: CRMContact) -> None:
    work_package = _csv_package(db_session, service, contact)

    with pytest.raises(ValidationError) as exc_info:
        service.import_csv(
            db_session,
            work_package.id,
            rows=[_row("Build", "Launch post", status="archived")],
            actor_user_id="importer-1",
        )
    assert exc_info.value.row_index == 0


def test_csv_rows_over_limit_are_rejected(
    db_session: Session, service: HydrationService, contact: CRMContact, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("WORKPACKAGE_CSV_MAX_ROWS", "1")
    get_settings.cache_clear()

    with pytest.raises(ValidationError):
        service.assemble(
            db_session,
            {
                "assembly_type": "csv",
                "contact_id": str(contact.id),
                "rows": [_row("Build", "One", phasePosition=1), _row("Build", "Two")],
            },
            actor_user_id="importer-1",
        )


def test_clone_copies_structure_and_resets_progress(
    db_session: Session, service: HydrationService, contact: CRMContact
) -> None:
    source = _csv_package(db_session, service, contact)
    service.import_csv(
        db_session,
        source.id,
        rows=[_row("Build", "Launch post", phasePosition=2, quantity=2, status="approved")],
        actor_user_id="importer-1",
    )
    source_phase = sorted(source.phases, key=lambda phase: phase.position)[0]
    service.scheduler.update_phase_status(db_session, source.id, source_phase.id, "in_progress", actor_user_id="pm")

    result = service.assemble(
        db_session,
        {"assembly_type": "clone", "contact_id": str(contact.id), "source_work_package_id": str(source.id)},
        actor_user_id="planner-1",
    )

    clone = result.work_package
    assert clone.id != source.id
    assert clone.title == source.title
    assert clone.effective_start_date is None
    phases = sorted(clone.phases, key=lambda phase: phase.position)
    assert [(phase.name, phase.position) for phase in phases] == [("Discovery", 1), ("Build", 2)]
    assert all(phase.status == "not_started" and phase.actual_start_date is None for phase in phases)
    assert all(item.status == "NOT_STARTED" for phase in phases for item in phase.items)
    assert {phase.id for phase in phases}.isdisjoint({phase.id for phase in source.phases})
    assert all(phase.estimated_start_date is None for phase in phases)


def test_clone_of_missing_source_is_not_found(db_session: Session, service: HydrationService, contact: CRMContact) -> None:
    with pytest.raises(NotFoundError):
        service.assemble(
            db_session,
            {"assembly_type": "clone", "contact_id": str(contact.id), "source_work_package_id": str(uuid.uuid4())},
            actor_user_id="planner-1",
        )


def test_blank_assembly_rejects_duplicate_positions(
    db_session: Session, service: HydrationService, contact: CRMContact
) -> None:
    with pytest.raises(ValidationError):
        service.assemble(
            db_session,
            {
                "assembly_type": "blank",
                "contact_id": str(contact.id),
                "phases": [{"name": "One", "position": 1}, {"name": "Two", "position": 1}],
            },
            actor_user_id="planner-1",
        )


def test_blank_assembly_rejects_duplicate_labels(
    db_session: Session, service: HydrationService, contact: CRMContact
) -> None:
    with pytest.raises(ValidationError):
        service.assemble(
            db_session,
            {
                "assembly_type": "blank",
                "contact_id": str(contact.id),
                "phases": [
                    {
                        "name": "One",
                        "position": 1,
                        "items": [
                            {"deliverable_type": "BLOG", "deliverable_label": "Post"},
                            {"deliverable_type": "DECK", "deliverable_label": "Post"},
                        ],
                    }
                ],
            },
            actor_user_id="planner-1",
        )


def test_items_created_together_load_in_label_order(
    db_session: Session, service: HydrationService, contact: CRMContact
) -> None:
    result = service.assemble(
        db_session,
        {
            "assembly_type": "blank",
            "contact_id": str(contact.id),
            "phases": [
                {
                    "name": "One",
                    "position": 1,
                    "items": [
                        {"deliverable_type": "BLOG", "deliverable_label": "Zeta post"},
                        {"deliverable_type": "DECK", "deliverable_label": "Alpha deck"},
                        {"deliverable_type": "CALL", "deliverable_label": "Mid call"},
                    ],
                }
            ],
        },
        actor_user_id="planner-1",
    )
    stamp = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
    db_session.execute(update(WorkPackageItem).values(created_at=stamp))
    db_session.commit()

    first = service.repository.get(db_session, result.work_package.id)
    first_labels = [item.deliverable_label for item in first.phases[0].items]
    second = service.repository.get(db_session, result.work_package.id)

    assert first_labels == ["Alpha deck", "Mid call", "Zeta post"]
    assert [item.deliverable_label for item in second.phases[0].items] == first_labels


def test_blank_assembly_reports_unknown_units(db_session: Session, service: HydrationService, contact: CRMContact) -> None:
    result = service.assemble(
        db_session,
        {
            "assembly_type": "blank",
            "contact_id": str(contact.id),
            "phases": [
                {
                    "name": "One",
                    "position": 1,
                    "items": [{"deliverable_type": "BLOG", "deliverable_label": "Post", "unit_of_measure": "sprint"}],
                }
            ],
        },
        actor_user_id="planner-1",
    )
    assert [warning.code for warning in result.summary.warnings] == ["unknown_unit_of_measure"]
    assert result.summary.total_estimated_hours == Decimal("8")


def test_unknown_assembly_type_is_a_validation_error(
    db_session: Session, service: HydrationService, contact: CRMContact
) -> None:
    with pytest.raises(ValidationError):
        service.assemble(
            db_session,
            {"assembly_type": "spreadsheet", "contact_id": str(contact.id)},
            actor_user_id="planner-1",
        )


def test_missing_contact_is_not_found(db_session: Session, service: HydrationService) -> None:
    with pytest.raises(NotFoundError) as exc_info:
        service.assemble(
            db_session,
            {"assembly_type": "blank", "contact_id": str(uuid.uuid4()), "phases": [{"name": "One", "position": 1}]},
            actor_user_id="planner-1",
        )
    assert exc_info.value.resource == "contact"


def test_assembly_records_audit_and_event(db_session: Session, service: HydrationService, contact: CRMContact) -> None:
    work_package = _csv_package(db_session, service, contact)

    assembled = [event for event in events.published_events if event["event_type"] == "workpackage.assembled"]
    assert len(assembled) == 1
    assert assembled[0]["payload"]["work_package_id"] == str(work_package.id)
    assert assembled[0]["payload"]["assembly_type"] == "csv"
    assert any(entry["action"] == "assemble" and entry["entity_id"] == str(work_package.id) for entry in audit.audit_entries)
