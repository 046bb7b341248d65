from __future__ import annotations

import uuid

from sqlalchemy import and_, select
from sqlalchemy.orm import Session, selectinload

from app.crm.models import CRMAccount, CRMContact
from app.workpackages.errors import NotFoundError
from app.workpackages.models import (
    DeliverableTemplate,
    PhaseTemplate,
    WorkCollateral,
    WorkPackage,
    WorkPackageItem,
    WorkPackagePhase,
)


class WorkPackageRepository:
    def get(self, session: Session, work_package_id: uuid.UUID) -> WorkPackage:
        work_package = session.scalar(
            select(WorkPackage)
            .where(WorkPackage.id == work_package_id)
            .options(
                selectinload(WorkPackage.phases)
                .selectinload(WorkPackagePhase.items)
                .selectinload(WorkPackageItem.collateral)
            )
            .execution_options(populate_existing=True)
        )
        if work_package is None:
            raise NotFoundError("work package", work_package_id)
        return work_package

    def get_header(self, session: Session, work_package_id: uuid.UUID) -> WorkPackage:
        work_package = session.get(WorkPackage, work_package_id, populate_existing=True)
        if work_package is None:
            raise NotFoundError("work package", work_package_id)
        return work_package

    def get_phase(self, session: Session, work_package_id: uuid.UUID, phase_id: uuid.UUID) -> WorkPackagePhase:
        phase = session.scalar(
            select(WorkPackagePhase).where(
                and_(WorkPackagePhase.id == phase_id, WorkPackagePhase.work_package_id == work_package_id)
            )
        )
        if phase is None:
            raise NotFoundError("phase", phase_id)
        return phase

    def get_item(self, session: Session, item_id: uuid.UUID) -> WorkPackageItem:
        item = session.get(WorkPackageItem, item_id, populate_existing=True)
        if item is None:
            raise NotFoundError("item", item_id)
        return item

    def get_collateral(self, session: Session, item_id: uuid.UUID, collateral_id: uuid.UUID) -> WorkCollateral:
        collateral = session.get(WorkCollateral, collateral_id, populate_existing=True)
        if collateral is None or collateral.item_id != item_id:
            raise NotFoundError("work collateral", collateral_id)
        return collateral

    def list_collateral_statuses(self, session: Session, item_id: uuid.UUID) -> list[str]:
        return list(session.scalars(select(WorkCollateral.status).where(WorkCollateral.item_id == item_id)).all())

    def ensure_contact(self, session: Session, contact_id: uuid.UUID) -> CRMContact:
        contact = session.get(CRMContact, contact_id)
        if contact is None:
            raise NotFoundError("contact", contact_id)
        return contact

    def ensure_company(self, session: Session, company_id: uuid.UUID) -> CRMAccount:
        company = session.get(CRMAccount, company_id)
        if company is None:
            raise NotFoundError("company", company_id)
        return company


class TemplateCatalogRepository:
    def phase_templates(self, session: Session, ids: list[uuid.UUID]) -> dict[uuid.UUID, PhaseTemplate]:
        if not ids:
            return {}
        rows = session.scalars(select(PhaseTemplate).where(PhaseTemplate.id.in_(set(ids)))).all()
        return {row.id: row for row in rows}

    def deliverable_templates_by_id(self, session: Session, ids: list[uuid.UUID]) -> dict[uuid.UUID, DeliverableTemplate]:
        if not ids:
            return {}
        rows = session.scalars(select(DeliverableTemplate).where(DeliverableTemplate.id.in_(set(ids)))).all()
        return {row.id: row for row in rows}

    def deliverable_templates_by_type(self, session: Session, types: list[str]) -> dict[str, DeliverableTemplate]:
        if not types:
            return {}
        rows = session.scalars(select(DeliverableTemplate).where(DeliverableTemplate.deliverable_type.in_(set(types)))).all()
        return {row.deliverable_type: row for row in rows}

    def list_phase_templates(self, session: Session) -> list[PhaseTemplate]:
        return list(session.scalars(select(PhaseTemplate).order_by(PhaseTemplate.name.asc())).all())

    def list_deliverable_templates(self, session: Session) -> list[DeliverableTemplate]:
        return list(
            session.scalars(select(DeliverableTemplate).order_by(DeliverableTemplate.deliverable_type.asc())).all()
        )
