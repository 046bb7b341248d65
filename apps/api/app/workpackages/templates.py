from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.workpackages.duration import resolve_unit
from app.workpackages.errors import ValidationError
from app.workpackages.models import DeliverableTemplate, PhaseTemplate
from app.workpackages.repository import TemplateCatalogRepository
from app.workpackages.schemas import DeliverableTemplateRead, PhaseTemplateRead


@dataclass
class TemplateCatalogService:
    repository: TemplateCatalogRepository = field(default_factory=TemplateCatalogRepository)

    def list_phase_templates(self, session: Session) -> list[PhaseTemplateRead]:
        return [PhaseTemplateRead.model_validate(row) for row in self.repository.list_phase_templates(session)]

    def list_deliverable_templates(self, session: Session) -> list[DeliverableTemplateRead]:
        return [
            DeliverableTemplateRead.model_validate(row)
            for row in self.repository.list_deliverable_templates(session)
        ]

    def ensure_phase_template(self, session: Session, name: str, description: str | None = None) -> PhaseTemplate:
        cleaned = name.strip()
        if not cleaned:
            raise ValidationError("phase template name is required")
        existing = session.scalar(select(PhaseTemplate).where(PhaseTemplate.name == cleaned))
        if existing is not None:
            return existing
        template = PhaseTemplate(id=uuid.uuid4(), name=cleaned, description=description)
        session.add(template)
        session.flush()
        return template

    def ensure_deliverable_template(
        self,
        session: Session,
        deliverable_type: str,
        deliverable_label: str,
        *,
        description: str | None = None,
        default_quantity: int = 1,
        default_unit_of_measure: str = "day",
        default_estimated_hours_each: Decimal = Decimal("8"),
    ) -> DeliverableTemplate:
        cleaned_type = deliverable_type.strip().upper()
        if not cleaned_type:
            raise ValidationError("deliverable_type is required")
        unit = resolve_unit(default_unit_of_measure)
        if unit is None:
            raise ValidationError(
                f"unsupported unit of measure '{default_unit_of_measure}'",
                details={"field": "default_unit_of_measure"},
            )
        existing = session.scalar(select(DeliverableTemplate).where(DeliverableTemplate.deliverable_type == cleaned_type))
        if existing is not None:
            return existing
        template = DeliverableTemplate(
            id=uuid.uuid4(),
            deliverable_type=cleaned_type,
            deliverable_label=deliverable_label,
            description=description,
            default_quantity=default_quantity,
            default_unit_of_measure=unit,
            default_estimated_hours_each=default_estimated_hours_each,
        )
        session.add(template)
        session.flush()
        return template


template_catalog_service = TemplateCatalogService()