from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


PhaseStatus = Literal["not_started", "in_progress", "completed"]
ItemStatus = Literal["NOT_STARTED", "IN_PROGRESS", "IN_REVIEW", "CHANGES_NEEDED", "CHANGES_IN_PROGRESS", "APPROVED"]
AssemblyType = Literal["templates", "csv", "clone", "blank"]

ITEM_STATUSES: tuple[str, ...] = (
    "NOT_STARTED",
    "IN_PROGRESS",
    "IN_REVIEW",
    "CHANGES_NEEDED",
    "CHANGES_IN_PROGRESS",
    "APPROVED",
)
INITIAL_ITEM_STATUS = "NOT_STARTED"

CSV_STATUS_MAP: dict[str, str] = {
    "todo": "NOT_STARTED",
    "not_started": "NOT_STARTED",
    "in_progress": "IN_PROGRESS",
    "in_review": "IN_REVIEW",
    "changes_needed": "CHANGES_NEEDED",
    "changes_in_progress": "CHANGES_IN_PROGRESS",
    "approved": "APPROVED",
    "done": "APPROVED",
    "completed": "APPROVED",
}


class AssemblyRequestBase(BaseModel):
    contact_id: UUID
    company_id: UUID | None = None
    title: str | None = None
    description: str | None = None
    total_cost: Decimal | None = Field(default=None, ge=Decimal("0"))
    effective_start_date: date | None = None


class ItemInput(BaseModel):
    deliverable_type: str = Field(min_length=1)
    deliverable_label: str = Field(min_length=1)
    deliverable_description: str | None = None
    quantity: int = Field(default=1, ge=0)
    unit_of_measure: str = "day"
    estimated_hours_each: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    status: ItemStatus = "NOT_STARTED"


class PhaseInput(BaseModel):
    name: str = Field(min_length=1)
    position: int = Field(ge=1)
    description: str | None = None
    items: list[ItemInput] = Field(default_factory=list)


class BlankAssemblyRequest(AssemblyRequestBase):
    assembly_type: Literal["blank"]
    phases: list[PhaseInput] = Field(min_length=1)


class TemplateDeliverableRef(BaseModel):
    deliverable_template_id: UUID | None = None
    deliverable_type: str | None = None
    deliverable_label: str | None = None
    deliverable_description: str | None = None
    quantity: int | None = Field(default=None, ge=0)
    unit_of_measure: str | None = None
    estimated_hours_each: Decimal | None = Field(default=None, ge=Decimal("0"))

    @model_validator(mode="after")
    def _require_reference(self) -> TemplateDeliverableRef:
        if self.deliverable_template_id is None and not self.deliverable_type:
            raise ValueError("deliverable_template_id or deliverable_type is required")
        return self


class TemplatePhaseRef(BaseModel):
    phase_template_id: UUID
    position: int = Field(ge=1)
    name: str | None = None
    description: str | None = None
    deliverables: list[TemplateDeliverableRef] = Field(default_factory=list)


class TemplatesAssemblyRequest(AssemblyRequestBase):
    assembly_type: Literal["templates"]
    phases: list[TemplatePhaseRef] = Field(min_length=1)


class CsvAssemblyRequest(AssemblyRequestBase):
    assembly_type: Literal["csv"]
    rows: list[dict[str, Any]] | None = None
    csv_text: str | None = None

    @model_validator(mode="after")
    def _require_source(self) -> CsvAssemblyRequest:
        if not self.rows and not self.csv_text:
            raise ValueError("rows or csv_text is required")
        return self


class CloneAssemblyRequest(AssemblyRequestBase):
    assembly_type: Literal["clone"]
    source_work_package_id: UUID


AssemblyRequest = Annotated[
    Union[TemplatesAssemblyRequest, CsvAssemblyRequest, CloneAssemblyRequest, BlankAssemblyRequest],
    Field(discriminator="assembly_type"),
]


class CsvImportRequest(BaseModel):
    rows: list[dict[str, Any]] | None = None
    csv_text: str | None = None

    @model_validator(mode="after")
    def _require_source(self) -> CsvImportRequest:
        if not self.rows and not self.csv_text:
            raise ValueError("rows or csv_text is required")
        return self


class CsvRow(BaseModel):
    """One normalized CSV row; camelCase aliases match the import file headers."""

    model_config = ConfigDict(populate_by_name=True)

    phase_name: str = Field(alias="phaseName", min_length=1)
    phase_position: int | None = Field(default=None, alias="phasePosition", ge=1)
    phase_description: str | None = Field(default=None, alias="phaseDescription")
    deliverable_type: str = Field(alias="deliverableType", min_length=1)
    deliverable_label: str = Field(alias="deliverableLabel", min_length=1)
    deliverable_description: str | None = Field(default=None, alias="deliverableDescription")
    quantity: int = Field(default=1, ge=0)
    unit_of_measure: str = Field(default="day", alias="unitOfMeasure")
    estimated_hours_each: Decimal = Field(default=Decimal("0"), alias="estimatedHoursEach", ge=Decimal("0"))
    status: str = INITIAL_ITEM_STATUS
    proposal_description: str | None = Field(default=None, alias="proposalDescription")
    proposal_total_cost: Decimal | None = Field(default=None, alias="proposalTotalCost", ge=Decimal("0"))

    @field_validator("deliverable_type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("status")
    @classmethod
    def _map_status(cls, value: str) -> str:
        key = value.strip().lower().replace(" ", "_").replace("-", "_")
        status = CSV_STATUS_MAP.get(key)
        if status is None:
            raise ValueError(f"unsupported status '{value}'")
        return status


class EffectiveStartDateUpdate(BaseModel):
    effective_start_date: date | None


class PhaseStatusUpdate(BaseModel):
    status: PhaseStatus


class ItemEffortUpdate(BaseModel):
    deliverable_description: str | None = None
    quantity: int | None = Field(default=None, ge=0)
    unit_of_measure: str | None = None
    estimated_hours_each: Decimal | None = Field(default=None, ge=Decimal("0"))


class CollateralCreate(BaseModel):
    collateral_type: str = Field(min_length=1)
    title: str | None = None
    content_json: dict[str, Any] | None = None
    status: str = "IN_PROGRESS"


class CollateralUpdate(BaseModel):
    status: str | None = None
    title: str | None = None
    content_json: dict[str, Any] | None = None


class CollateralRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    item_id: UUID
    collateral_type: str
    title: str | None
    content_json: dict[str, Any] | None
    status: ItemStatus
    review_requested_at: datetime | None
    review_completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class CollateralStatusResultRead(BaseModel):
    collateral: CollateralRead | None
    item_id: UUID
    item_status: ItemStatus
    item_status_changed: bool


class ProgressRead(BaseModel):
    completed: int
    total: int
    percentage: int


class ItemRead(BaseModel):
    id: UUID
    work_package_id: UUID
    phase_id: UUID
    deliverable_type: str
    deliverable_label: str
    deliverable_description: str | None
    quantity: int
    unit_of_measure: str
    estimated_hours_each: Decimal
    status: ItemStatus
    collateral_count: int
    progress: ProgressRead


class PhaseRead(BaseModel):
    id: UUID
    work_package_id: UUID
    name: str
    position: int
    description: str | None
    total_estimated_hours: Decimal
    phase_total_duration: int
    estimated_start_date: date | None
    estimated_end_date: date | None
    actual_start_date: datetime | None
    actual_end_date: datetime | None
    status: PhaseStatus
    items: list[ItemRead]


class WorkPackageRead(BaseModel):
    id: UUID
    contact_id: UUID
    company_id: UUID | None
    title: str
    description: str | None
    total_cost: Decimal | None
    effective_start_date: date | None
    status: str
    row_version: int
    created_at: datetime
    updated_at: datetime
    phases: list[PhaseRead]
    progress: ProgressRead
    phase_progress: ProgressRead
    current_phase_id: UUID | None


class DataQualityWarningRead(BaseModel):
    code: str
    message: str
    phase_name: str | None = None
    deliverable_label: str | None = None


class HydrationSummaryRead(BaseModel):
    assembly_type: AssemblyType
    phases_created: int = 0
    phases_updated: int = 0
    items_created: int = 0
    items_updated: int = 0
    total_estimated_hours: Decimal = Decimal("0")
    warnings: list[DataQualityWarningRead] = Field(default_factory=list)


class HydrationResultRead(BaseModel):
    work_package: WorkPackageRead
    summary: HydrationSummaryRead


class PhaseTemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None


class DeliverableTemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deliverable_type: str
    deliverable_label: str
    description: str | None
    default_quantity: int
    default_unit_of_measure: str
    default_estimated_hours_each: Decimal
