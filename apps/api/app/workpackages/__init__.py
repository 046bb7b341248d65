from app.workpackages.api import router
from app.workpackages.collateral import CollateralStatusResult, CollateralStatusService, collateral_status_service
from app.workpackages.duration import DurationNormalizationService, duration_service
from app.workpackages.errors import ConflictError, NotFoundError, StateError, ValidationError, WorkPackageError
from app.workpackages.hydration import HydrationResult, HydrationService, HydrationSummary, hydration_service
from app.workpackages.models import (
    DeliverableTemplate,
    PhaseTemplate,
    WorkCollateral,
    WorkPackage,
    WorkPackageItem,
    WorkPackagePhase,
)
from app.workpackages.scheduling import PhaseDueDateService, add_business_days, phase_due_date_service
from app.workpackages.service import WorkPackageReadService, work_package_read_service
from app.workpackages.templates import TemplateCatalogService, template_catalog_service

__all__ = [
    "router",
    "WorkPackage",
    "WorkPackagePhase",
    "WorkPackageItem",
    "WorkCollateral",
    "PhaseTemplate",
    "DeliverableTemplate",
    "WorkPackageError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "StateError",
    "DurationNormalizationService",
    "duration_service",
    "PhaseDueDateService",
    "add_business_days",
    "phase_due_date_service",
    "HydrationService",
    "HydrationResult",
    "HydrationSummary",
    "hydration_service",
    "CollateralStatusService",
    "CollateralStatusResult",
    "collateral_status_service",
    "WorkPackageReadService",
    "work_package_read_service",
    "TemplateCatalogService",
    "template_catalog_service",
]
