from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from fastapi import APIRouter, Body, Depends, File, Form, HTTPException, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.workpackages.collateral import collateral_status_service
from app.workpackages.errors import ValidationError, WorkPackageError
from app.workpackages.hydration import hydration_service
from app.workpackages.schemas import (
    CollateralCreate,
    CollateralStatusResultRead,
    CollateralUpdate,
    CsvImportRequest,
    DeliverableTemplateRead,
    EffectiveStartDateUpdate,
    HydrationResultRead,
    ItemEffortUpdate,
    PhaseRead,
    PhaseStatusUpdate,
    PhaseTemplateRead,
    WorkPackageRead,
)
from app.workpackages.scheduling import phase_due_date_service
from app.workpackages.service import (
    collateral_result_to_read,
    hydration_result_to_read,
    phase_to_read,
    to_read,
    work_package_read_service,
)
from app.workpackages.templates import template_catalog_service


router = APIRouter(prefix="/api/workpackages", tags=["workpackages"])

READ_PERMISSION = "workpackages.read"
WRITE_PERMISSION = "workpackages.write"
ADMIN_ROLE = "admin"


@dataclass
class WorkPackageActor:
    user_id: str
    permissions: set[str] = field(default_factory=set)


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    context = getattr(request.state, "context", None)
    correlation_id = get_correlation_id() or getattr(context, "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _domain_error(request: Request, exc: WorkPackageError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.kind,
        message=exc.message,
        details=exc.details,
    )


def _http_error(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_actor(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> WorkPackageActor:
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = auth_user.sub
    permissions = set(auth_user.roles)
    if ADMIN_ROLE in permissions:
        permissions.update({READ_PERMISSION, WRITE_PERMISSION})
    return WorkPackageActor(user_id=auth_user.sub, permissions=permissions)


def require_permission(actor: WorkPackageActor, permission: str) -> None:
    if permission not in actor.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@router.get("/templates/phases", response_model=list[PhaseTemplateRead])
def list_phase_templates(
    request: Request,
    db: Session = Depends(get_db),
    actor: WorkPackageActor = Depends(get_current_actor),
) -> list[PhaseTemplateRead] | JSONResponse:
    try:
        require_permission(actor, READ_PERMISSION)
        return template_catalog_service.list_phase_templates(db)
    except HTTPException as exc:
        return _http_error(request, exc, "workpackage_templates_list_failed")


@router.get("/templates/deliverables", response_model=list[DeliverableTemplateRead])
def list_deliverable_templates(
    request: Request,
    db: Session = Depends(get_db),
    actor: WorkPackageActor = Depends(get_current_actor),
) -> list[DeliverableTemplateRead] | JSONResponse:
    try:
        require_permission(actor, READ_PERMISSION)
        return template_catalog_service.list_deliverable_templates(db)
    except HTTPException as exc:
        return _http_error(request, exc, "workpackage_templates_list_failed")


@router.post("/assemble", response_model=HydrationResultRead, status_code=status.HTTP_201_CREATED)
def assemble_work_package(
    request: Request,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    actor: WorkPackageActor = Depends(get_current_actor),
) -> HydrationResultRead | JSONResponse:
    try:
        require_permission(actor, WRITE_PERMISSION)
        result = hydration_service.assemble(db, payload, actor_user_id=actor.user_id)
        return hydration_result_to_read(result)
    except WorkPackageError as exc:
        return _domain_error(request, exc)
    except HTTPException as exc:
        return _http_error(request, exc, "workpackage_assemble_failed")


@router.post("/import/csv", response_model=HydrationResultRead, status_code=status.HTTP_201_CREATED)
def import_work_package_csv(
    request: Request,
    file: UploadFile = File(...),
    contact_id: uuid.UUID = Form(...),
    company_id: uuid.UUID | None = Form(default=None),
    title: str | None = Form(default=None),
    effective_start_date: date | None = Form(default=None),
    db: Session = Depends(get_db),
    actor: WorkPackageActor = Depends(get_current_actor),
) -> HydrationResultRead | JSONResponse:
    try:
        require_permission(actor, WRITE_PERMISSION)
        try:
            csv_text = file.file.read().decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ValidationError("CSV file must be UTF-8 encoded") from exc
        payload = {
            "assembly_type": "csv",
            "contact_id": contact_id,
            "company_id": company_id,
            "title": title or None,
            "effective_start_date": effective_start_date,
            "csv_text": csv_text,
        }
        result = hydration_service.assemble(db, payload, actor_user_id=actor.user_id)
        return hydration_result_to_read(result)
    except WorkPackageError as exc:
        return _domain_error(request, exc)
    except HTTPException as exc:
        return _http_error(request, exc, "workpackage_csv_import_failed")


@router.post("/{work_package_id}/import/csv", response_model=HydrationResultRead)
def merge_work_package_csv(
    work_package_id: uuid.UUID,
    request: Request,
    dto: CsvImportRequest,
    db: Session = Depends(get_db),
    actor: WorkPackageActor = Depends(get_current_actor),
) -> HydrationResultRead | JSONResponse:
    try:
        require_permission(actor, WRITE_PERMISSION)
        result = hydration_service.import_csv(
            db,
            work_package_id,
            rows=dto.rows,
            csv_text=dto.csv_text,
            actor_user_id=actor.user_id,
        )
        return hydration_result_to_read(result)
    except WorkPackageError as exc:
        return _domain_error(request, exc)
    except HTTPException as exc:
        return _http_error(request, exc, "workpackage_csv_import_failed")


@router.get("/{work_package_id}", response_model=WorkPackageRead)
def get_work_package(
    work_package_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    actor: WorkPackageActor = Depends(get_current_actor),
) -> WorkPackageRead | JSONResponse:
    try:
        require_permission(actor, READ_PERMISSION)
        return work_package_read_service.get_work_package(db, work_package_id)
    except WorkPackageError as exc:
        return _domain_error(request, exc)
    except HTTPException as exc:
        return _http_error(request, exc, "workpackage_get_failed")


@router.delete("/{work_package_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_work_package(
    work_package_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    actor: WorkPackageActor = Depends(get_current_actor),
) -> Response:
    try:
        require_permission(actor, WRITE_PERMISSION)
        work_package_read_service.delete_work_package(db, work_package_id, actor_user_id=actor.user_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except WorkPackageError as exc:
        return _domain_error(request, exc)
    except HTTPException as exc:
        return _http_error(request, exc, "workpackage_delete_failed")


@router.put("/{work_package_id}/effective-start-date", response_model=WorkPackageRead)
def set_effective_start_date(
    work_package_id: uuid.UUID,
    request: Request,
    dto: EffectiveStartDateUpdate,
    db: Session = Depends(get_db),
    actor: WorkPackageActor = Depends(get_current_actor),
) -> WorkPackageRead | JSONResponse:
    try:
        require_permission(actor, WRITE_PERMISSION)
        work_package = phase_due_date_service.set_effective_start_date(
            db,
            work_package_id,
            dto.effective_start_date,
            actor_user_id=actor.user_id,
        )
        return to_read(work_package)
    except WorkPackageError as exc:
        return _domain_error(request, exc)
    except HTTPException as exc:
        return _http_error(request, exc, "workpackage_schedule_update_failed")


@router.patch("/{work_package_id}/phases/{phase_id}/status", response_model=PhaseRead)
def update_phase_status(
    work_package_id: uuid.UUID,
    phase_id: uuid.UUID,
    request: Request,
    dto: PhaseStatusUpdate,
    db: Session = Depends(get_db),
    actor: WorkPackageActor = Depends(get_current_actor),
) -> PhaseRead | JSONResponse:
    try:
        require_permission(actor, WRITE_PERMISSION)
        phase = phase_due_date_service.update_phase_status(
            db,
            work_package_id,
            phase_id,
            dto.status,
            actor_user_id=actor.user_id,
        )
        return phase_to_read(phase)
    except WorkPackageError as exc:
        return _domain_error(request, exc)
    except HTTPException as exc:
        return _http_error(request, exc, "workpackage_phase_update_failed")


@router.patch("/{work_package_id}/items/{item_id}", response_model=WorkPackageRead)
def update_item_effort(
    work_package_id: uuid.UUID,
    item_id: uuid.UUID,
    request: Request,
    dto: ItemEffortUpdate,
    db: Session = Depends(get_db),
    actor: WorkPackageActor = Depends(get_current_actor),
) -> WorkPackageRead | JSONResponse:
    try:
        require_permission(actor, WRITE_PERMISSION)
        work_package = phase_due_date_service.update_item_effort(
            db,
            work_package_id,
            item_id,
            dto,
            actor_user_id=actor.user_id,
        )
        return to_read(work_package)
    except WorkPackageError as exc:
        return _domain_error(request, exc)
    except HTTPException as exc:
        return _http_error(request, exc, "workpackage_item_update_failed")


@router.post(
    "/items/{item_id}/collateral",
    response_model=CollateralStatusResultRead,
    status_code=status.HTTP_201_CREATED,
)
def create_collateral(
    item_id: uuid.UUID,
    request: Request,
    dto: CollateralCreate,
    db: Session = Depends(get_db),
    actor: WorkPackageActor = Depends(get_current_actor),
) -> CollateralStatusResultRead | JSONResponse:
    try:
        require_permission(actor, WRITE_PERMISSION)
        result = collateral_status_service.create_collateral(db, item_id, dto, actor_user_id=actor.user_id)
        return collateral_result_to_read(result)
    except WorkPackageError as exc:
        return _domain_error(request, exc)
    except HTTPException as exc:
        return _http_error(request, exc, "workpackage_collateral_create_failed")


@router.patch("/items/{item_id}/collateral/{collateral_id}", response_model=CollateralStatusResultRead)
def update_collateral(
    item_id: uuid.UUID,
    collateral_id: uuid.UUID,
    request: Request,
    dto: CollateralUpdate,
    db: Session = Depends(get_db),
    actor: WorkPackageActor = Depends(get_current_actor),
) -> CollateralStatusResultRead | JSONResponse:
    try:
        require_permission(actor, WRITE_PERMISSION)
        result = collateral_status_service.update_collateral(
            db,
            item_id,
            collateral_id,
            dto,
            actor_user_id=actor.user_id,
        )
        return collateral_result_to_read(result)
    except WorkPackageError as exc:
        return _domain_error(request, exc)
    except HTTPException as exc:
        return _http_error(request, exc, "workpackage_collateral_update_failed")


@router.delete("/items/{item_id}/collateral/{collateral_id}", response_model=CollateralStatusResultRead)
def delete_collateral(
    item_id: uuid.UUID,
    collateral_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    actor: WorkPackageActor = Depends(get_current_actor),
) -> CollateralStatusResultRead | JSONResponse:
    try:
        require_permission(actor, WRITE_PERMISSION)
        result = collateral_status_service.delete_collateral(
            db,
            item_id,
            collateral_id,
            actor_user_id=actor.user_id,
        )
        return collateral_result_to_read(result)
    except WorkPackageError as exc:
        return _domain_error(request, exc)
    except HTTPException as exc:
        return _http_error(request, exc, "workpackage_collateral_delete_failed")
