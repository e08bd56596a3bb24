from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pmo.context import get_correlation_id
from pmo.core.auth import AuthUser, get_current_user as get_auth_user
from pmo.core.database import get_db
from pmo.crm.errors import CRMError
from pmo.crm.schemas import (
    LeadConversionResult,
    LeadConvertRequest,
    LeadCreate,
    LeadRead,
    LeadSourceValue,
    LeadStatusValue,
    LeadUpdate,
    PipelineRead,
)
from pmo.crm.service import ActorUser, LeadConversionService, LeadService, PipelineService

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
pipelines_router = APIRouter(prefix="/api/crm", tags=["crm.pipelines"])
lead_service = LeadService()
lead_conversion_service = LeadConversionService()
pipeline_service = PipelineService()


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
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def handle_failure(
    request: Request,
    exc: CRMError | IntegrityError | HTTPException,
    *,
    fallback_code: str,
) -> JSONResponse:
    if isinstance(exc, CRMError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
    if isinstance(exc, IntegrityError):
        return error_response(
            request,
            status_code=status.HTTP_409_CONFLICT,
            code="conversion_conflict",
            message="concurrent modification, retry the request",
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=fallback_code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    tenant_id = getattr(request.state, "tenant_id", None) or auth_user.tenant_id
    return ActorUser(
        user_id=auth_user.sub,
        tenant_id=tenant_id,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    q: str | None = Query(default=None),
    source: LeadSourceValue | None = Query(default=None),
    status_filter: LeadStatusValue | None = Query(default=None, alias="status"),
    owner_user_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.list_leads(
            db,
            user,
            search=q,
            source=source,
            status=status_filter,
            owner_user_id=owner_user_id,
        )
    except (HTTPException, CRMError) as exc:
        return handle_failure(request, exc, fallback_code="crm_lead_list_failed")


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.create")
        return lead_service.create_lead(db, user, dto)
    except (HTTPException, CRMError) as exc:
        return handle_failure(request, exc, fallback_code="crm_lead_create_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.get_lead(db, user, lead_id)
    except (HTTPException, CRMError) as exc:
        return handle_failure(request, exc, fallback_code="crm_lead_get_failed")


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.update_lead(db, user, lead_id, dto)
    except (HTTPException, CRMError) as exc:
        return handle_failure(request, exc, fallback_code="crm_lead_update_failed")


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.leads.delete")
        lead_service.delete_lead(db, user, lead_id)
    except (HTTPException, CRMError) as exc:
        return handle_failure(request, exc, fallback_code="crm_lead_delete_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@leads_router.post("/leads/{lead_id}/convert", response_model=LeadConversionResult)
def convert_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadConvertRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadConversionResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.convert")
        return lead_conversion_service.convert_lead(db, user, lead_id, dto)
    except (HTTPException, CRMError, IntegrityError) as exc:
        return handle_failure(request, exc, fallback_code="crm_lead_convert_failed")


@pipelines_router.get("/pipelines/default", response_model=PipelineRead)
def get_default_pipeline(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return pipeline_service.get_default_pipeline(db, user)
    except (HTTPException, CRMError) as exc:
        return handle_failure(request, exc, fallback_code="crm_pipeline_get_failed")
