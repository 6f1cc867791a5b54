from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from salesdesk.context import get_correlation_id
from salesdesk.core.auth import AuthUser, get_current_user as get_auth_user
from salesdesk.core.database import get_db
from salesdesk.crm.errors import CRMError
from salesdesk.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    ClientCreate,
    ClientRead,
    ClientUpdate,
    DealCreate,
    DealRead,
    DealStageChangeRequest,
    DealUpdate,
    NotificationRead,
    PipelineStatsRead,
    PricingQuoteRead,
    PricingQuoteRequest,
)
from salesdesk.crm.service import (
    ActivityService,
    ActorUser,
    ClientService,
    DealService,
    NotificationService,
    PricingService,
)

logger = logging.getLogger("salesdesk.crm.api")

deals_router = APIRouter(prefix="/api/deals", tags=["crm.deals"])
clients_router = APIRouter(prefix="/api/clients", tags=["crm.clients"])
notifications_router = APIRouter(prefix="/api/notifications", tags=["crm.notifications"])
pricing_router = APIRouter(prefix="/api/pricing", tags=["crm.pricing"])
deal_service = DealService()
client_service = ClientService()
activity_service = ActivityService(deal_service=deal_service)
notification_service = NotificationService()
pricing_service = PricingService()


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
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def crm_error_response(request: Request, exc: CRMError, operation: str) -> JSONResponse:
    logger.info(
        "crm.request_failed",
        extra={"operation": operation, "error_code": exc.code, "status_code": exc.status_code},
    )
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(
        user_id=auth_user.user_id,
        organization_id=auth_user.organization_id,
        role=auth_user.role,
        correlation_id=correlation_id,
    )


@deals_router.get("", response_model=list[DealRead])
def list_deals(
    request: Request,
    stage: str | None = Query(default=None),
    client_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        return deal_service.list_deals(db, user, {"stage": stage, "client_id": client_id})
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_deal_list_failed")


@deals_router.post("", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.create_deal(db, user, dto)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_deal_create_failed")


@deals_router.get("/stats", response_model=PipelineStatsRead)
def get_pipeline_stats(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStatsRead | JSONResponse:
    try:
        return deal_service.get_pipeline_stats(db, user)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_deal_stats_failed")


@deals_router.get("/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.get_deal(db, user, deal_id)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_deal_get_failed")


@deals_router.put("/{deal_id}", response_model=DealRead)
def update_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.update_deal(db, user, deal_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_deal_update_failed")


@deals_router.patch("/{deal_id}/stage", response_model=DealRead)
def change_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealStageChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.change_stage(db, user, deal_id, dto.stage, dto.reason)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_deal_change_stage_failed")


@deals_router.delete("/{deal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        deal_service.delete_deal(db, user, deal_id)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_deal_delete_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@deals_router.get("/{deal_id}/activities", response_model=list[ActivityRead])
def list_deal_activities(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        return activity_service.list_activities(db, user, deal_id)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_activity_list_failed")


@deals_router.post("/{deal_id}/activities", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def create_deal_activity(
    request: Request,
    deal_id: uuid.UUID,
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        return activity_service.create_activity(db, user, deal_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_activity_create_failed")


@clients_router.get("", response_model=list[ClientRead])
def list_clients(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ClientRead] | JSONResponse:
    try:
        return client_service.list_clients(db, user)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_client_list_failed")


@clients_router.post("", response_model=ClientRead, status_code=status.HTTP_201_CREATED)
def create_client(
    request: Request,
    dto: ClientCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return client_service.create_client(db, user, dto)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_client_create_failed")


@clients_router.get("/{client_id}", response_model=ClientRead)
def get_client(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return client_service.get_client(db, user, client_id)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_client_get_failed")


@clients_router.put("/{client_id}", response_model=ClientRead)
def update_client(
    request: Request,
    client_id: uuid.UUID,
    dto: ClientUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return client_service.update_client(db, user, client_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_client_update_failed")


@clients_router.delete("/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_client(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        client_service.delete_client(db, user, client_id)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_client_delete_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@notifications_router.get("", response_model=list[NotificationRead])
def list_notifications(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[NotificationRead] | JSONResponse:
    try:
        return notification_service.list_notifications(db, user)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_notification_list_failed")


@notifications_router.patch("/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    request: Request,
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NotificationRead | JSONResponse:
    try:
        return notification_service.mark_read(db, user, notification_id)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_notification_read_failed")


@pricing_router.post("/quote", response_model=PricingQuoteRead)
def quote_pricing(
    request: Request,
    dto: PricingQuoteRequest,
    user: ActorUser = Depends(get_current_user),
) -> PricingQuoteRead | JSONResponse:
    try:
        return pricing_service.quote(dto)
    except CRMError as exc:
        return crm_error_response(request, exc, "crm_pricing_quote_failed")
