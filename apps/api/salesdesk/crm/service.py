from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from opentelemetry import trace
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from salesdesk import audit, events
from salesdesk.core.config import get_settings
from salesdesk.crm.errors import (
    AuthorizationError,
    ConflictError,
    CRMError,
    DependencyError,
    FieldError,
    NotFoundError,
    ValidationError,
)
from salesdesk.crm.models import CRMClient, CRMDeal, utcnow
from salesdesk.crm.notifications import NotificationGateway, NotificationInbox, notification_gateway
from salesdesk.crm.pricing import PricedLine, Sector, normalize_quantity, quote_line, totals_from_line
from salesdesk.crm.repositories import ActivityRepository, ClientRepository, DealRepository
from salesdesk.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    ClientCreate,
    ClientRead,
    ClientUpdate,
    DealCreate,
    DealRead,
    DealUpdate,
    LineItemRead,
    NotificationRead,
    PipelineStatsRead,
    PricingQuoteRead,
    PricingQuoteRequest,
    ProfitBreakdownRead,
    StageSummaryRead,
)
from salesdesk.crm.stages import (
    NEW_DEAL_STAGE,
    STAGE_ORDER,
    TERMINAL_STAGES,
    DealStage,
    default_probability,
    is_known_stage,
    to_display,
    to_persistence,
)
from salesdesk.metrics import observe_notification_failure, observe_stage_change
from salesdesk.platform.security.context import AuthContext


logger = logging.getLogger("salesdesk.crm")
tracer = trace.get_tracer("salesdesk.crm")

SYSTEM_ACTIVITY_TYPE = "Sistema"
_PRICING_FIELDS = ("amount", "quantity", "unit_cost", "unit_price", "profit_margin", "sector")


@dataclass
class ActorUser:
    user_id: str
    organization_id: str
    role: str = "SALES"
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role.upper() == "ADMIN"


def _to_auth_context(actor_user: ActorUser) -> AuthContext:
    return AuthContext(
        user_id=actor_user.user_id,
        organization_id=actor_user.organization_id,
        role=actor_user.role,
        correlation_id=actor_user.correlation_id,
    )


def _as_aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_money(value: float | Decimal | None) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(round(float(value), 2)))


def _to_float(value: Decimal | float | None) -> float | None:
    return float(value) if value is not None else None


def _event(event_type: str, actor_user: ActorUser, payload: dict[str, Any]) -> dict[str, Any]:
    return events.build_envelope(
        event_type,
        actor_user_id=actor_user.user_id,
        organization_id=actor_user.organization_id,
        payload=payload,
        correlation_id=actor_user.correlation_id,
    )


def _negative_field_errors(values: dict[str, Any]) -> list[FieldError]:
    errors: list[FieldError] = []
    for field in ("amount", "quantity", "unit_cost", "unit_price"):
        value = values.get(field)
        if value is not None and value < 0:
            errors.append(FieldError(field, f"{field} must not be negative"))
    return errors


def _append_note(notes: str | None, entry: str) -> str:
    if not notes:
        return entry
    return f"{notes}\n{entry}"


class ClientService:
    entity_type = "crm.client"

    def __init__(self, repository: ClientRepository | None = None) -> None:
        self.repository = repository or ClientRepository()

    def list_clients(self, session: Session, actor_user: ActorUser) -> list[ClientRead]:
        rows = self.repository.list_clients(session, _to_auth_context(actor_user))
        return [ClientRead.model_validate(row) for row in rows]

    def get_client(self, session: Session, actor_user: ActorUser, client_id: uuid.UUID) -> ClientRead:
        return ClientRead.model_validate(self._get_visible_client(session, actor_user, client_id))

    def create_client(self, session: Session, actor_user: ActorUser, dto: ClientCreate) -> ClientRead:
        fields = self.build_client_fields(actor_user, dto)
        try:
            client = self.repository.create_client(session, fields)
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("a client with this NIT already exists", details={"field": "nit"}) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("client.create_failed", extra={"error": str(exc)})
            raise DependencyError() from exc

        client_read = ClientRead.model_validate(client)
        envelope = _event("crm.client.created", actor_user, {"client_id": str(client.id)})
        audit.record_event(
            envelope,
            entity_type=self.entity_type,
            entity_id=str(client.id),
            action="create",
            after=client_read.model_dump(mode="json"),
        )
        events.publish(envelope)
        return client_read

    def update_client(
        self,
        session: Session,
        actor_user: ActorUser,
        client_id: uuid.UUID,
        dto: ClientUpdate,
    ) -> ClientRead:
        client = self._get_visible_client(session, actor_user, client_id)
        if dto.row_version is not None and dto.row_version != client.row_version:
            raise ConflictError("client was modified by another request", details={"row_version": client.row_version})

        changes = dto.model_dump(exclude_unset=True, exclude={"row_version"})
        if "name" in changes and not changes["name"]:
            raise ValidationError.for_field("name", "name must not be empty")
        if "sector" in changes:
            changes["sector"] = (changes["sector"] or Sector.PRIVATE).value
        advisor_id = changes.get("assigned_advisor_id")
        if advisor_id is None:
            changes.pop("assigned_advisor_id", None)
        elif advisor_id != client.assigned_advisor_id and not actor_user.is_admin:
            raise AuthorizationError("only administrators can reassign a client")

        before = ClientRead.model_validate(client).model_dump(mode="json")
        for key, value in changes.items():
            setattr(client, key, value)
        client.row_version += 1
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("a client with this NIT already exists", details={"field": "nit"}) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("client.update_failed", extra={"client_id": str(client_id), "error": str(exc)})
            raise DependencyError() from exc

        client_read = ClientRead.model_validate(client)
        envelope = _event("crm.client.updated", actor_user, {"client_id": str(client.id)})
        entry = audit.record_event(
            envelope,
            entity_type=self.entity_type,
            entity_id=str(client.id),
            action="update",
            before=before,
            after=client_read.model_dump(mode="json"),
        )
        envelope["payload"]["changed_fields"] = entry["changed_fields"]
        events.publish(envelope)
        return client_read

    def delete_client(self, session: Session, actor_user: ActorUser, client_id: uuid.UUID) -> None:
        client = self._get_visible_client(session, actor_user, client_id)
        client.deleted_at = utcnow()
        client.row_version += 1
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("client.delete_failed", extra={"client_id": str(client_id), "error": str(exc)})
            raise DependencyError() from exc

        envelope = _event("crm.client.deleted", actor_user, {"client_id": str(client_id)})
        audit.record_event(envelope, entity_type=self.entity_type, entity_id=str(client_id), action="delete")
        events.publish(envelope)

    def build_client_fields(self, actor_user: ActorUser, dto: ClientCreate) -> dict[str, Any]:
        advisor_id = dto.assigned_advisor_id or actor_user.user_id
        if advisor_id != actor_user.user_id and not actor_user.is_admin:
            raise AuthorizationError("only administrators can assign a client to another advisor")
        return {
            "organization_id": actor_user.organization_id,
            "name": dto.name,
            "company": dto.company,
            "email": dto.email,
            "phone": dto.phone,
            "address": dto.address,
            "nit": dto.nit,
            "sector": dto.sector.value,
            "assigned_advisor_id": advisor_id,
        }

    def _get_visible_client(self, session: Session, actor_user: ActorUser, client_id: uuid.UUID) -> CRMClient:
        client = self.repository.find_client(session, client_id, _to_auth_context(actor_user))
        if client is None:
            raise NotFoundError("client not found")
        return client


class DealService:
    """Pipeline controller: the only code path that mutates a deal.

    Every operation is scoped to the caller's organization, and non-admin callers only ever
    see deals they own. Records outside that scope are reported as not found.
    """

    entity_type = "crm.deal"

    def __init__(
        self,
        repository: DealRepository | None = None,
        activity_repository: ActivityRepository | None = None,
        notifier: NotificationGateway | None = None,
        client_service: ClientService | None = None,
    ) -> None:
        self.repository = repository or DealRepository()
        self.activity_repository = activity_repository or ActivityRepository()
        self.notifier = notifier or notification_gateway
        self.client_service = client_service or ClientService(self.repository.client_repository)

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        with tracer.start_as_current_span("crm.deal.create") as span:
            span.set_attribute("correlation_id", actor_user.correlation_id or "")
            self._validate_create(dto)

            owner_id = dto.owner_id or actor_user.user_id
            if owner_id != actor_user.user_id and not actor_user.is_admin:
                raise AuthorizationError("only administrators can assign a deal to another user")

            stage = to_persistence(dto.stage) if dto.stage else NEW_DEAL_STAGE
            scope = _to_auth_context(actor_user)
            try:
                client = self._resolve_client(session, actor_user, scope, dto)
                sector = dto.sector or Sector(client.sector)
                fields = {
                    "organization_id": actor_user.organization_id,
                    "owner_id": owner_id,
                    "client_id": client.id,
                    "title": dto.title.strip(),
                    "sector": sector.value,
                    "stage": stage.value,
                    "probability": dto.probability if dto.probability is not None else (default_probability(stage) or 30),
                    "expected_close_date": dto.expected_close_date,
                    "notes": dto.notes,
                    "closed_at": utcnow() if stage in TERMINAL_STAGES else None,
                    **self._priced_fields(
                        amount=dto.amount,
                        quantity=dto.quantity,
                        unit_cost=dto.unit_cost,
                        unit_price=dto.unit_price,
                        profit_margin=dto.profit_margin,
                        sector=sector,
                        unit_price_edited=dto.unit_price is not None,
                    ),
                }
                deal = self.repository.create_deal(session, fields)
                self._log_system_activity(session, actor_user, deal, "Oportunidad Creada")
                session.commit()
            except CRMError:
                session.rollback()
                raise
            except IntegrityError as exc:
                session.rollback()
                logger.warning("deal.create_conflict", extra={"error": str(exc)})
                raise ConflictError("deal conflicts with an existing record") from exc
            except SQLAlchemyError as exc:
                session.rollback()
                logger.exception("deal.create_failed", extra={"error": str(exc)})
                raise DependencyError() from exc

            span.set_attribute("deal_id", str(deal.id))
            deal_read = self._to_read(deal)
            logger.info("deal.created", extra={"deal_id": str(deal.id), "stage": stage.value})

        self._notify_owner(
            session,
            deal,
            title="Nueva oportunidad asignada",
            message=f"Se registró la oportunidad '{deal_read.title}' en etapa {deal_read.stage}.",
            kind="info",
        )
        envelope = _event(
            "crm.deal.created",
            actor_user,
            {
                "deal_id": str(deal_read.id),
                "client_id": str(deal_read.client_id),
                "owner_id": deal_read.owner_id,
                "stage": deal_read.stage_code,
            },
        )
        audit.record_event(
            envelope,
            entity_type=self.entity_type,
            entity_id=str(deal_read.id),
            action="create",
            after=deal_read.model_dump(mode="json"),
        )
        events.publish(envelope)
        return deal_read

    def list_deals(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any] | None = None,
    ) -> list[DealRead]:
        resolved_filters = dict(filters or {})
        stage_filter = resolved_filters.get("stage")
        if stage_filter:
            if not is_known_stage(stage_filter):
                raise ValidationError.for_field("stage", f"unknown stage '{stage_filter}'")
            resolved_filters["stage"] = to_persistence(stage_filter).value

        deals = self.repository.list_deals(session, _to_auth_context(actor_user), resolved_filters)
        now = utcnow()
        return [self._to_read(deal, now=now) for deal in deals]

    def get_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        return self._to_read(self._get_visible_deal(session, actor_user, deal_id))

    def update_deal(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: DealUpdate,
    ) -> DealRead:
        deal = self._get_visible_deal(session, actor_user, deal_id)
        if dto.row_version is not None and dto.row_version != deal.row_version:
            raise ConflictError("deal was modified by another request", details={"row_version": deal.row_version})

        if dto.stage is not None and to_persistence(dto.stage).value != deal.stage:
            logger.warning(
                "deal.update.stage_ignored",
                extra={"deal_id": str(deal.id), "from_stage": deal.stage, "to_stage": dto.stage},
            )

        changes = dto.model_dump(exclude_unset=True, exclude={"row_version", "stage"})
        errors = _negative_field_errors(changes)
        if "title" in changes and not (changes["title"] or "").strip():
            errors.append(FieldError("title", "title must not be empty"))
        if errors:
            raise ValidationError("Invalid deal", field_errors=errors)

        fields: dict[str, Any] = {}
        if changes.get("title"):
            fields["title"] = changes["title"].strip()
        for key in ("expected_close_date", "notes"):
            if key in changes:
                fields[key] = changes[key]
        if changes.get("probability") is not None:
            fields["probability"] = changes["probability"]

        owner_id = changes.get("owner_id")
        if owner_id and owner_id != deal.owner_id:
            if not actor_user.is_admin:
                raise AuthorizationError("only administrators can reassign a deal")
            fields["owner_id"] = owner_id

        client_id = changes.get("client_id")
        if client_id and client_id != deal.client_id:
            client = self.repository.client_repository.find_client(session, client_id, _to_auth_context(actor_user))
            if client is None:
                raise NotFoundError("client not found", details={"field": "client_id"})
            fields["client_id"] = client.id

        if any(key in changes for key in _PRICING_FIELDS):
            # the stored unit price stays authoritative unless the margin itself was edited
            price_drives = "unit_price" in changes or (
                "profit_margin" not in changes and deal.unit_price is not None
            )
            sector = changes.get("sector") or Sector(deal.sector)
            fields["sector"] = sector.value
            fields.update(
                self._priced_fields(
                    amount=changes.get("amount", _to_float(deal.amount)),
                    quantity=changes.get("quantity", deal.quantity),
                    unit_cost=changes.get("unit_cost", _to_float(deal.unit_cost)),
                    unit_price=changes.get("unit_price", _to_float(deal.unit_price)),
                    profit_margin=changes.get("profit_margin", _to_float(deal.profit_margin)),
                    sector=sector,
                    unit_price_edited=price_drives,
                )
            )

        before = self._to_read(deal).model_dump(mode="json")
        try:
            self.repository.update_deal(session, deal, fields)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("deal.update_failed", extra={"deal_id": str(deal_id), "error": str(exc)})
            raise DependencyError() from exc

        deal_read = self._to_read(deal)
        envelope = _event("crm.deal.updated", actor_user, {"deal_id": str(deal_read.id)})
        entry = audit.record_event(
            envelope,
            entity_type=self.entity_type,
            entity_id=str(deal_read.id),
            action="update",
            before=before,
            after=deal_read.model_dump(mode="json"),
        )
        envelope["payload"]["changed_fields"] = entry["changed_fields"]
        events.publish(envelope)
        return deal_read

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        stage: str,
        reason: str | None = None,
    ) -> DealRead:
        with tracer.start_as_current_span("crm.deal.change_stage") as span:
            span.set_attribute("deal_id", str(deal_id))
            span.set_attribute("correlation_id", actor_user.correlation_id or "")

            if not is_known_stage(stage):
                raise ValidationError.for_field("stage", f"unknown stage '{stage}'")
            target = to_persistence(stage)
            reason_text = (reason or "").strip()
            if target is DealStage.CLOSED_LOST and not reason_text:
                raise ValidationError.for_field("reason", "a reason is required to mark a deal as lost")

            deal = self._get_visible_deal(session, actor_user, deal_id)
            current = to_persistence(deal.stage)
            if target is current and not reason_text:
                return self._to_read(deal)

            now = utcnow()
            target_label = to_display(target).value
            fields: dict[str, Any] = {
                "stage": target.value,
                "closed_at": now if target in TERMINAL_STAGES else None,
            }
            if reason_text:
                fields["notes"] = _append_note(deal.notes, f"[{now:%Y-%m-%d %H:%M}] [Cambio a {target_label}]: {reason_text}")
            probability = default_probability(target)
            if probability is not None:
                fields["probability"] = probability

            before = self._to_read(deal).model_dump(mode="json")
            try:
                self.repository.update_deal(session, deal, fields)
                if target is not current:
                    self._log_system_activity(
                        session,
                        actor_user,
                        deal,
                        f"Cambio de etapa de {to_display(current).value} a {target_label}",
                    )
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.exception("deal.change_stage_failed", extra={"deal_id": str(deal_id), "error": str(exc)})
                raise DependencyError() from exc

            span.set_attribute("from_stage", current.value)
            span.set_attribute("to_stage", target.value)
            deal_read = self._to_read(deal)

        if target is not current:
            observe_stage_change(current.value, target.value)
            logger.info(
                "deal.stage_changed",
                extra={"deal_id": str(deal_id), "from_stage": current.value, "to_stage": target.value},
            )
            kind = {DealStage.CLOSED_WON: "success", DealStage.CLOSED_LOST: "warning"}.get(target, "info")
            self._notify_owner(
                session,
                deal,
                title="Cambio de etapa",
                message=f"La oportunidad '{deal_read.title}' pasó de {to_display(current).value} a {target_label}.",
                kind=kind,
            )
            envelope = _event(
                "crm.deal.stage_changed",
                actor_user,
                {
                    "deal_id": str(deal_id),
                    "from_stage": current.value,
                    "to_stage": target.value,
                    "reason": reason_text or None,
                },
            )
        else:
            envelope = _event("crm.deal.updated", actor_user, {"deal_id": str(deal_id), "changed_fields": ["notes"]})

        audit.record_event(
            envelope,
            entity_type=self.entity_type,
            entity_id=str(deal_id),
            action="change_stage",
            before=before,
            after=deal_read.model_dump(mode="json"),
        )
        events.publish(envelope)
        return deal_read

    def delete_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> None:
        deal = self._get_visible_deal(session, actor_user, deal_id)
        before = self._to_read(deal).model_dump(mode="json")
        try:
            self.repository.soft_delete_deal(session, deal)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("deal.delete_failed", extra={"deal_id": str(deal_id), "error": str(exc)})
            raise DependencyError() from exc

        envelope = _event("crm.deal.deleted", actor_user, {"deal_id": str(deal_id)})
        audit.record_event(envelope, entity_type=self.entity_type, entity_id=str(deal_id), action="delete", before=before)
        events.publish(envelope)

    def get_pipeline_stats(self, session: Session, actor_user: ActorUser) -> PipelineStatsRead:
        deals = self.repository.list_deals(session, _to_auth_context(actor_user), include_deleted=True)
        now = utcnow()
        per_stage: dict[DealStage, list[float]] = {stage: [0, 0.0] for stage in STAGE_ORDER}
        totals = {"active": 0, "won": 0, "lost": 0, "deleted": 0, "stagnant": 0}
        amount_pipeline = 0.0
        amount_won = 0.0
        weighted_pipeline = 0.0

        for deal in deals:
            if deal.status == "deleted" or deal.deleted_at is not None:
                totals["deleted"] += 1
                continue
            stage = to_persistence(deal.stage)
            amount = float(deal.amount)
            per_stage[stage][0] += 1
            per_stage[stage][1] += amount
            if stage is DealStage.CLOSED_WON:
                totals["won"] += 1
                amount_won += amount
            elif stage is DealStage.CLOSED_LOST:
                totals["lost"] += 1
            else:
                totals["active"] += 1
                amount_pipeline += amount
                weighted_pipeline += amount * deal.probability / 100
                if self._is_stagnant(deal, now):
                    totals["stagnant"] += 1

        return PipelineStatsRead(
            total_active=totals["active"],
            total_won=totals["won"],
            total_lost=totals["lost"],
            total_deleted=totals["deleted"],
            amount_pipeline=round(amount_pipeline, 2),
            amount_won=round(amount_won, 2),
            weighted_pipeline=round(weighted_pipeline, 2),
            stagnant_count=totals["stagnant"],
            by_stage=[
                StageSummaryRead(
                    stage=to_display(stage).value,
                    stage_code=stage.value,
                    count=int(per_stage[stage][0]),
                    amount=round(per_stage[stage][1], 2),
                )
                for stage in STAGE_ORDER
            ],
        )

    def get_visible_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> CRMDeal:
        return self._get_visible_deal(session, actor_user, deal_id)

    def _validate_create(self, dto: DealCreate) -> None:
        errors = _negative_field_errors(dto.model_dump())
        if not dto.title.strip():
            errors.append(FieldError("title", "title must not be empty"))
        if dto.client_id is None and dto.client is None:
            errors.append(FieldError("client_id", "an existing client or new client details are required"))
        if dto.client_id is not None and dto.client is not None:
            errors.append(FieldError("client", "provide either client_id or client, not both"))
        if dto.stage and not is_known_stage(dto.stage):
            errors.append(FieldError("stage", f"unknown stage '{dto.stage}'"))
        if errors:
            raise ValidationError("Invalid deal", field_errors=errors)

    def _resolve_client(
        self,
        session: Session,
        actor_user: ActorUser,
        scope: AuthContext,
        dto: DealCreate,
    ) -> CRMClient:
        if dto.client_id is not None:
            client = self.repository.client_repository.find_client(session, dto.client_id, scope)
            if client is None:
                raise NotFoundError("client not found", details={"field": "client_id"})
            return client

        if dto.client is None:
            raise ValidationError.for_field("client_id", "an existing client or new client details are required")
        fields = self.client_service.build_client_fields(actor_user, dto.client)
        try:
            client = self.repository.create_client(session, fields)
        except IntegrityError as exc:
            raise ConflictError("a client with this NIT already exists", details={"field": "client.nit"}) from exc
        logger.info("client.created_inline", extra={"client_id": str(client.id)})
        return client

    def _priced_fields(
        self,
        *,
        amount: float | None,
        quantity: int | None,
        unit_cost: float | None,
        unit_price: float | None,
        profit_margin: float | None,
        sector: Sector,
        unit_price_edited: bool,
    ) -> dict[str, Any]:
        resolved_quantity = int(normalize_quantity(quantity))
        if unit_cost is not None:
            line: PricedLine = quote_line(
                unit_cost,
                resolved_quantity,
                sector,
                margin_percent=None if unit_price_edited else profit_margin,
                unit_price=unit_price if unit_price_edited or profit_margin is None else None,
            )
            return {
                "amount": _to_money(line.amount),
                "quantity": line.quantity,
                "unit_cost": _to_money(unit_cost),
                "unit_price": _to_money(line.unit_price),
                "profit_margin": _to_money(line.margin_percent),
            }
        if unit_price is not None:
            return {
                "amount": _to_money(totals_from_line(round(unit_price, 2), resolved_quantity)),
                "quantity": resolved_quantity,
                "unit_cost": None,
                "unit_price": _to_money(unit_price),
                "profit_margin": _to_money(profit_margin),
            }
        return {
            "amount": _to_money(amount or 0),
            "quantity": resolved_quantity,
            "unit_cost": None,
            "unit_price": None,
            "profit_margin": _to_money(profit_margin),
        }

    def _log_system_activity(self, session: Session, actor_user: ActorUser, deal: CRMDeal, description: str) -> None:
        self.activity_repository.append(
            session,
            {
                "organization_id": deal.organization_id,
                "deal_id": deal.id,
                "client_id": deal.client_id,
                "activity_type": SYSTEM_ACTIVITY_TYPE,
                "description": description,
                "responsible_user_id": actor_user.user_id,
            },
        )

    def _notify_owner(self, session: Session, deal: CRMDeal, *, title: str, message: str, kind: str) -> None:
        owner_id = deal.owner_id
        organization_id = deal.organization_id
        deal_id = deal.id
        try:
            self.notifier.notify(
                session,
                user_id=owner_id,
                organization_id=organization_id,
                title=title,
                message=message,
                kind=kind,
                entity_type="deal",
                entity_id=deal_id,
            )
        except Exception as exc:
            session.rollback()
            observe_notification_failure(kind)
            logger.warning(
                "notification.failed",
                exc_info=True,
                extra={"deal_id": str(deal_id), "user_id": owner_id, "kind": kind, "error": str(exc)},
            )

    def _get_visible_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> CRMDeal:
        deal = self.repository.find_deal(session, deal_id, _to_auth_context(actor_user))
        if deal is None:
            raise NotFoundError("deal not found")
        return deal

    def _is_stagnant(self, deal: CRMDeal, now: datetime) -> bool:
        if to_persistence(deal.stage) in TERMINAL_STAGES:
            return False
        updated_at = _as_aware(deal.updated_at) or now
        return now - updated_at > timedelta(days=get_settings().stagnation_days)

    def _to_read(self, deal: CRMDeal, *, now: datetime | None = None) -> DealRead:
        stage = to_persistence(deal.stage)
        return DealRead(
            id=deal.id,
            organization_id=deal.organization_id,
            owner_id=deal.owner_id,
            client_id=deal.client_id,
            client_name=deal.client.name if deal.client is not None else None,
            title=deal.title,
            amount=float(deal.amount),
            quantity=deal.quantity,
            unit_cost=_to_float(deal.unit_cost),
            unit_price=_to_float(deal.unit_price),
            profit_margin=_to_float(deal.profit_margin),
            sector=deal.sector,
            stage=to_display(stage).value,
            stage_code=stage.value,
            probability=deal.probability,
            expected_close_date=deal.expected_close_date,
            notes=deal.notes,
            status=deal.status,
            is_stagnant=self._is_stagnant(deal, now or utcnow()),
            closed_at=deal.closed_at,
            created_at=deal.created_at,
            updated_at=deal.updated_at,
            row_version=deal.row_version,
        )


class ActivityService:
    entity_type = "crm.activity"

    def __init__(
        self,
        repository: ActivityRepository | None = None,
        deal_service: DealService | None = None,
    ) -> None:
        self.repository = repository or ActivityRepository()
        self.deal_service = deal_service or DealService(activity_repository=self.repository)

    def list_activities(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> list[ActivityRead]:
        deal = self.deal_service.get_visible_deal(session, actor_user, deal_id)
        rows = self.repository.list_for_deal(session, deal, _to_auth_context(actor_user))
        return [ActivityRead.model_validate(row) for row in rows]

    def create_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: ActivityCreate,
    ) -> ActivityRead:
        deal = self.deal_service.get_visible_deal(session, actor_user, deal_id)
        fields: dict[str, Any] = {
            "organization_id": deal.organization_id,
            "deal_id": deal.id,
            "client_id": deal.client_id,
            "activity_type": dto.activity_type.strip(),
            "description": dto.description.strip(),
            "responsible_user_id": actor_user.user_id,
        }
        if dto.occurred_at is not None:
            fields["occurred_at"] = _as_aware(dto.occurred_at)
        try:
            activity = self.repository.append(session, fields)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("activity.create_failed", extra={"deal_id": str(deal_id), "error": str(exc)})
            raise DependencyError() from exc

        activity_read = ActivityRead.model_validate(activity)
        events.publish(
            _event(
                "crm.activity.created",
                actor_user,
                {"activity_id": str(activity.id), "deal_id": str(deal_id), "activity_type": activity.activity_type},
            )
        )
        return activity_read


class NotificationService:
    def __init__(self, inbox: NotificationInbox | None = None) -> None:
        self.inbox = inbox or NotificationInbox(page_size=get_settings().notifications_page_size)

    def list_notifications(self, session: Session, actor_user: ActorUser) -> list[NotificationRead]:
        rows = self.inbox.list_notifications(
            session,
            user_id=actor_user.user_id,
            organization_id=actor_user.organization_id,
        )
        return [NotificationRead.model_validate(row) for row in rows]

    def mark_read(self, session: Session, actor_user: ActorUser, notification_id: uuid.UUID) -> NotificationRead:
        try:
            notification = self.inbox.mark_read(
                session,
                notification_id=notification_id,
                user_id=actor_user.user_id,
                organization_id=actor_user.organization_id,
            )
            if notification is None:
                raise NotFoundError("notification not found")
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("notification.mark_read_failed", extra={"error": str(exc)})
            raise DependencyError() from exc
        return NotificationRead.model_validate(notification)


class PricingService:
    def quote(self, dto: PricingQuoteRequest) -> PricingQuoteRead:
        line = quote_line(
            dto.unit_cost,
            dto.quantity,
            dto.sector,
            margin_percent=dto.profit_margin,
            unit_price=dto.unit_price,
        )
        breakdown = line.breakdown
        return PricingQuoteRead(
            sector=breakdown.sector.value,
            quantity=line.quantity,
            unit_cost=line.unit_cost,
            unit_price=line.unit_price,
            profit_margin=line.margin_percent,
            amount=line.amount,
            breakdown=ProfitBreakdownRead(
                base_amount=breakdown.base_amount,
                tax=breakdown.tax,
                withholding=breakdown.withholding,
                tax_retention=breakdown.tax_retention,
                total_cost=breakdown.total_cost,
                gross_profit=breakdown.gross_profit,
                net_profit=breakdown.net_profit,
                cash_received=breakdown.cash_received,
                line_items=[LineItemRead(label=item.label, amount=item.amount) for item in breakdown.line_items],
            ),
        )
