from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import Select, and_, select
from sqlalchemy.orm import Session, joinedload

from salesdesk.crm.models import CRMActivity, CRMClient, CRMDeal, utcnow
from salesdesk.platform.security.context import AuthContext
from salesdesk.platform.security.errors import AuthorizationError
from salesdesk.platform.security.repository import BaseRepository


class ClientRepository(BaseRepository):
    resource = "crm.client"
    owner_column = "assigned_advisor_id"

    def create_client(self, session: Session, fields: dict[str, Any]) -> CRMClient:
        client = CRMClient(**fields)
        session.add(client)
        session.flush()
        return client

    def find_client(self, session: Session, client_id: uuid.UUID, scope: AuthContext) -> CRMClient | None:
        client = session.scalar(
            select(CRMClient).where(and_(CRMClient.id == client_id, CRMClient.deleted_at.is_(None)))
        )
        if client is None:
            return None
        try:
            self.validate_read_scope(client, scope)
        except AuthorizationError:
            return None
        return client

    def list_clients(self, session: Session, scope: AuthContext) -> list[CRMClient]:
        stmt: Select[tuple[CRMClient]] = select(CRMClient).where(CRMClient.deleted_at.is_(None))
        stmt = self.apply_scope_query(stmt, scope)
        return list(session.scalars(stmt.order_by(CRMClient.created_at.desc())).all())


class DealRepository(BaseRepository):
    """Record store for deals; every lookup is bound to the caller's organization and owner scope."""

    resource = "crm.deal"
    owner_column = "owner_id"

    def __init__(self, client_repository: ClientRepository | None = None) -> None:
        self.client_repository = client_repository or ClientRepository()

    def create_client(self, session: Session, fields: dict[str, Any]) -> CRMClient:
        return self.client_repository.create_client(session, fields)

    def create_deal(self, session: Session, fields: dict[str, Any]) -> CRMDeal:
        deal = CRMDeal(**fields)
        session.add(deal)
        session.flush()
        return deal

    def update_deal(self, session: Session, deal: CRMDeal, fields: dict[str, Any]) -> CRMDeal:
        for key, value in fields.items():
            setattr(deal, key, value)
        deal.row_version += 1
        deal.updated_at = utcnow()
        session.flush()
        return deal

    def find_deal(self, session: Session, deal_id: uuid.UUID, scope: AuthContext) -> CRMDeal | None:
        deal = session.scalar(
            select(CRMDeal)
            .options(joinedload(CRMDeal.client))
            .where(and_(CRMDeal.id == deal_id, CRMDeal.status == "active", CRMDeal.deleted_at.is_(None)))
        )
        if deal is None:
            return None
        try:
            self.validate_read_scope(deal, scope)
        except AuthorizationError:
            return None
        return deal

    def list_deals(
        self,
        session: Session,
        scope: AuthContext,
        filters: dict[str, Any] | None = None,
        *,
        include_deleted: bool = False,
    ) -> list[CRMDeal]:
        stmt: Select[tuple[CRMDeal]] = select(CRMDeal).options(joinedload(CRMDeal.client))
        if not include_deleted:
            stmt = stmt.where(and_(CRMDeal.status == "active", CRMDeal.deleted_at.is_(None)))

        filters = filters or {}
        if filters.get("stage"):
            stmt = stmt.where(CRMDeal.stage == filters["stage"])
        if filters.get("client_id"):
            stmt = stmt.where(CRMDeal.client_id == filters["client_id"])

        stmt = self.apply_scope_query(stmt, scope)
        return list(session.scalars(stmt.order_by(CRMDeal.updated_at.desc())).unique().all())

    def soft_delete_deal(self, session: Session, deal: CRMDeal) -> None:
        now = utcnow()
        deal.status = "deleted"
        deal.deleted_at = now
        deal.updated_at = now
        deal.row_version += 1
        session.flush()


class ActivityRepository(BaseRepository):
    resource = "crm.activity"

    def append(self, session: Session, fields: dict[str, Any]) -> CRMActivity:
        activity = CRMActivity(**fields)
        session.add(activity)
        session.flush()
        return activity

    def list_for_deal(self, session: Session, deal: CRMDeal, scope: AuthContext) -> list[CRMActivity]:
        stmt: Select[tuple[CRMActivity]] = select(CRMActivity).where(CRMActivity.deal_id == deal.id)
        stmt = self.apply_scope_query(stmt, scope)
        return list(
            session.scalars(stmt.order_by(CRMActivity.occurred_at.desc(), CRMActivity.created_at.desc())).all()
        )
