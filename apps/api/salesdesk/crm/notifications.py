from __future__ import annotations

import logging
import uuid

from sqlalchemy import and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from salesdesk import events
from salesdesk.crm.models import CRMNotification


logger = logging.getLogger("salesdesk.crm.notifications")

NOTIFICATION_KINDS = frozenset({"info", "success", "warning", "error"})


class NotificationGateway:
    """Side channel that tells a user about changes to records they own.

    Delivery is a persisted inbox row plus an in-process event. Failures are raised to the
    caller, which is expected to log and drop them.
    """

    def notify(
        self,
        session: Session,
        *,
        user_id: str,
        organization_id: str,
        title: str,
        message: str,
        kind: str = "info",
        entity_type: str | None = None,
        entity_id: uuid.UUID | None = None,
    ) -> CRMNotification:
        notification = CRMNotification(
            organization_id=organization_id,
            user_id=user_id,
            title=title,
            message=message,
            kind=kind if kind in NOTIFICATION_KINDS else "info",
            entity_type=entity_type,
            entity_id=entity_id,
        )
        session.add(notification)
        try:
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise

        events.publish(
            events.build_envelope(
                "crm.notification.created",
                actor_user_id=None,
                organization_id=organization_id,
                payload={
                    "notification_id": str(notification.id),
                    "user_id": user_id,
                    "kind": notification.kind,
                    "entity_type": entity_type,
                    "entity_id": str(entity_id) if entity_id else None,
                },
            )
        )
        logger.info("notification.created", extra={"user_id": user_id, "kind": notification.kind})
        return notification


class NotificationInbox:
    def __init__(self, page_size: int = 50) -> None:
        self.page_size = page_size

    def list_notifications(
        self,
        session: Session,
        *,
        user_id: str,
        organization_id: str,
        limit: int | None = None,
    ) -> list[CRMNotification]:
        rows = session.scalars(
            select(CRMNotification)
            .where(and_(CRMNotification.organization_id == organization_id, CRMNotification.user_id == user_id))
            .order_by(CRMNotification.created_at.desc())
            .limit(limit or self.page_size)
        ).all()
        return list(rows)

    def mark_read(
        self,
        session: Session,
        *,
        notification_id: uuid.UUID,
        user_id: str,
        organization_id: str,
    ) -> CRMNotification | None:
        notification = session.scalar(
            select(CRMNotification).where(
                and_(
                    CRMNotification.id == notification_id,
                    CRMNotification.organization_id == organization_id,
                    CRMNotification.user_id == user_id,
                )
            )
        )
        if notification is None:
            return None
        notification.is_read = True
        session.flush()
        return notification


notification_gateway = NotificationGateway()
