from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from datetime import timedelta

import pytest
from sqlalchemy import create_engine, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesdesk import audit, events
from salesdesk.core.database import Base
from salesdesk.crm.errors import AuthorizationError, ConflictError, DependencyError, NotFoundError, ValidationError
from salesdesk.crm.models import CRMActivity, CRMClient, CRMDeal, CRMNotification, utcnow
from salesdesk.crm.schemas import ClientCreate, DealCreate, DealUpdate
from salesdesk.crm.service import ActorUser, ClientService, DealService, _to_auth_context


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def service() -> DealService:
    return DealService()


@pytest.fixture()
def sales_user() -> ActorUser:
    return ActorUser(user_id="user-1", organization_id="org-1", role="SALES", correlation_id="corr-svc")


@pytest.fixture()
def other_sales_user() -> ActorUser:
    return ActorUser(user_id="user-2", organization_id="org-1", role="SALES")


@pytest.fixture()
def admin_user() -> ActorUser:
    return ActorUser(user_id="admin-1", organization_id="org-1", role="ADMIN")


def _create_deal(service: DealService, session: Session, actor: ActorUser, **overrides: object):
    payload: dict[str, object] = {
        "title": "Laptops for branch office",
        "client": {"name": "Acme", "nit": f"NIT-{uuid.uuid4().hex[:8]}"},
        "amount": 5000,
    }
    payload.update(overrides)
    return service.create_deal(session, actor, DealCreate(**payload))


def test_create_deal_with_inline_client_starts_in_contacted(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
) -> None:
    deal = _create_deal(service, db_session, sales_user)

    assert deal.stage == "Contactado"
    assert deal.stage_code == "CONTACTED"
    assert deal.probability == 30
    assert deal.owner_id == "user-1"
    assert deal.organization_id == "org-1"
    assert deal.client_name == "Acme"
    assert deal.amount == 5000.0
    assert deal.is_stagnant is False

    activities = db_session.scalars(select(CRMActivity).where(CRMActivity.deal_id == deal.id)).all()
    assert [item.description for item in activities] == ["Oportunidad Creada"]
    assert activities[0].activity_type == "Sistema"

    notifications = db_session.scalars(select(CRMNotification)).all()
    assert len(notifications) == 1
    assert notifications[0].user_id == "user-1"
    assert notifications[0].entity_id == deal.id

    created = [item for item in events.published_events if item["event_type"] == "crm.deal.created"]
    assert created and created[-1]["correlation_id"] == "corr-svc"
    assert any(entry["entity_type"] == "crm.deal" and entry["action"] == "create" for entry in audit.audit_entries)


def test_create_deal_prices_line_from_cost_and_margin(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
) -> None:
    deal = _create_deal(service, db_session, sales_user, unit_cost=1000, profit_margin=20, quantity=2, amount=None)

    assert deal.unit_price == 1400.0
    assert deal.profit_margin == 20.0
    assert deal.amount == 2800.0
    assert deal.quantity == 2


def test_quantity_edit_keeps_the_unit_price_the_user_entered(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
) -> None:
    deal = _create_deal(service, db_session, sales_user, unit_cost=1000, unit_price=1500, amount=None)
    assert deal.unit_price == 1500.0
    assert deal.profit_margin == 25.33

    updated = service.update_deal(db_session, sales_user, deal.id, DealUpdate(quantity=2))

    assert updated.unit_price == 1500.0
    assert updated.profit_margin == 25.33
    assert updated.amount == 3000.0

    recosted = service.update_deal(db_session, sales_user, deal.id, DealUpdate(unit_cost=1200))

    assert recosted.unit_price == 1500.0
    assert recosted.profit_margin == 10.4
    assert recosted.amount == 3000.0


def test_margin_edit_reprices_the_line(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
) -> None:
    deal = _create_deal(service, db_session, sales_user, unit_cost=1000, unit_price=1500, quantity=2, amount=None)

    updated = service.update_deal(db_session, sales_user, deal.id, DealUpdate(profit_margin=20))

    assert updated.unit_price == 1400.0
    assert updated.profit_margin == 20.0
    assert updated.amount == 2800.0


def test_resolve_client_without_any_client_reference_is_a_validation_error(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
) -> None:
    dto = DealCreate.model_construct(title="No client", client_id=None, client=None)

    with pytest.raises(ValidationError) as exc_info:
        service._resolve_client(db_session, sales_user, _to_auth_context(sales_user), dto)

    assert exc_info.value.field_errors[0].field == "client_id"


def test_create_deal_requires_a_client(service: DealService, db_session: Session, sales_user: ActorUser) -> None:
    with pytest.raises(ValidationError) as exc_info:
        service.create_deal(db_session, sales_user, DealCreate(title="No client", amount=10))

    assert exc_info.value.details[0]["field"] == "client_id"


def test_create_deal_rejects_negative_amount(service: DealService, db_session: Session, sales_user: ActorUser) -> None:
    with pytest.raises(ValidationError):
        _create_deal(service, db_session, sales_user, amount=-1)

    assert db_session.scalar(select(func.count()).select_from(CRMClient)) == 0


def test_sales_user_cannot_assign_deal_to_someone_else(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
) -> None:
    with pytest.raises(AuthorizationError):
        _create_deal(service, db_session, sales_user, owner_id="user-2")


def test_duplicate_inline_client_leaves_no_partial_records(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
) -> None:
    ClientService().create_client(db_session, sales_user, ClientCreate(name="Existing", nit="123"))

    with pytest.raises(ConflictError):
        _create_deal(service, db_session, sales_user, client={"name": "Dup", "nit": "123"})

    assert db_session.scalar(select(func.count()).select_from(CRMClient)) == 1
    assert db_session.scalar(select(func.count()).select_from(CRMDeal)) == 0


def test_failed_deal_insert_rolls_back_inline_client(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def failing_create_deal(session: Session, fields: dict) -> CRMDeal:
        raise SQLAlchemyError("insert failed")

    monkeypatch.setattr(service.repository, "create_deal", failing_create_deal)

    with pytest.raises(DependencyError) as exc_info:
        _create_deal(service, db_session, sales_user)

    assert "insert failed" not in exc_info.value.message
    assert db_session.scalar(select(func.count()).select_from(CRMClient)) == 0


def test_change_stage_to_lost_requires_reason(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
) -> None:
    deal = _create_deal(service, db_session, sales_user)

    with pytest.raises(ValidationError) as exc_info:
        service.change_stage(db_session, sales_user, deal.id, "Perdida", "   ")

    assert exc_info.value.details[0]["field"] == "reason"
    assert service.get_deal(db_session, sales_user, deal.id).stage_code == "CONTACTED"


def test_change_stage_to_lost_appends_note_and_activity(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
) -> None:
    deal = _create_deal(service, db_session, sales_user, notes="Primer contacto por teléfono")

    updated = service.change_stage(db_session, sales_user, deal.id, "Perdida", "Precio muy alto")

    assert updated.stage == "Perdida"
    assert updated.probability == 0
    assert updated.closed_at is not None
    assert updated.notes is not None
    first_line, second_line = updated.notes.split("\n")
    assert first_line == "Primer contacto por teléfono"
    assert second_line.endswith("[Cambio a Perdida]: Precio muy alto")
    assert second_line.startswith("[20")

    descriptions = [
        item.description for item in db_session.scalars(select(CRMActivity).where(CRMActivity.deal_id == deal.id))
    ]
    assert "Cambio de etapa de Contactado a Perdida" in descriptions

    stage_events = [item for item in events.published_events if item["event_type"] == "crm.deal.stage_changed"]
    assert stage_events[-1]["payload"]["from_stage"] == "CONTACTED"
    assert stage_events[-1]["payload"]["to_stage"] == "CLOSED_LOST"


def test_change_stage_to_won_sets_probability(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
) -> None:
    deal = _create_deal(service, db_session, sales_user)

    updated = service.change_stage(db_session, sales_user, deal.id, "Ganada")

    assert updated.stage_code == "CLOSED_WON"
    assert updated.probability == 100
    assert updated.notes is None


def test_change_stage_rejects_unknown_stage(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
) -> None:
    deal = _create_deal(service, db_session, sales_user)

    with pytest.raises(ValidationError):
        service.change_stage(db_session, sales_user, deal.id, "Archivada")


def test_update_deal_never_changes_stage(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING, logger="salesdesk.crm")
    deal = _create_deal(service, db_session, sales_user)

    updated = service.update_deal(
        db_session,
        sales_user,
        deal.id,
        DealUpdate(title="Renamed deal", stage="Ganada", amount=7500),
    )

    assert updated.title == "Renamed deal"
    assert updated.amount == 7500.0
    assert updated.stage_code == "CONTACTED"
    assert updated.row_version == deal.row_version + 1
    assert any(record.getMessage() == "deal.update.stage_ignored" for record in caplog.records)


def test_update_deal_detects_stale_row_version(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
) -> None:
    deal = _create_deal(service, db_session, sales_user)
    service.update_deal(db_session, sales_user, deal.id, DealUpdate(title="First edit"))

    with pytest.raises(ConflictError):
        service.update_deal(db_session, sales_user, deal.id, DealUpdate(title="Stale edit", row_version=deal.row_version))


def test_delete_deal_is_soft(service: DealService, db_session: Session, sales_user: ActorUser) -> None:
    deal = _create_deal(service, db_session, sales_user)

    service.delete_deal(db_session, sales_user, deal.id)

    with pytest.raises(NotFoundError):
        service.get_deal(db_session, sales_user, deal.id)
    stored = db_session.get(CRMDeal, deal.id)
    assert stored is not None
    assert stored.status == "deleted"
    assert stored.deleted_at is not None
    assert service.list_deals(db_session, sales_user) == []
    assert service.get_pipeline_stats(db_session, sales_user).total_deleted == 1


def test_non_admin_only_sees_own_deals(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
    other_sales_user: ActorUser,
    admin_user: ActorUser,
) -> None:
    mine = _create_deal(service, db_session, sales_user)
    _create_deal(service, db_session, other_sales_user)

    assert [item.id for item in service.list_deals(db_session, sales_user)] == [mine.id]
    assert len(service.list_deals(db_session, admin_user)) == 2

    with pytest.raises(NotFoundError):
        service.get_deal(db_session, other_sales_user, mine.id)
    assert any(entry["action"] == "rls.denied" for entry in audit.audit_entries)


def test_deals_are_invisible_across_organizations(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
) -> None:
    deal = _create_deal(service, db_session, sales_user)
    foreign_admin = ActorUser(user_id="admin-9", organization_id="org-2", role="ADMIN")

    assert service.list_deals(db_session, foreign_admin) == []
    with pytest.raises(NotFoundError):
        service.change_stage(db_session, foreign_admin, deal.id, "Ganada")


def test_list_deals_filters_by_stage_label(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
) -> None:
    first = _create_deal(service, db_session, sales_user)
    _create_deal(service, db_session, sales_user)
    service.change_stage(db_session, sales_user, first.id, "Propuesta")

    proposals = service.list_deals(db_session, sales_user, {"stage": "Propuesta"})

    assert [item.id for item in proposals] == [first.id]
    with pytest.raises(ValidationError):
        service.list_deals(db_session, sales_user, {"stage": "nope"})


def test_stale_open_deals_are_flagged_and_counted(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
) -> None:
    stale = _create_deal(service, db_session, sales_user, amount=1000)
    won = _create_deal(service, db_session, sales_user, amount=3000)
    service.change_stage(db_session, sales_user, won.id, "Ganada")

    old = utcnow() - timedelta(days=45)
    db_session.execute(update(CRMDeal).where(CRMDeal.id.in_([stale.id, won.id])).values(updated_at=old))
    db_session.commit()
    db_session.expire_all()

    flagged = {item.id: item.is_stagnant for item in service.list_deals(db_session, sales_user)}
    assert flagged == {stale.id: True, won.id: False}

    stats = service.get_pipeline_stats(db_session, sales_user)
    assert stats.total_active == 1
    assert stats.total_won == 1
    assert stats.amount_pipeline == 1000.0
    assert stats.amount_won == 3000.0
    assert stats.weighted_pipeline == 300.0
    assert stats.stagnant_count == 1
    assert [summary.stage_code for summary in stats.by_stage][0] == "LEAD"


def test_notification_failure_does_not_fail_stage_change(
    service: DealService,
    db_session: Session,
    sales_user: ActorUser,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING, logger="salesdesk.crm")
    deal = _create_deal(service, db_session, sales_user)

    def failing_notify(*args: object, **kwargs: object) -> None:
        raise RuntimeError("smtp down")

    monkeypatch.setattr(service.notifier, "notify", failing_notify)

    updated = service.change_stage(db_session, sales_user, deal.id, "Negociación")

    assert updated.stage_code == "NEGOTIATION"
    assert service.get_deal(db_session, sales_user, deal.id).stage_code == "NEGOTIATION"
    assert any(record.getMessage() == "notification.failed" for record in caplog.records)
