from __future__ import annotations

from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from salesdesk.crm.pricing import Sector


def _strip_blank_strings(data: Any) -> Any:
    if not isinstance(data, dict):
        return data
    cleaned: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, str):
            value = value.strip() or None
        cleaned[key] = value
    return cleaned


def _coerce_sector(value: Any) -> Any:
    if value is None or isinstance(value, Sector):
        return value
    try:
        return Sector(value)
    except ValueError as exc:
        raise ValueError("sector must be Private or Government") from exc


class ClientCreate(BaseModel):
    name: str = Field(min_length=1)
    company: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    address: str | None = None
    nit: str | None = None
    sector: Sector = Sector.PRIVATE
    assigned_advisor_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def strip_blank_strings(cls, data: Any) -> Any:
        return _strip_blank_strings(data)

    @field_validator("sector", mode="before")
    @classmethod
    def validate_sector(cls, value: Any) -> Any:
        return _coerce_sector(value) or Sector.PRIVATE


class ClientUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    name: str | None = None
    company: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    address: str | None = None
    nit: str | None = None
    sector: Sector | None = None
    assigned_advisor_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def strip_blank_strings(cls, data: Any) -> Any:
        return _strip_blank_strings(data)

    @field_validator("sector", mode="before")
    @classmethod
    def validate_sector(cls, value: Any) -> Any:
        return _coerce_sector(value)


class ClientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    name: str
    company: str | None
    email: str | None
    phone: str | None
    address: str | None
    nit: str | None
    sector: str
    assigned_advisor_id: str
    created_at: datetime
    updated_at: datetime
    row_version: int


class DealCreate(BaseModel):
    title: str = Field(min_length=1)
    client_id: UUID | None = None
    client: ClientCreate | None = None
    amount: float | None = None
    quantity: int | None = None
    unit_cost: float | None = None
    unit_price: float | None = None
    profit_margin: float | None = None
    sector: Sector | None = None
    stage: str | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    notes: str | None = None
    owner_id: str | None = None

    @field_validator("sector", mode="before")
    @classmethod
    def validate_sector(cls, value: Any) -> Any:
        return _coerce_sector(value)


class DealUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    title: str | None = None
    client_id: UUID | None = None
    amount: float | None = None
    quantity: int | None = None
    unit_cost: float | None = None
    unit_price: float | None = None
    profit_margin: float | None = None
    sector: Sector | None = None
    stage: str | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    notes: str | None = None
    owner_id: str | None = None

    @field_validator("sector", mode="before")
    @classmethod
    def validate_sector(cls, value: Any) -> Any:
        return _coerce_sector(value)


class DealStageChangeRequest(BaseModel):
    stage: str = Field(min_length=1)
    reason: str | None = None


class DealRead(BaseModel):
    id: UUID
    organization_id: str
    owner_id: str
    client_id: UUID
    client_name: str | None
    title: str
    amount: float
    quantity: int
    unit_cost: float | None
    unit_price: float | None
    profit_margin: float | None
    sector: str
    stage: str
    stage_code: str
    probability: int
    expected_close_date: date | None
    notes: str | None
    status: str
    is_stagnant: bool
    closed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class StageSummaryRead(BaseModel):
    stage: str
    stage_code: str
    count: int
    amount: float


class PipelineStatsRead(BaseModel):
    total_active: int
    total_won: int
    total_lost: int
    total_deleted: int
    amount_pipeline: float
    amount_won: float
    weighted_pipeline: float
    stagnant_count: int
    by_stage: list[StageSummaryRead] = Field(default_factory=list)


class ActivityCreate(BaseModel):
    activity_type: str = Field(min_length=1, max_length=32)
    description: str = Field(min_length=1)
    occurred_at: datetime | None = None


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID
    client_id: UUID
    activity_type: str
    description: str
    occurred_at: datetime
    responsible_user_id: str
    created_at: datetime


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    message: str
    kind: str
    entity_type: str | None
    entity_id: UUID | None
    is_read: bool
    created_at: datetime


class PricingQuoteRequest(BaseModel):
    unit_cost: float = Field(ge=0)
    quantity: int = Field(default=1, ge=0)
    sector: Sector = Sector.PRIVATE
    profit_margin: float | None = Field(default=None, ge=0)
    unit_price: float | None = Field(default=None, ge=0)

    @field_validator("sector", mode="before")
    @classmethod
    def validate_sector(cls, value: Any) -> Any:
        return _coerce_sector(value) or Sector.PRIVATE


class LineItemRead(BaseModel):
    label: str
    amount: float


class ProfitBreakdownRead(BaseModel):
    base_amount: float
    tax: float
    withholding: float
    tax_retention: float
    total_cost: float
    gross_profit: float
    net_profit: float
    cash_received: float
    line_items: list[LineItemRead]


class PricingQuoteRead(BaseModel):
    sector: str
    quantity: int
    unit_cost: float
    unit_price: float
    profit_margin: float
    amount: float
    breakdown: ProfitBreakdownRead
