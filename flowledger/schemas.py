import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from flowledger.currency_conversion import normalize_currency, quantize_money
from flowledger.errors import FlowValidationError
from flowledger.flow_validation import (
    FlowType,
    ScheduleFrequency,
    validate_amount,
    validate_flow_structure,
)
from flowledger.models import FlowTemplate


def _clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


def _clean_currency(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    try:
        return normalize_currency(value)
    except ValueError as exc:
        raise FlowValidationError(str(exc)) from exc


class FlowTemplatePayload(BaseModel):
    type: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    from_asset_id: int | None = None
    to_asset_id: int | None = None
    debt_id: int | None = None
    category: str | None = None
    description: str | None = None
    flow_expense_category_id: int | None = None
    metadata: dict[str, Any] | None = None

    @classmethod
    def validate_payload(cls, payload: "FlowTemplatePayload") -> "FlowTemplatePayload":
        if payload.type is None or payload.amount is None or not payload.currency:
            raise FlowValidationError("Flow template must have type, amount, and currency")
        payload.type = FlowType.validate(payload.type)
        payload.amount = quantize_money(validate_amount(payload.amount))
        payload.currency = _clean_currency(payload.currency)
        payload.category = _clean_text(payload.category)
        payload.description = _clean_text(payload.description)
        validate_flow_structure(payload.type, payload.from_asset_id, payload.to_asset_id)
        return payload

    def to_template(self) -> FlowTemplate:
        return FlowTemplate(
            type=self.type,
            amount=self.amount,
            currency=self.currency,
            from_asset_id=self.from_asset_id,
            to_asset_id=self.to_asset_id,
            debt_id=self.debt_id,
            category=self.category,
            description=self.description,
            flow_expense_category_id=self.flow_expense_category_id,
            metadata=self.metadata,
        )


class FlowPayload(BaseModel):
    type: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    from_asset_id: int | None = None
    to_asset_id: int | None = None
    debt_id: int | None = None
    category: str | None = None
    date: datetime.date | None = None
    description: str | None = None
    recurring_frequency: str | None = None
    flow_expense_category_id: int | None = None
    metadata: dict[str, Any] | None = None
    needs_review: bool = False
    adjust_balances: bool = False

    @classmethod
    def validate_payload(cls, payload: "FlowPayload") -> "FlowPayload":
        payload.type = FlowType.validate(payload.type)
        payload.amount = quantize_money(validate_amount(payload.amount))
        payload.recurring_frequency = ScheduleFrequency.validate_optional(payload.recurring_frequency)
        payload.currency = _clean_currency(payload.currency)
        payload.category = _clean_text(payload.category)
        payload.description = _clean_text(payload.description)
        validate_flow_structure(payload.type, payload.from_asset_id, payload.to_asset_id)
        return payload

    def to_template(self, currency: str) -> FlowTemplate:
        return FlowTemplate(
            type=self.type,
            amount=self.amount,
            currency=currency,
            from_asset_id=self.from_asset_id,
            to_asset_id=self.to_asset_id,
            debt_id=self.debt_id,
            category=self.category,
            description=self.description,
            flow_expense_category_id=self.flow_expense_category_id,
            metadata=self.metadata,
        )


class FlowUpdatePayload(BaseModel):
    """Partial flow update; only fields present in the request are applied."""

    type: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    from_asset_id: int | None = None
    to_asset_id: int | None = None
    debt_id: int | None = None
    category: str | None = None
    date: datetime.date | None = None
    description: str | None = None
    recurring_frequency: str | None = None
    flow_expense_category_id: int | None = None
    metadata: dict[str, Any] | None = None
    needs_review: bool | None = None
    adjust_balances: bool = False

    @classmethod
    def validate_payload(cls, payload: "FlowUpdatePayload") -> "FlowUpdatePayload":
        fields = payload.model_fields_set
        if "type" in fields:
            payload.type = FlowType.validate(payload.type)
        if "amount" in fields:
            payload.amount = quantize_money(validate_amount(payload.amount))
        if "recurring_frequency" in fields:
            payload.recurring_frequency = ScheduleFrequency.validate_optional(payload.recurring_frequency)
        if "currency" in fields:
            payload.currency = _clean_currency(payload.currency)
            if payload.currency is None:
                raise FlowValidationError("Currency must be a 3-letter ISO 4217 code.")
        if "date" in fields and payload.date is None:
            raise FlowValidationError("Flow date cannot be cleared")
        if "category" in fields:
            payload.category = _clean_text(payload.category)
        if "description" in fields:
            payload.description = _clean_text(payload.description)
        return payload

    def provided(self, name: str) -> bool:
        return name in self.model_fields_set


class SchedulePayload(BaseModel):
    source_flow_id: int | None = None
    frequency: str | None = None
    next_run_date: datetime.date | None = None
    flow_template: FlowTemplatePayload | None = None

    @classmethod
    def validate_payload(cls, payload: "SchedulePayload") -> "SchedulePayload":
        payload.frequency = ScheduleFrequency.validate(payload.frequency)
        if payload.next_run_date is None:
            raise FlowValidationError("Next run date is required")
        if payload.flow_template is None:
            raise FlowValidationError("Flow template is required")
        payload.flow_template = FlowTemplatePayload.validate_payload(payload.flow_template)
        return payload


class ScheduleUpdatePayload(BaseModel):
    frequency: str | None = None
    next_run_date: datetime.date | None = None
    is_active: bool | None = None
    flow_template: FlowTemplatePayload | None = None

    @classmethod
    def validate_payload(cls, payload: "ScheduleUpdatePayload") -> "ScheduleUpdatePayload":
        fields = payload.model_fields_set
        if "frequency" in fields:
            payload.frequency = ScheduleFrequency.validate(payload.frequency)
        if "next_run_date" in fields and payload.next_run_date is None:
            raise FlowValidationError("Next run date is required")
        if "is_active" in fields and payload.is_active is None:
            raise FlowValidationError("is_active must be true or false")
        if "flow_template" in fields:
            if payload.flow_template is None:
                raise FlowValidationError("Flow template is required")
            payload.flow_template = FlowTemplatePayload.validate_payload(payload.flow_template)
        return payload
