from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from flowledger.errors import FlowValidationError
from flowledger.models import FLOW_TYPES, SCHEDULE_FREQUENCIES

NO_RECURRENCE = "none"


class FlowType:
    values = set(FLOW_TYPES)

    @classmethod
    def validate(cls, value: str | None) -> str:
        normalized = (value or "").strip().lower()
        if normalized not in cls.values:
            raise FlowValidationError("Valid flow type is required (income, expense, transfer, other)")
        return normalized


class ScheduleFrequency:
    values = set(SCHEDULE_FREQUENCIES)

    @classmethod
    def validate(cls, value: str | None) -> str:
        normalized = _normalize_frequency(value or "")
        if normalized not in cls.values:
            raise FlowValidationError("Invalid recurring frequency")
        return normalized

    @classmethod
    def validate_optional(cls, value: str | None) -> str | None:
        """Return ``None`` for "no recurrence" (missing, empty or ``"none"``)."""
        if value is None:
            return None
        normalized = _normalize_frequency(value)
        if not normalized or normalized == NO_RECURRENCE:
            return None
        return cls.validate(normalized)


def validate_amount(value: Any) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise FlowValidationError("Valid positive amount is required") from exc
    if value is None or not amount.is_finite() or amount <= 0:
        raise FlowValidationError("Valid positive amount is required")
    return amount


def validate_flow_structure(
    flow_type: str,
    from_asset_id: int | None,
    to_asset_id: int | None,
) -> None:
    """Check the asset references a flow type requires.

    - income: ``to_asset_id`` required, ``from_asset_id`` optional (dividends
      may point back at the paying holding)
    - expense: ``from_asset_id`` required, no ``to_asset_id``
    - transfer: both required and different
    - other: unconstrained (manual balance corrections)
    """
    if flow_type == "income":
        if not to_asset_id:
            raise FlowValidationError("Income flows must have a to_asset_id")
    elif flow_type == "expense":
        if not from_asset_id:
            raise FlowValidationError("Expense flows must have a from_asset_id")
        if to_asset_id:
            raise FlowValidationError("Expense flows cannot have a to_asset_id")
    elif flow_type == "transfer":
        if not from_asset_id or not to_asset_id:
            raise FlowValidationError("Transfer flows must have both from_asset_id and to_asset_id")
        if from_asset_id == to_asset_id:
            raise FlowValidationError("Cannot transfer to the same asset")
    elif flow_type != "other":
        raise FlowValidationError("Valid flow type is required (income, expense, transfer, other)")


def _normalize_frequency(value: str) -> str:
    normalized = "".join(ch for ch in value.strip().lower() if ch.isalnum())
    if normalized == "byweekly":
        return "biweekly"
    return normalized
