from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping

FLOW_TYPES = ("income", "expense", "transfer", "other")
SCHEDULE_FREQUENCIES = ("weekly", "biweekly", "monthly", "quarterly", "yearly")
SHARE_BASED_TYPES = frozenset({"stock", "etf", "crypto"})
PAY_DEBT_CATEGORY = "pay_debt"


@dataclass(frozen=True)
class OwnerScope:
    """Resolved identity whose rows a request may read and write.

    ``user_id`` is the acting user (recorded as creator); ``belong_id`` is the
    owner key every query filters on: the user for personal view, the family
    for shared view.
    """

    user_id: int
    belong_id: str
    view_mode: str = "personal"
    family_id: int | None = None

    @classmethod
    def personal(cls, user_id: int) -> "OwnerScope":
        return cls(user_id=user_id, belong_id=f"user:{user_id}")

    @classmethod
    def family(cls, user_id: int, family_id: int) -> "OwnerScope":
        return cls(
            user_id=user_id,
            belong_id=f"family:{family_id}",
            view_mode="family",
            family_id=family_id,
        )

    def ownership_values(self) -> dict[str, Any]:
        return {"user_id": self.user_id, "belong_id": self.belong_id}


@dataclass(frozen=True)
class FlowTemplate:
    type: str
    amount: Decimal
    currency: str
    from_asset_id: int | None = None
    to_asset_id: int | None = None
    debt_id: int | None = None
    category: str | None = None
    description: str | None = None
    flow_expense_category_id: int | None = None
    metadata: Mapping[str, Any] | None = None

    def flow_values(self) -> dict[str, Any]:
        """Column values shared by every flow materialized from this template."""
        return {
            "type": self.type,
            "amount": self.amount,
            "currency": self.currency,
            "from_asset_id": self.from_asset_id,
            "to_asset_id": self.to_asset_id,
            "debt_id": self.debt_id,
            "category": self.category,
            "description": self.description,
            "flow_expense_category_id": self.flow_expense_category_id,
            "metadata_json": dict(self.metadata) if self.metadata is not None else None,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "amount": str(self.amount),
            "currency": self.currency,
            "from_asset_id": self.from_asset_id,
            "to_asset_id": self.to_asset_id,
            "debt_id": self.debt_id,
            "category": self.category,
            "description": self.description,
            "flow_expense_category_id": self.flow_expense_category_id,
            "metadata": dict(self.metadata) if self.metadata is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FlowTemplate":
        return cls(
            type=data["type"],
            amount=Decimal(str(data["amount"])),
            currency=data["currency"],
            from_asset_id=data.get("from_asset_id"),
            to_asset_id=data.get("to_asset_id"),
            debt_id=data.get("debt_id"),
            category=data.get("category"),
            description=data.get("description"),
            flow_expense_category_id=data.get("flow_expense_category_id"),
            metadata=data.get("metadata"),
        )


@dataclass(frozen=True)
class Flow:
    id: int
    user_id: int
    belong_id: str
    type: str
    amount: Decimal
    currency: str
    date: date
    from_asset_id: int | None = None
    to_asset_id: int | None = None
    debt_id: int | None = None
    category: str | None = None
    description: str | None = None
    flow_expense_category_id: int | None = None
    recurring_frequency: str | None = None
    schedule_id: int | None = None
    metadata: Mapping[str, Any] | None = None
    needs_review: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Flow":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            belong_id=row["belong_id"],
            type=row["type"],
            amount=_as_decimal(row["amount"]),
            currency=row["currency"],
            date=row["date"],
            from_asset_id=row["from_asset_id"],
            to_asset_id=row["to_asset_id"],
            debt_id=row["debt_id"],
            category=row["category"],
            description=row["description"],
            flow_expense_category_id=row["flow_expense_category_id"],
            recurring_frequency=row["recurring_frequency"],
            schedule_id=row["schedule_id"],
            metadata=row["metadata_json"],
            needs_review=bool(row["needs_review"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass(frozen=True)
class RecurringSchedule:
    id: int
    user_id: int
    belong_id: str
    frequency: str
    next_run_date: date
    flow_template: FlowTemplate
    is_active: bool = True
    source_flow_id: int | None = None
    last_run_date: date | None = None
    anchor_day: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RecurringSchedule":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            belong_id=row["belong_id"],
            frequency=row["frequency"],
            next_run_date=row["next_run_date"],
            flow_template=FlowTemplate.from_dict(row["flow_template"]),
            is_active=bool(row["is_active"]),
            source_flow_id=row["source_flow_id"],
            last_run_date=row["last_run_date"],
            anchor_day=row["anchor_day"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass(frozen=True)
class Asset:
    id: int
    name: str
    type: str
    currency: str
    balance: Decimal
    ticker: str | None = None

    @property
    def is_share_based(self) -> bool:
        return self.type in SHARE_BASED_TYPES

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Asset":
        return cls(
            id=row["id"],
            name=row["name"],
            type=row["type"],
            currency=row["currency"],
            balance=_as_decimal(row["balance"]),
            ticker=row["ticker"],
        )


@dataclass(frozen=True)
class Debt:
    id: int
    name: str
    currency: str
    current_balance: Decimal
    monthly_payment: Decimal | None = None
    status: str = "active"
    paid_off_date: date | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Debt":
        return cls(
            id=row["id"],
            name=row["name"],
            currency=row["currency"],
            current_balance=_as_decimal(row["current_balance"]),
            monthly_payment=_as_decimal(row["monthly_payment"]) if row["monthly_payment"] is not None else None,
            status=row["status"],
            paid_off_date=row["paid_off_date"],
        )


@dataclass(frozen=True)
class ScheduleError:
    schedule_id: int
    error: str


@dataclass
class ProcessRecurringResult:
    processed: int = 0
    created_flows: list[int] = field(default_factory=list)
    errors: list[ScheduleError] = field(default_factory=list)


@dataclass(frozen=True)
class FlowStats:
    total_income: Decimal
    total_expense: Decimal
    total_transfer: Decimal
    net_flow: Decimal
    currency: str
    start_date: date
    end_date: date


def _as_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
