from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
import logging
from typing import Any, Iterable, Mapping

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    and_,
    case,
    create_engine,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from flowledger.errors import PersistenceError
from flowledger.models import Asset, Debt, Flow, OwnerScope, RecurringSchedule

logger = logging.getLogger(__name__)

metadata = MetaData()

family_members = Table(
    "family_members",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("family_id", Integer, nullable=False),
    Column("user_id", Integer, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", name="uq_family_members_user"),
)

assets = Table(
    "assets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("belong_id", String(64), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False, server_default="cash"),
    Column("ticker", String(20)),
    Column("currency", String(3), nullable=False, server_default="USD"),
    Column("balance", Numeric(18, 8), nullable=False, server_default="0"),
    Column("balance_updated_at", DateTime),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
)

debts = Table(
    "debts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("belong_id", String(64), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("currency", String(3), nullable=False, server_default="USD"),
    Column("principal", Numeric(14, 2), nullable=False),
    Column("current_balance", Numeric(14, 2), nullable=False),
    Column("monthly_payment", Numeric(14, 2)),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("paid_off_date", Date),
    Column("balance_updated_at", DateTime),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
)

flow_expense_categories = Table(
    "flow_expense_categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("belong_id", String(64), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

recurring_schedules = Table(
    "recurring_schedules",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("belong_id", String(64), nullable=False, index=True),
    Column("source_flow_id", Integer),
    Column("frequency", String(20), nullable=False),
    Column("next_run_date", Date, nullable=False),
    Column("anchor_day", Integer),
    Column("last_run_date", Date),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("flow_template", JSON, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
    Index("ix_recurring_schedules_due", "is_active", "next_run_date"),
)

flows = Table(
    "flows",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("belong_id", String(64), nullable=False, index=True),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False, server_default="USD"),
    Column("from_asset_id", Integer, ForeignKey("assets.id", ondelete="SET NULL")),
    Column("to_asset_id", Integer, ForeignKey("assets.id", ondelete="SET NULL")),
    Column("debt_id", Integer, ForeignKey("debts.id", ondelete="SET NULL")),
    Column("category", String(100)),
    Column("date", Date, nullable=False),
    Column("description", String(500)),
    Column("flow_expense_category_id", Integer, ForeignKey("flow_expense_categories.id", ondelete="SET NULL")),
    Column("recurring_frequency", String(20)),
    Column("schedule_id", Integer, ForeignKey("recurring_schedules.id", ondelete="SET NULL"), index=True),
    Column("metadata_json", JSON),
    Column("needs_review", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
)


@dataclass(frozen=True)
class ResolvedReferences:
    from_asset: Asset | None = None
    to_asset: Asset | None = None
    debt: Debt | None = None
    category_id: int | None = None


@dataclass(frozen=True)
class FlowFilters:
    type: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    asset_id: int | None = None
    limit: int = 20
    offset: int = 0


def create_ledger_engine(database_url: str) -> Engine:
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args)


class LedgerStore:
    """Row-level reads and writes for flows, schedules, assets and debts.

    Every write runs in its own transaction; callers sequence multi-row work
    themselves. Balance changes are single-statement increments so two
    concurrent writers never overwrite each other.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_all(self) -> None:
        metadata.create_all(self.engine)

    # Scope

    def family_id_for_user(self, user_id: int) -> int | None:
        with self.engine.connect() as conn:
            return conn.execute(
                select(family_members.c.family_id).where(family_members.c.user_id == user_id)
            ).scalar_one_or_none()

    def add_family_member(self, family_id: int, user_id: int) -> None:
        self._write(
            insert(family_members).values(family_id=family_id, user_id=user_id),
            "Failed to add family member",
        )

    # Reference data

    def insert_asset(
        self,
        scope: OwnerScope,
        name: str,
        type: str = "cash",
        currency: str = "USD",
        balance: Decimal | int | str = 0,
        ticker: str | None = None,
    ) -> Asset:
        row = self._write_returning(
            insert(assets)
            .values(
                **scope.ownership_values(),
                name=name,
                type=type,
                currency=currency,
                balance=Decimal(str(balance)),
                ticker=ticker,
            )
            .returning(*assets.c),
            "Failed to create asset",
        )
        return Asset.from_row(row)

    def insert_debt(
        self,
        scope: OwnerScope,
        name: str,
        principal: Decimal | int | str,
        currency: str = "USD",
        current_balance: Decimal | int | str | None = None,
        monthly_payment: Decimal | int | str | None = None,
    ) -> Debt:
        balance = principal if current_balance is None else current_balance
        row = self._write_returning(
            insert(debts)
            .values(
                **scope.ownership_values(),
                name=name,
                currency=currency,
                principal=Decimal(str(principal)),
                current_balance=Decimal(str(balance)),
                monthly_payment=Decimal(str(monthly_payment)) if monthly_payment is not None else None,
            )
            .returning(*debts.c),
            "Failed to create debt",
        )
        return Debt.from_row(row)

    def insert_category(self, scope: OwnerScope, name: str) -> int:
        row = self._write_returning(
            insert(flow_expense_categories)
            .values(**scope.ownership_values(), name=name)
            .returning(flow_expense_categories.c.id),
            "Failed to create expense category",
        )
        return row["id"]

    def find_asset(self, asset_id: int, belong_id: str | None = None) -> Asset | None:
        with self.engine.connect() as conn:
            return self._find_asset(conn, asset_id, belong_id)

    def find_assets(self, asset_ids: Iterable[int]) -> dict[int, Asset]:
        ids = sorted({asset_id for asset_id in asset_ids if asset_id is not None})
        if not ids:
            return {}
        with self.engine.connect() as conn:
            rows = conn.execute(select(assets).where(assets.c.id.in_(ids))).mappings().all()
        return {row["id"]: Asset.from_row(row) for row in rows}

    def find_debt(self, debt_id: int, belong_id: str | None = None) -> Debt | None:
        with self.engine.connect() as conn:
            return self._find_debt(conn, debt_id, belong_id)

    def find_category(self, category_id: int, belong_id: str | None = None) -> int | None:
        conditions = [flow_expense_categories.c.id == category_id]
        if belong_id is not None:
            conditions.append(flow_expense_categories.c.belong_id == belong_id)
        with self.engine.connect() as conn:
            return conn.execute(
                select(flow_expense_categories.c.id).where(*conditions)
            ).scalar_one_or_none()

    def resolve_references(
        self,
        scope: OwnerScope,
        from_asset_id: int | None = None,
        to_asset_id: int | None = None,
        debt_id: int | None = None,
        category_id: int | None = None,
    ) -> tuple[ResolvedReferences, list[str]]:
        """Look up every referenced row in one read connection.

        Returns the resolved rows plus the names of the references that were
        requested but missing, in from/to/debt/category order.
        """
        missing: list[str] = []
        with self.engine.connect() as conn:
            from_asset = self._find_asset(conn, from_asset_id, scope.belong_id) if from_asset_id else None
            to_asset = self._find_asset(conn, to_asset_id, scope.belong_id) if to_asset_id else None
            debt = self._find_debt(conn, debt_id, scope.belong_id) if debt_id else None
            found_category = None
            if category_id:
                found_category = conn.execute(
                    select(flow_expense_categories.c.id).where(
                        flow_expense_categories.c.id == category_id,
                        flow_expense_categories.c.belong_id == scope.belong_id,
                    )
                ).scalar_one_or_none()
        if from_asset_id and from_asset is None:
            missing.append("From asset")
        if to_asset_id and to_asset is None:
            missing.append("To asset")
        if debt_id and debt is None:
            missing.append("Debt")
        if category_id and found_category is None:
            missing.append("Expense category")
        return (
            ResolvedReferences(
                from_asset=from_asset,
                to_asset=to_asset,
                debt=debt,
                category_id=found_category,
            ),
            missing,
        )

    # Flows

    def insert_flow(self, values: Mapping[str, Any]) -> Flow:
        row = self._write_returning(
            insert(flows).values(**values).returning(*flows.c),
            "Failed to create flow",
        )
        return Flow.from_row(row)

    def update_flow(self, flow_id: int, belong_id: str, values: Mapping[str, Any]) -> Flow | None:
        stmt = (
            update(flows)
            .where(flows.c.id == flow_id, flows.c.belong_id == belong_id)
            .values(**values, updated_at=func.now())
            .returning(*flows.c)
        )
        try:
            with self.engine.begin() as conn:
                row = conn.execute(stmt).mappings().first()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to update flow") from exc
        return Flow.from_row(row) if row else None

    def delete_flow(self, flow_id: int, belong_id: str) -> bool:
        result = self._write(
            flows.delete().where(flows.c.id == flow_id, flows.c.belong_id == belong_id),
            "Failed to delete flow",
        )
        return result > 0

    def find_flow(self, flow_id: int, belong_id: str | None = None) -> Flow | None:
        conditions = [flows.c.id == flow_id]
        if belong_id is not None:
            conditions.append(flows.c.belong_id == belong_id)
        with self.engine.connect() as conn:
            row = conn.execute(select(flows).where(*conditions)).mappings().first()
        return Flow.from_row(row) if row else None

    def list_flows(self, belong_id: str, filters: FlowFilters | None = None) -> tuple[list[Flow], int]:
        filters = filters or FlowFilters()
        conditions = [flows.c.belong_id == belong_id]
        if filters.type:
            conditions.append(flows.c.type == filters.type)
        if filters.start_date:
            conditions.append(flows.c.date >= filters.start_date)
        if filters.end_date:
            conditions.append(flows.c.date <= filters.end_date)
        if filters.asset_id:
            conditions.append(
                or_(flows.c.from_asset_id == filters.asset_id, flows.c.to_asset_id == filters.asset_id)
            )
        stmt = (
            select(flows)
            .where(*conditions)
            .order_by(flows.c.date.desc(), flows.c.id.desc())
            .limit(filters.limit)
            .offset(filters.offset)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
            total = conn.execute(select(func.count()).select_from(flows).where(*conditions)).scalar_one()
        return [Flow.from_row(row) for row in rows], int(total or 0)

    def list_flows_between(
        self,
        belong_id: str,
        start_date: date,
        end_date: date,
        exclude_category: str | None = None,
    ) -> list[Flow]:
        conditions = [
            flows.c.belong_id == belong_id,
            flows.c.date >= start_date,
            flows.c.date <= end_date,
        ]
        if exclude_category:
            conditions.append(or_(flows.c.category.is_(None), flows.c.category != exclude_category))
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(flows).where(*conditions).order_by(flows.c.date.asc(), flows.c.id.asc())
            ).mappings().all()
        return [Flow.from_row(row) for row in rows]

    def list_flows_for_schedule(self, schedule_id: int) -> list[Flow]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(flows)
                .where(flows.c.schedule_id == schedule_id)
                .order_by(flows.c.date.desc(), flows.c.id.desc())
            ).mappings().all()
        return [Flow.from_row(row) for row in rows]

    def count_flows_needing_review(self, belong_id: str) -> int:
        with self.engine.connect() as conn:
            total = conn.execute(
                select(func.count())
                .select_from(flows)
                .where(flows.c.belong_id == belong_id, flows.c.needs_review.is_(True))
            ).scalar_one()
        return int(total or 0)

    # Schedules

    def insert_schedule(self, values: Mapping[str, Any]) -> RecurringSchedule:
        row = self._write_returning(
            insert(recurring_schedules).values(**values).returning(*recurring_schedules.c),
            "Failed to create recurring schedule",
        )
        return RecurringSchedule.from_row(row)

    def update_schedule(
        self,
        schedule_id: int,
        values: Mapping[str, Any],
        belong_id: str | None = None,
    ) -> RecurringSchedule | None:
        conditions = [recurring_schedules.c.id == schedule_id]
        if belong_id is not None:
            conditions.append(recurring_schedules.c.belong_id == belong_id)
        stmt = (
            update(recurring_schedules)
            .where(*conditions)
            .values(**values, updated_at=func.now())
            .returning(*recurring_schedules.c)
        )
        try:
            with self.engine.begin() as conn:
                row = conn.execute(stmt).mappings().first()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to update recurring schedule") from exc
        return RecurringSchedule.from_row(row) if row else None

    def link_schedule_source(self, schedule_id: int, flow_id: int) -> bool:
        """Point a schedule at the flow that requested it.

        Only an unlinked schedule (or one already linked to ``flow_id``) is
        touched, so repeating the call is harmless.
        """
        stmt = (
            update(recurring_schedules)
            .where(
                recurring_schedules.c.id == schedule_id,
                or_(
                    recurring_schedules.c.source_flow_id.is_(None),
                    recurring_schedules.c.source_flow_id == flow_id,
                ),
            )
            .values(source_flow_id=flow_id, updated_at=func.now())
        )
        return self._write(stmt, "Failed to link recurring schedule") > 0

    def delete_schedule(self, schedule_id: int, belong_id: str | None = None) -> bool:
        conditions = [recurring_schedules.c.id == schedule_id]
        if belong_id is not None:
            conditions.append(recurring_schedules.c.belong_id == belong_id)
        result = self._write(
            recurring_schedules.delete().where(*conditions),
            "Failed to delete recurring schedule",
        )
        return result > 0

    def find_schedule(self, schedule_id: int, belong_id: str | None = None) -> RecurringSchedule | None:
        conditions = [recurring_schedules.c.id == schedule_id]
        if belong_id is not None:
            conditions.append(recurring_schedules.c.belong_id == belong_id)
        with self.engine.connect() as conn:
            row = conn.execute(select(recurring_schedules).where(*conditions)).mappings().first()
        return RecurringSchedule.from_row(row) if row else None

    def list_schedules(
        self,
        belong_id: str,
        is_active: bool | None = None,
        frequency: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[RecurringSchedule], int]:
        conditions = [recurring_schedules.c.belong_id == belong_id]
        if is_active is not None:
            conditions.append(recurring_schedules.c.is_active.is_(is_active))
        if frequency:
            conditions.append(recurring_schedules.c.frequency == frequency)
        stmt = (
            select(recurring_schedules)
            .where(*conditions)
            .order_by(recurring_schedules.c.next_run_date.asc(), recurring_schedules.c.id.asc())
            .limit(limit)
            .offset(offset)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
            total = conn.execute(
                select(func.count()).select_from(recurring_schedules).where(*conditions)
            ).scalar_one()
        return [RecurringSchedule.from_row(row) for row in rows], int(total or 0)

    def list_due_schedules(self, today: date, belong_id: str | None = None) -> list[RecurringSchedule]:
        conditions = [
            recurring_schedules.c.is_active.is_(True),
            recurring_schedules.c.next_run_date <= today,
        ]
        if belong_id is not None:
            conditions.append(recurring_schedules.c.belong_id == belong_id)
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(recurring_schedules)
                .where(and_(*conditions))
                .order_by(recurring_schedules.c.next_run_date.asc(), recurring_schedules.c.id.asc())
            ).mappings().all()
        return [RecurringSchedule.from_row(row) for row in rows]

    # Balances

    def increment_asset_balance(self, asset_id: int, delta: Decimal) -> Decimal | None:
        stmt = (
            update(assets)
            .where(assets.c.id == asset_id)
            .values(
                balance=func.coalesce(assets.c.balance, 0) + delta,
                balance_updated_at=func.now(),
                updated_at=func.now(),
            )
            .returning(assets.c.balance)
        )
        try:
            with self.engine.begin() as conn:
                new_balance = conn.execute(stmt).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to update asset balance") from exc
        return Decimal(str(new_balance)) if new_balance is not None else None

    def decrement_debt_balance(self, debt_id: int, amount: Decimal, today: date) -> Debt | None:
        """Reduce a debt by ``amount`` in one statement, clamping at zero.

        Reaching zero marks the debt paid off and stamps ``paid_off_date``.
        """
        remaining = func.coalesce(debts.c.current_balance, 0) - amount
        paid_off = remaining <= 0
        stmt = (
            update(debts)
            .where(debts.c.id == debt_id)
            .values(
                current_balance=case((paid_off, 0), else_=remaining),
                status=case((paid_off, "paid_off"), else_=debts.c.status),
                paid_off_date=case((paid_off, today), else_=debts.c.paid_off_date),
                balance_updated_at=func.now(),
                updated_at=func.now(),
            )
            .returning(*debts.c)
        )
        try:
            with self.engine.begin() as conn:
                row = conn.execute(stmt).mappings().first()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to update debt balance") from exc
        return Debt.from_row(row) if row else None

    # Internals

    def _find_asset(self, conn: Connection, asset_id: int, belong_id: str | None) -> Asset | None:
        conditions = [assets.c.id == asset_id]
        if belong_id is not None:
            conditions.append(assets.c.belong_id == belong_id)
        row = conn.execute(select(assets).where(*conditions)).mappings().first()
        return Asset.from_row(row) if row else None

    def _find_debt(self, conn: Connection, debt_id: int, belong_id: str | None) -> Debt | None:
        conditions = [debts.c.id == debt_id]
        if belong_id is not None:
            conditions.append(debts.c.belong_id == belong_id)
        row = conn.execute(select(debts).where(*conditions)).mappings().first()
        return Debt.from_row(row) if row else None

    def _write(self, stmt, failure_message: str) -> int:
        try:
            with self.engine.begin() as conn:
                return conn.execute(stmt).rowcount
        except SQLAlchemyError as exc:
            raise PersistenceError(failure_message) from exc

    def _write_returning(self, stmt, failure_message: str) -> Mapping[str, Any]:
        try:
            with self.engine.begin() as conn:
                row = conn.execute(stmt).mappings().first()
        except SQLAlchemyError as exc:
            raise PersistenceError(failure_message) from exc
        if not row:
            raise PersistenceError(failure_message)
        return row
