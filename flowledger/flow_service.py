"""Create and update flows together with their recurrence and balance effects.

A flow write touches up to three kinds of rows: the flow itself, the
recurring schedule it spawns, and the balances of the assets or debt it
references. They are written in separate transactions in this order:

1. validate the payload and every reference (no writes yet)
2. create the schedule, if recurring
3. insert the flow; on failure remove the schedule created in step 2
4. link the schedule back to the flow (retried, never fatal)
5. adjust balances, if requested (never rolls back the flow)
"""
from __future__ import annotations

from calendar import monthrange
from datetime import date
from decimal import Decimal
import logging

from sqlalchemy.exc import SQLAlchemyError

from flowledger.balance_adjustment import (
    adjust_for_flow,
    flow_legs,
    share_based_assets_missing_shares,
    shares_from_metadata,
    snapshot_for,
)
from flowledger.config import get_link_retries, get_system_default_currency
from flowledger.currency_conversion import (
    RateProvider,
    RateProviderUnavailable,
    convert_or_passthrough,
    normalize_currency,
    quantize_money,
)
from flowledger.errors import FlowValidationError, LedgerError, PersistenceError, RecordNotFound, ReferenceNotFound
from flowledger.flow_validation import validate_flow_structure
from flowledger.models import Flow, FlowStats, FlowTemplate, OwnerScope, RecurringSchedule
from flowledger.recurring_schedules import calculate_next_run_date
from flowledger.schemas import FlowPayload, FlowUpdatePayload
from flowledger.store import FlowFilters, LedgerStore, ResolvedReferences

logger = logging.getLogger(__name__)

ADJUSTMENT_CATEGORY = "adjustment"

UPDATABLE_FIELDS = (
    "type",
    "amount",
    "currency",
    "from_asset_id",
    "to_asset_id",
    "debt_id",
    "category",
    "date",
    "description",
    "flow_expense_category_id",
    "needs_review",
)


def create_flow(
    store: LedgerStore,
    scope: OwnerScope,
    payload: FlowPayload,
    rate_provider: RateProvider | None = None,
    today: date | None = None,
    link_retries: int | None = None,
) -> Flow:
    today = today or date.today()
    payload = FlowPayload.validate_payload(payload)
    references = _resolve_references(
        store,
        scope,
        payload.from_asset_id,
        payload.to_asset_id,
        payload.debt_id,
        payload.flow_expense_category_id,
    )
    if payload.adjust_balances:
        _reject_share_based_without_shares(payload.type, references, payload.metadata)

    currency = payload.currency or get_system_default_currency()
    template = payload.to_template(currency)
    flow_date = payload.date or today

    schedule = None
    if payload.recurring_frequency:
        schedule = store.insert_schedule(
            {
                **scope.ownership_values(),
                "source_flow_id": None,
                "frequency": payload.recurring_frequency,
                "next_run_date": calculate_next_run_date(flow_date, payload.recurring_frequency),
                "anchor_day": flow_date.day,
                "is_active": True,
                "flow_template": template.to_dict(),
            }
        )

    values = {
        **template.flow_values(),
        **scope.ownership_values(),
        "date": flow_date,
        "recurring_frequency": payload.recurring_frequency,
        "schedule_id": schedule.id if schedule else None,
        "needs_review": payload.needs_review,
    }
    try:
        flow = store.insert_flow(values)
    except PersistenceError:
        if schedule is not None:
            _discard_schedule(store, schedule)
        raise

    if schedule is not None:
        _link_schedule(store, schedule, flow, link_retries or get_link_retries())

    if payload.adjust_balances:
        _apply_balances(store, template, today, rate_provider, flow.id, include_debt_payment=True)

    logger.info("Created %s flow %s for %s", flow.type, flow.id, scope.belong_id)
    return flow


def update_flow(
    store: LedgerStore,
    scope: OwnerScope,
    flow_id: int,
    payload: FlowUpdatePayload,
    rate_provider: RateProvider | None = None,
    today: date | None = None,
) -> Flow:
    """Apply a partial update.

    With ``adjust_balances`` only the amount and shares difference against
    the stored flow is applied, using the stored flow's type, assets and
    currency, so repeating the same update moves no balance.
    """
    today = today or date.today()
    existing = get_flow(store, scope, flow_id)
    payload = FlowUpdatePayload.validate_payload(payload)

    merged_type = payload.type if payload.provided("type") else existing.type
    merged_from = payload.from_asset_id if payload.provided("from_asset_id") else existing.from_asset_id
    merged_to = payload.to_asset_id if payload.provided("to_asset_id") else existing.to_asset_id
    if any(payload.provided(name) for name in ("type", "from_asset_id", "to_asset_id")):
        validate_flow_structure(merged_type, merged_from, merged_to)

    _resolve_references(
        store,
        scope,
        payload.from_asset_id if payload.provided("from_asset_id") else None,
        payload.to_asset_id if payload.provided("to_asset_id") else None,
        payload.debt_id if payload.provided("debt_id") else None,
        payload.flow_expense_category_id if payload.provided("flow_expense_category_id") else None,
    )

    updates = {name: getattr(payload, name) for name in UPDATABLE_FIELDS if payload.provided(name)}
    if updates.get("needs_review", False) is None:
        del updates["needs_review"]
    if payload.provided("metadata"):
        updates["metadata_json"] = payload.metadata

    created_schedule = None
    if payload.provided("recurring_frequency"):
        merged_template = _merged_template(existing, payload)
        merged_date = payload.date if payload.provided("date") else existing.date
        updates["recurring_frequency"] = payload.recurring_frequency
        if payload.recurring_frequency:
            created_schedule = _upsert_schedule(
                store,
                scope,
                existing,
                payload.recurring_frequency,
                merged_date,
                merged_template,
            )
            if created_schedule is not None:
                updates["schedule_id"] = created_schedule.id
        elif existing.schedule_id is not None:
            store.update_schedule(existing.schedule_id, {"is_active": False}, belong_id=scope.belong_id)
            logger.info("Deactivated recurring schedule %s of flow %s", existing.schedule_id, flow_id)

    if updates:
        try:
            flow = store.update_flow(flow_id, scope.belong_id, updates)
        except PersistenceError:
            if created_schedule is not None:
                _discard_schedule(store, created_schedule)
            raise
        if flow is None:
            raise RecordNotFound("Flow not found")
    else:
        flow = existing

    if payload.adjust_balances:
        template = _difference_template(existing, payload)
        if template is not None:
            _apply_balances(store, template, today, rate_provider, flow_id)

    return flow


def get_flow(store: LedgerStore, scope: OwnerScope, flow_id: int) -> Flow:
    flow = store.find_flow(flow_id, belong_id=scope.belong_id)
    if flow is None:
        raise RecordNotFound("Flow not found")
    return flow


def list_flows(
    store: LedgerStore,
    scope: OwnerScope,
    filters: FlowFilters | None = None,
) -> tuple[list[Flow], int]:
    return store.list_flows(scope.belong_id, filters)


def delete_flow(store: LedgerStore, scope: OwnerScope, flow_id: int) -> None:
    if not store.delete_flow(flow_id, scope.belong_id):
        raise RecordNotFound("Flow not found")
    logger.info("Deleted flow %s", flow_id)


def mark_flow_reviewed(store: LedgerStore, scope: OwnerScope, flow_id: int) -> Flow:
    flow = store.update_flow(flow_id, scope.belong_id, {"needs_review": False})
    if flow is None:
        raise RecordNotFound("Flow not found")
    return flow


def count_flows_needing_review(store: LedgerStore, scope: OwnerScope) -> int:
    return store.count_flows_needing_review(scope.belong_id)


def flow_stats(
    store: LedgerStore,
    scope: OwnerScope,
    start_date: date | None = None,
    end_date: date | None = None,
    currency: str | None = None,
    rate_provider: RateProvider | None = None,
    today: date | None = None,
) -> FlowStats:
    """Income, expense and transfer totals for a date range, in one currency.

    The range defaults to the month containing ``today``. Balance corrections
    (category ``adjustment``) are left out. Every flow is converted with the
    same rate snapshot; a flow whose rate is unknown counts unconverted.
    """
    today = today or date.today()
    start_date = start_date or today.replace(day=1)
    end_date = end_date or today.replace(day=monthrange(today.year, today.month)[1])
    if start_date > end_date:
        raise FlowValidationError("start_date must be on or before end_date")
    try:
        target = normalize_currency(currency or get_system_default_currency())
    except ValueError as exc:
        raise FlowValidationError(str(exc)) from exc

    flows = store.list_flows_between(scope.belong_id, start_date, end_date, exclude_category=ADJUSTMENT_CATEGORY)
    snapshot = snapshot_for({target} | {flow.currency for flow in flows}, rate_provider)

    totals = {"income": Decimal("0"), "expense": Decimal("0"), "transfer": Decimal("0")}
    for flow in flows:
        if flow.type in totals:
            totals[flow.type] += convert_or_passthrough(flow.amount, flow.currency, target, snapshot)

    total_income = quantize_money(totals["income"])
    total_expense = quantize_money(totals["expense"])
    return FlowStats(
        total_income=total_income,
        total_expense=total_expense,
        total_transfer=quantize_money(totals["transfer"]),
        net_flow=total_income - total_expense,
        currency=target,
        start_date=start_date,
        end_date=end_date,
    )


def _resolve_references(
    store: LedgerStore,
    scope: OwnerScope,
    from_asset_id: int | None,
    to_asset_id: int | None,
    debt_id: int | None,
    category_id: int | None,
) -> ResolvedReferences:
    references, missing = store.resolve_references(
        scope,
        from_asset_id=from_asset_id,
        to_asset_id=to_asset_id,
        debt_id=debt_id,
        category_id=category_id,
    )
    if missing:
        raise ReferenceNotFound(missing[0])
    return references


def _reject_share_based_without_shares(flow_type: str, references: ResolvedReferences, metadata) -> None:
    # Only assets whose balance the flow moves need a share count.
    from_asset, to_asset = references.from_asset, references.to_asset
    legs = flow_legs(flow_type, from_asset.id if from_asset else None, to_asset.id if to_asset else None)
    moved = {asset_id for asset_id, _ in legs}
    candidates = [asset for asset in (from_asset, to_asset) if asset is not None and asset.id in moved]
    missing = share_based_assets_missing_shares(candidates, metadata)
    if missing:
        asset = missing[0]
        raise FlowValidationError(
            f"Asset {asset.name} is a {asset.type} holding; metadata.shares is required to adjust its balance"
        )


def _discard_schedule(store: LedgerStore, schedule: RecurringSchedule) -> None:
    try:
        store.delete_schedule(schedule.id)
    except PersistenceError:
        logger.exception("Failed to remove orphaned recurring schedule %s", schedule.id)
    else:
        logger.warning("Removed recurring schedule %s after its flow failed to save", schedule.id)


def _link_schedule(store: LedgerStore, schedule: RecurringSchedule, flow: Flow, retries: int) -> bool:
    for attempt in range(1, retries + 1):
        try:
            linked = store.link_schedule_source(schedule.id, flow.id)
        except PersistenceError:
            logger.warning(
                "Linking recurring schedule %s to flow %s failed (attempt %d/%d)",
                schedule.id,
                flow.id,
                attempt,
                retries,
            )
            continue
        if not linked:
            logger.warning("Recurring schedule %s is already linked to another flow", schedule.id)
        return linked
    logger.error("Recurring schedule %s left without a source flow (flow %s)", schedule.id, flow.id)
    return False


def _apply_balances(
    store: LedgerStore,
    template: FlowTemplate,
    today: date,
    rate_provider: RateProvider | None,
    flow_id: int,
    include_debt_payment: bool = False,
) -> None:
    try:
        adjustment = adjust_for_flow(
            store,
            template,
            today,
            rate_provider=rate_provider,
            include_debt_payment=include_debt_payment,
        )
    except (LedgerError, RateProviderUnavailable, SQLAlchemyError):
        logger.exception("Failed to adjust balances for flow %s", flow_id)
        return
    if adjustment.failed_assets:
        logger.error("Balance update incomplete for flow %s: assets %s", flow_id, adjustment.failed_assets)


def _upsert_schedule(
    store: LedgerStore,
    scope: OwnerScope,
    existing: Flow,
    frequency: str,
    flow_date: date,
    template: FlowTemplate,
) -> RecurringSchedule | None:
    """Reactivate the flow's schedule, or create one. Returns only a newly created schedule."""
    next_run_date = calculate_next_run_date(flow_date, frequency)
    if existing.schedule_id is not None:
        updated = store.update_schedule(
            existing.schedule_id,
            {
                "frequency": frequency,
                "next_run_date": next_run_date,
                "anchor_day": flow_date.day,
                "flow_template": template.to_dict(),
                "is_active": True,
            },
            belong_id=scope.belong_id,
        )
        if updated is not None:
            return None
        logger.warning(
            "Recurring schedule %s of flow %s is gone, creating a new one",
            existing.schedule_id,
            existing.id,
        )
    return store.insert_schedule(
        {
            **scope.ownership_values(),
            "source_flow_id": existing.id,
            "frequency": frequency,
            "next_run_date": next_run_date,
            "anchor_day": flow_date.day,
            "is_active": True,
            "flow_template": template.to_dict(),
        }
    )


def _merged_template(existing: Flow, payload: FlowUpdatePayload) -> FlowTemplate:
    def pick(name: str):
        return getattr(payload, name) if payload.provided(name) else getattr(existing, name)

    return FlowTemplate(
        type=pick("type"),
        amount=pick("amount"),
        currency=pick("currency"),
        from_asset_id=pick("from_asset_id"),
        to_asset_id=pick("to_asset_id"),
        debt_id=pick("debt_id"),
        category=pick("category"),
        description=pick("description"),
        flow_expense_category_id=pick("flow_expense_category_id"),
        metadata=pick("metadata"),
    )


def _difference_template(existing: Flow, payload: FlowUpdatePayload) -> FlowTemplate | None:
    """Template moving only what changed, or ``None`` when amount and shares are unchanged."""
    new_amount = payload.amount if payload.provided("amount") else existing.amount
    difference = new_amount - existing.amount
    old_shares = shares_from_metadata(existing.metadata)
    new_shares = shares_from_metadata(payload.metadata) if payload.provided("metadata") else old_shares
    shares_difference = None
    if new_shares is not None or old_shares is not None:
        shares_difference = (new_shares or Decimal("0")) - (old_shares or Decimal("0"))
    if difference == 0 and not shares_difference:
        return None
    return FlowTemplate(
        type=existing.type,
        amount=difference,
        currency=existing.currency,
        from_asset_id=existing.from_asset_id,
        to_asset_id=existing.to_asset_id,
        metadata={"shares": str(shares_difference)} if shares_difference else None,
    )
