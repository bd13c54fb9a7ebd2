from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
import logging
from typing import Any, Iterable, Mapping

from flowledger.currency_conversion import (
    RateProvider,
    RateSnapshot,
    convert_or_passthrough,
    get_rates,
    quantize_money,
)
from flowledger.errors import PersistenceError
from flowledger.models import PAY_DEBT_CATEGORY, Asset, Debt, FlowTemplate
from flowledger.store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class BalanceAdjustment:
    asset_balances: dict[int, Decimal] = field(default_factory=dict)
    skipped_assets: list[int] = field(default_factory=list)
    failed_assets: list[int] = field(default_factory=list)
    debt: Debt | None = None


def shares_from_metadata(metadata: Mapping[str, Any] | None) -> Decimal | None:
    if not metadata:
        return None
    raw = metadata.get("shares")
    if raw in (None, "", 0):
        return None
    try:
        shares = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        logger.warning("Ignoring non-numeric shares value %r in flow metadata", raw)
        return None
    if not shares.is_finite() or shares == 0:
        return None
    return shares


def flow_legs(flow_type: str, from_asset_id: int | None, to_asset_id: int | None) -> list[tuple[int, int]]:
    """Assets a flow moves money through, as ``(asset_id, sign)`` pairs."""
    if flow_type == "income":
        return [(to_asset_id, 1)] if to_asset_id else []
    if flow_type == "expense":
        return [(from_asset_id, -1)] if from_asset_id else []
    if flow_type == "transfer":
        legs = []
        if from_asset_id:
            legs.append((from_asset_id, -1))
        if to_asset_id:
            legs.append((to_asset_id, 1))
        return legs
    return []


def collect_currencies(
    flow_currency: str,
    touched_assets: Iterable[Asset],
    debt: Debt | None = None,
) -> set[str]:
    codes = {flow_currency.strip().upper()}
    codes.update(asset.currency.strip().upper() for asset in touched_assets if asset.currency)
    if debt is not None and debt.currency:
        codes.add(debt.currency.strip().upper())
    return codes


def snapshot_for(codes: set[str], rate_provider: RateProvider | None) -> RateSnapshot:
    if len(codes) <= 1:
        return RateSnapshot(rates={})
    return get_rates(codes, rate_provider)


def compute_asset_delta(
    asset: Asset,
    flow_currency: str,
    delta: Decimal,
    shares_delta: Decimal | None,
    snapshot: RateSnapshot,
) -> Decimal | None:
    """Translate a flow delta into the unit of ``asset.balance``.

    Share-based holdings count units, so they move by ``shares_delta`` with no
    conversion. A share-based holding without a shares delta returns ``None``:
    its balance is never mixed with a currency amount.
    """
    if asset.is_share_based:
        if shares_delta is None:
            return None
        return shares_delta
    converted = convert_or_passthrough(delta, flow_currency, asset.currency, snapshot)
    return quantize_money(converted)


def apply_asset_delta(
    store: LedgerStore,
    asset: Asset,
    flow_currency: str,
    delta: Decimal,
    snapshot: RateSnapshot,
    shares_delta: Decimal | None = None,
) -> Decimal | None:
    balance_delta = compute_asset_delta(asset, flow_currency, delta, shares_delta, snapshot)
    if balance_delta is None:
        logger.warning(
            "Skipping balance update for %s asset %s: flow carries no shares",
            asset.type,
            asset.id,
        )
        return None
    return store.increment_asset_balance(asset.id, balance_delta)


def apply_debt_payment(
    store: LedgerStore,
    debt: Debt,
    flow_currency: str,
    amount: Decimal,
    snapshot: RateSnapshot,
    today: date,
) -> Debt | None:
    payment = quantize_money(convert_or_passthrough(amount, flow_currency, debt.currency, snapshot))
    updated = store.decrement_debt_balance(debt.id, payment, today)
    if updated is not None and updated.status == "paid_off" and debt.status != "paid_off":
        logger.info("Debt %s paid off on %s", debt.id, today.isoformat())
    return updated


def adjust_for_flow(
    store: LedgerStore,
    template: FlowTemplate,
    today: date,
    rate_provider: RateProvider | None = None,
    amount: Decimal | None = None,
    shares: Decimal | None = None,
    include_debt_payment: bool = False,
) -> BalanceAdjustment:
    """Apply a flow's effect to the assets (and optionally the debt) it references.

    ``amount``/``shares`` override the template values, which is how updates
    apply only the difference. Each leg is written independently; a failed
    leg is logged and recorded without undoing the others.
    """
    flow_amount = template.amount if amount is None else amount
    flow_shares = shares_from_metadata(template.metadata) if shares is None else shares
    legs = flow_legs(template.type, template.from_asset_id, template.to_asset_id)
    touched = store.find_assets(asset_id for asset_id, _ in legs)

    debt = None
    pays_debt = include_debt_payment and template.debt_id and template.category == PAY_DEBT_CATEGORY
    if pays_debt:
        debt = store.find_debt(template.debt_id)
        if debt is None:
            logger.warning("Debt %s not found, skipping balance update", template.debt_id)

    snapshot = snapshot_for(collect_currencies(template.currency, touched.values(), debt), rate_provider)
    result = BalanceAdjustment()

    for asset_id, sign in legs:
        asset = touched.get(asset_id)
        if asset is None:
            logger.warning("Asset %s not found, skipping balance update", asset_id)
            result.skipped_assets.append(asset_id)
            continue
        shares_delta = flow_shares * sign if flow_shares is not None else None
        try:
            new_balance = apply_asset_delta(
                store,
                asset,
                template.currency,
                flow_amount * sign,
                snapshot,
                shares_delta=shares_delta,
            )
        except PersistenceError:
            logger.exception("Failed to update balance of asset %s", asset_id)
            result.failed_assets.append(asset_id)
            continue
        if new_balance is None:
            result.skipped_assets.append(asset_id)
        else:
            result.asset_balances[asset_id] = new_balance

    if debt is not None:
        try:
            result.debt = apply_debt_payment(store, debt, template.currency, flow_amount, snapshot, today)
        except PersistenceError:
            logger.exception("Failed to update balance of debt %s", debt.id)

    return result


def share_based_assets_missing_shares(
    assets: Iterable[Asset | None],
    metadata: Mapping[str, Any] | None,
) -> list[Asset]:
    if shares_from_metadata(metadata) is not None:
        return []
    return [asset for asset in assets if asset is not None and asset.is_share_based]
