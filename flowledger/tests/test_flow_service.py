import unittest
from datetime import date
from decimal import Decimal
from unittest import mock

from flowledger.currency_conversion import StaticRateProvider
from flowledger.errors import FlowValidationError, PersistenceError, RecordNotFound, ReferenceNotFound
from flowledger.flow_service import (
    count_flows_needing_review,
    create_flow,
    delete_flow,
    flow_stats,
    get_flow,
    list_flows,
    mark_flow_reviewed,
    update_flow,
)
from flowledger.models import OwnerScope
from flowledger.recurring_schedules import get_schedule, list_schedules
from flowledger.schemas import FlowPayload, FlowUpdatePayload
from flowledger.store import FlowFilters, LedgerStore, create_ledger_engine

TODAY = date(2024, 3, 1)


def make_store() -> LedgerStore:
    store = LedgerStore(create_ledger_engine("sqlite://"))
    store.create_all()
    return store


class FlowServiceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.store = make_store()
        self.scope = OwnerScope.personal(1)
        self.rates = StaticRateProvider()
        self.checking = self.store.insert_asset(self.scope, "Checking", currency="USD", balance="1000")
        self.savings = self.store.insert_asset(self.scope, "Savings", currency="USD", balance="0")

    def create(self, **fields):
        fields.setdefault("currency", "USD")
        fields.setdefault("date", TODAY)
        return create_flow(self.store, self.scope, FlowPayload(**fields), rate_provider=self.rates, today=TODAY)

    def balance_of(self, asset_id: int) -> Decimal:
        return self.store.find_asset(asset_id).balance

    def assert_nothing_written(self) -> None:
        self.assertEqual(list_flows(self.store, self.scope)[1], 0)
        self.assertEqual(list_schedules(self.store, self.scope)[1], 0)


class CreateFlowTests(FlowServiceTestCase):
    def test_income_without_destination_writes_nothing(self) -> None:
        with self.assertRaises(FlowValidationError) as ctx:
            self.create(type="income", amount="1000", recurring_frequency="monthly")

        self.assertEqual(str(ctx.exception), "Income flows must have a to_asset_id")
        self.assert_nothing_written()

    def test_rejects_non_positive_amount(self) -> None:
        with self.assertRaises(FlowValidationError):
            self.create(type="expense", amount="0", from_asset_id=self.checking.id)
        self.assert_nothing_written()

    def test_rejects_unknown_frequency(self) -> None:
        with self.assertRaises(FlowValidationError):
            self.create(type="expense", amount="5", from_asset_id=self.checking.id, recurring_frequency="daily")
        self.assert_nothing_written()

    def test_references_must_belong_to_the_owner(self) -> None:
        foreign = self.store.insert_asset(OwnerScope.personal(2), "Theirs", currency="USD")

        with self.assertRaises(ReferenceNotFound) as ctx:
            self.create(type="expense", amount="5", from_asset_id=foreign.id)

        self.assertEqual(str(ctx.exception), "From asset not found or does not belong to user")
        self.assert_nothing_written()

    def test_unknown_debt_is_reported(self) -> None:
        with self.assertRaises(ReferenceNotFound) as ctx:
            self.create(type="expense", amount="5", from_asset_id=self.checking.id, debt_id=404)

        self.assertEqual(ctx.exception.reference, "Debt")

    def test_plain_flow_uses_default_currency(self) -> None:
        with mock.patch.dict("os.environ", {"DEFAULT_CURRENCY": "eur"}):
            flow = create_flow(
                self.store,
                self.scope,
                FlowPayload(type="expense", amount="12.5", from_asset_id=self.checking.id, category=" food "),
                today=TODAY,
            )

        self.assertEqual(flow.currency, "EUR")
        self.assertEqual(flow.date, TODAY)
        self.assertEqual(flow.amount, Decimal("12.50"))
        self.assertEqual(flow.category, "food")
        self.assertIsNone(flow.schedule_id)
        self.assertEqual(self.balance_of(self.checking.id), Decimal("1000"))

    def test_recurring_flow_is_linked_to_its_schedule(self) -> None:
        flow = self.create(
            type="income",
            amount="1000",
            to_asset_id=self.checking.id,
            date=date(2024, 1, 31),
            recurring_frequency="Monthly",
        )

        schedule = get_schedule(self.store, self.scope, flow.schedule_id)
        self.assertEqual(schedule.source_flow_id, flow.id)
        self.assertEqual(schedule.frequency, "monthly")
        self.assertEqual(schedule.next_run_date, date(2024, 2, 29))
        self.assertEqual(schedule.flow_template.amount, Decimal("1000.00"))
        self.assertEqual(flow.recurring_frequency, "monthly")

    def test_recurring_frequency_none_creates_no_schedule(self) -> None:
        flow = self.create(type="income", amount="10", to_asset_id=self.checking.id, recurring_frequency="none")

        self.assertIsNone(flow.schedule_id)
        self.assertEqual(list_schedules(self.store, self.scope)[1], 0)

    def test_failed_flow_insert_removes_new_schedule(self) -> None:
        with mock.patch.object(self.store, "insert_flow", side_effect=PersistenceError("Failed to create flow")):
            with self.assertRaises(PersistenceError):
                self.create(type="income", amount="10", to_asset_id=self.checking.id, recurring_frequency="weekly")

        self.assert_nothing_written()

    def test_unlinked_schedule_is_tolerated(self) -> None:
        with mock.patch.object(
            self.store,
            "link_schedule_source",
            side_effect=PersistenceError("Failed to link recurring schedule"),
        ) as link:
            flow = create_flow(
                self.store,
                self.scope,
                FlowPayload(
                    type="income",
                    amount="10",
                    currency="USD",
                    to_asset_id=self.checking.id,
                    recurring_frequency="weekly",
                ),
                today=TODAY,
                link_retries=2,
            )

        self.assertEqual(link.call_count, 2)
        self.assertEqual(get_flow(self.store, self.scope, flow.id).schedule_id, flow.schedule_id)
        self.assertIsNone(get_schedule(self.store, self.scope, flow.schedule_id).source_flow_id)

    def test_adjust_balances_moves_money(self) -> None:
        self.create(
            type="transfer",
            amount="250",
            from_asset_id=self.checking.id,
            to_asset_id=self.savings.id,
            adjust_balances=True,
        )

        self.assertEqual(self.balance_of(self.checking.id), Decimal("750"))
        self.assertEqual(self.balance_of(self.savings.id), Decimal("250"))

    def test_adjust_balances_requires_shares_for_holdings(self) -> None:
        fund = self.store.insert_asset(self.scope, "Index fund", type="etf", currency="USD", balance="3")

        with self.assertRaises(FlowValidationError):
            self.create(
                type="transfer",
                amount="300",
                from_asset_id=self.checking.id,
                to_asset_id=fund.id,
                adjust_balances=True,
            )

        self.assert_nothing_written()
        self.assertEqual(self.balance_of(self.checking.id), Decimal("1000"))

    def test_adjust_balances_with_shares(self) -> None:
        fund = self.store.insert_asset(self.scope, "Index fund", type="etf", currency="USD", balance="3")

        self.create(
            type="transfer",
            amount="300",
            from_asset_id=self.checking.id,
            to_asset_id=fund.id,
            metadata={"shares": "2"},
            adjust_balances=True,
        )

        self.assertEqual(self.balance_of(fund.id), Decimal("5"))
        self.assertEqual(self.balance_of(self.checking.id), Decimal("700"))

    def test_dividend_from_a_holding_needs_no_shares(self) -> None:
        stock = self.store.insert_asset(self.scope, "AAPL", type="stock", currency="USD", balance="10")

        flow = self.create(
            type="income",
            amount="5",
            from_asset_id=stock.id,
            to_asset_id=self.checking.id,
            category="dividend",
            adjust_balances=True,
        )

        self.assertEqual(flow.from_asset_id, stock.id)
        self.assertEqual(self.balance_of(self.checking.id), Decimal("1005"))
        self.assertEqual(self.balance_of(stock.id), Decimal("10"))

    def test_other_flow_referencing_a_holding_needs_no_shares(self) -> None:
        stock = self.store.insert_asset(self.scope, "AAPL", type="stock", currency="USD", balance="10")

        flow = self.create(type="other", amount="12", from_asset_id=stock.id, adjust_balances=True)

        self.assertEqual(flow.type, "other")
        self.assertEqual(self.balance_of(stock.id), Decimal("10"))

    def test_balance_failure_keeps_the_flow(self) -> None:
        with mock.patch.object(
            self.store,
            "increment_asset_balance",
            side_effect=PersistenceError("Failed to update asset balance"),
        ):
            flow = self.create(type="expense", amount="40", from_asset_id=self.checking.id, adjust_balances=True)

        self.assertEqual(get_flow(self.store, self.scope, flow.id).amount, Decimal("40"))
        self.assertEqual(self.balance_of(self.checking.id), Decimal("1000"))

    def test_debt_payment_on_create(self) -> None:
        debt = self.store.insert_debt(self.scope, "Card", principal="500")

        self.create(
            type="expense",
            amount="200",
            from_asset_id=self.checking.id,
            debt_id=debt.id,
            category="pay_debt",
            adjust_balances=True,
        )

        self.assertEqual(self.store.find_debt(debt.id).current_balance, Decimal("300"))
        self.assertEqual(self.balance_of(self.checking.id), Decimal("800"))


class UpdateFlowTests(FlowServiceTestCase):
    def update(self, flow_id: int, **fields):
        return update_flow(
            self.store,
            self.scope,
            flow_id,
            FlowUpdatePayload(**fields),
            rate_provider=self.rates,
            today=TODAY,
        )

    def test_amount_change_applies_only_the_difference(self) -> None:
        flow = self.create(type="expense", amount="100", from_asset_id=self.checking.id, adjust_balances=True)
        self.assertEqual(self.balance_of(self.checking.id), Decimal("900"))

        self.update(flow.id, amount="150", adjust_balances=True)
        self.assertEqual(self.balance_of(self.checking.id), Decimal("850"))

        repeated = self.update(flow.id, amount="150", adjust_balances=True)
        self.assertEqual(self.balance_of(self.checking.id), Decimal("850"))
        self.assertEqual(repeated.amount, Decimal("150"))

    def test_shares_change_reaches_the_holding(self) -> None:
        stock = self.store.insert_asset(self.scope, "AAPL", type="stock", currency="USD", balance="10")
        flow = self.create(
            type="transfer",
            amount="300",
            from_asset_id=self.checking.id,
            to_asset_id=stock.id,
            metadata={"shares": "2"},
            adjust_balances=True,
        )
        self.assertEqual(self.balance_of(stock.id), Decimal("12"))

        self.update(flow.id, amount="300", metadata={"shares": "3"}, adjust_balances=True)

        self.assertEqual(self.balance_of(stock.id), Decimal("13"))
        self.assertEqual(self.balance_of(self.checking.id), Decimal("700"))

        self.update(flow.id, metadata={"shares": "3"}, adjust_balances=True)
        self.assertEqual(self.balance_of(stock.id), Decimal("13"))

    def test_update_without_adjust_leaves_balances(self) -> None:
        flow = self.create(type="expense", amount="100", from_asset_id=self.checking.id)

        updated = self.update(flow.id, amount="75", description="Groceries")

        self.assertEqual(updated.amount, Decimal("75"))
        self.assertEqual(updated.description, "Groceries")
        self.assertEqual(updated.from_asset_id, self.checking.id)
        self.assertEqual(self.balance_of(self.checking.id), Decimal("1000"))

    def test_structure_is_revalidated_when_type_changes(self) -> None:
        flow = self.create(type="expense", amount="100", from_asset_id=self.checking.id)

        with self.assertRaises(FlowValidationError):
            self.update(flow.id, type="transfer")

        moved = self.update(flow.id, type="transfer", to_asset_id=self.savings.id)
        self.assertEqual(moved.type, "transfer")

    def test_adding_recurrence_creates_linked_schedule(self) -> None:
        flow = self.create(type="income", amount="20", to_asset_id=self.checking.id, date=date(2024, 1, 10))

        updated = self.update(flow.id, recurring_frequency="weekly")

        schedule = get_schedule(self.store, self.scope, updated.schedule_id)
        self.assertEqual(schedule.source_flow_id, flow.id)
        self.assertEqual(schedule.next_run_date, date(2024, 1, 17))
        self.assertTrue(schedule.is_active)

    def test_changing_recurrence_updates_existing_schedule(self) -> None:
        flow = self.create(type="income", amount="20", to_asset_id=self.checking.id, recurring_frequency="weekly")

        updated = self.update(flow.id, recurring_frequency="monthly", amount="25")

        self.assertEqual(updated.schedule_id, flow.schedule_id)
        schedule = get_schedule(self.store, self.scope, flow.schedule_id)
        self.assertEqual(schedule.frequency, "monthly")
        self.assertEqual(schedule.flow_template.amount, Decimal("25.00"))

    def test_recurrence_none_deactivates_schedule(self) -> None:
        flow = self.create(type="income", amount="20", to_asset_id=self.checking.id, recurring_frequency="weekly")

        updated = self.update(flow.id, recurring_frequency="none")

        self.assertIsNone(updated.recurring_frequency)
        self.assertFalse(get_schedule(self.store, self.scope, flow.schedule_id).is_active)

    def test_missing_flow_raises(self) -> None:
        with self.assertRaises(RecordNotFound):
            self.update(999, amount="5")


class FlowQueryTests(FlowServiceTestCase):
    def test_review_queue(self) -> None:
        first = self.create(type="expense", amount="5", from_asset_id=self.checking.id, needs_review=True)
        self.create(type="expense", amount="6", from_asset_id=self.checking.id, needs_review=True)
        self.assertEqual(count_flows_needing_review(self.store, self.scope), 2)

        reviewed = mark_flow_reviewed(self.store, self.scope, first.id)

        self.assertFalse(reviewed.needs_review)
        self.assertEqual(count_flows_needing_review(self.store, self.scope), 1)

    def test_list_filters_by_type_and_asset(self) -> None:
        self.create(type="expense", amount="5", from_asset_id=self.checking.id, date=date(2024, 1, 1))
        income = self.create(type="income", amount="7", to_asset_id=self.savings.id, date=date(2024, 2, 1))

        flows, total = list_flows(self.store, self.scope, FlowFilters(type="income"))
        self.assertEqual([flow.id for flow in flows], [income.id])
        self.assertEqual(total, 1)

        by_asset, _ = list_flows(self.store, self.scope, FlowFilters(asset_id=self.savings.id))
        self.assertEqual([flow.id for flow in by_asset], [income.id])

    def test_family_scope_shares_flows(self) -> None:
        self.store.add_family_member(10, 1)
        self.store.add_family_member(10, 2)
        family = OwnerScope.family(1, 10)
        partner = OwnerScope.family(2, self.store.family_id_for_user(2))
        joint = self.store.insert_asset(family, "Joint", currency="USD")

        flow = create_flow(
            self.store,
            family,
            FlowPayload(type="income", amount="50", currency="USD", to_asset_id=joint.id),
            today=TODAY,
        )

        self.assertEqual(get_flow(self.store, partner, flow.id).user_id, 1)
        with self.assertRaises(RecordNotFound):
            get_flow(self.store, self.scope, flow.id)

    def test_delete_is_scoped(self) -> None:
        flow = self.create(type="expense", amount="5", from_asset_id=self.checking.id)

        with self.assertRaises(RecordNotFound):
            delete_flow(self.store, OwnerScope.personal(2), flow.id)

        delete_flow(self.store, self.scope, flow.id)
        with self.assertRaises(RecordNotFound):
            get_flow(self.store, self.scope, flow.id)


class FlowStatsTests(FlowServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.create(type="income", amount="1000", to_asset_id=self.checking.id, date=date(2024, 3, 5))
        self.create(type="expense", amount="200", from_asset_id=self.checking.id, date=date(2024, 3, 10))
        self.create(type="expense", amount="92", currency="EUR", from_asset_id=self.checking.id, date=date(2024, 3, 12))
        self.create(
            type="transfer",
            amount="50",
            from_asset_id=self.checking.id,
            to_asset_id=self.savings.id,
            date=date(2024, 3, 20),
        )
        self.create(
            type="income",
            amount="999",
            to_asset_id=self.checking.id,
            category="adjustment",
            date=date(2024, 3, 21),
        )
        self.create(type="income", amount="400", to_asset_id=self.checking.id, date=date(2024, 2, 28))

    def stats(self, **kwargs):
        return flow_stats(self.store, self.scope, rate_provider=self.rates, today=TODAY, **kwargs)

    def test_defaults_to_the_current_month(self) -> None:
        stats = self.stats()

        self.assertEqual(stats.start_date, date(2024, 3, 1))
        self.assertEqual(stats.end_date, date(2024, 3, 31))
        self.assertEqual(stats.currency, "USD")
        self.assertEqual(stats.total_income, Decimal("1000.00"))
        self.assertEqual(stats.total_expense, Decimal("300.00"))
        self.assertEqual(stats.total_transfer, Decimal("50.00"))
        self.assertEqual(stats.net_flow, Decimal("700.00"))

    def test_totals_are_converted_to_the_requested_currency(self) -> None:
        stats = self.stats(currency="eur")

        self.assertEqual(stats.currency, "EUR")
        self.assertEqual(stats.total_income, Decimal("920.00"))
        self.assertEqual(stats.total_expense, Decimal("276.00"))

    def test_explicit_range(self) -> None:
        stats = self.stats(start_date=date(2024, 2, 1), end_date=date(2024, 3, 6))

        self.assertEqual(stats.total_income, Decimal("1400.00"))
        self.assertEqual(stats.total_expense, Decimal("0.00"))

    def test_rejects_inverted_range(self) -> None:
        with self.assertRaises(FlowValidationError):
            self.stats(start_date=date(2024, 3, 31), end_date=date(2024, 3, 1))

    def test_rejects_invalid_currency(self) -> None:
        with self.assertRaises(FlowValidationError):
            self.stats(currency="dollars")

    def test_other_owners_are_not_counted(self) -> None:
        stats = flow_stats(self.store, OwnerScope.personal(2), rate_provider=self.rates, today=TODAY)

        self.assertEqual(stats.total_income, Decimal("0.00"))
        self.assertEqual(stats.net_flow, Decimal("0.00"))


if __name__ == "__main__":
    unittest.main()
