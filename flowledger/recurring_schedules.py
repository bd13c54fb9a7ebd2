from __future__ import annotations

from calendar import monthrange
from datetime import date, timedelta
import logging

from flowledger.balance_adjustment import adjust_for_flow
from flowledger.currency_conversion import RateProvider
from flowledger.errors import RecordNotFound, ReferenceNotFound
from flowledger.flow_validation import ScheduleFrequency
from flowledger.models import (
    Flow,
    FlowTemplate,
    OwnerScope,
    ProcessRecurringResult,
    RecurringSchedule,
    ScheduleError,
)
from flowledger.schemas import SchedulePayload, ScheduleUpdatePayload
from flowledger.store import LedgerStore

logger = logging.getLogger(__name__)

INTERVAL_DAYS = {"weekly": 7, "biweekly": 14}
INTERVAL_MONTHS = {"monthly": 1, "quarterly": 3, "yearly": 12}


def calculate_next_run_date(current: date, frequency: str, anchor_day: int | None = None) -> date:
    """Return the run date one period after ``current``.

    Month based steps land on ``anchor_day`` (default ``current.day``),
    clamped to the last day of the target month: a schedule anchored on the
    31st runs Jan 31, Feb 29, Mar 31.
    """
    normalized = ScheduleFrequency.validate(frequency)
    if normalized in INTERVAL_DAYS:
        return current + timedelta(days=INTERVAL_DAYS[normalized])
    return _add_months(current, INTERVAL_MONTHS[normalized], anchor_day or current.day)


def create_schedule(store: LedgerStore, scope: OwnerScope, payload: SchedulePayload) -> RecurringSchedule:
    payload = SchedulePayload.validate_payload(payload)
    template = payload.flow_template.to_template()
    _check_template_references(store, scope, template)
    if payload.source_flow_id is not None and store.find_flow(payload.source_flow_id, scope.belong_id) is None:
        raise ReferenceNotFound("Source flow")

    schedule = store.insert_schedule(
        {
            **scope.ownership_values(),
            "source_flow_id": payload.source_flow_id,
            "frequency": payload.frequency,
            "next_run_date": payload.next_run_date,
            "anchor_day": payload.next_run_date.day,
            "is_active": True,
            "flow_template": template.to_dict(),
        }
    )
    logger.info(
        "Created %s recurring schedule %s for %s, first run %s",
        schedule.frequency,
        schedule.id,
        scope.belong_id,
        schedule.next_run_date.isoformat(),
    )
    return schedule


def update_schedule(
    store: LedgerStore,
    scope: OwnerScope,
    schedule_id: int,
    payload: ScheduleUpdatePayload,
) -> RecurringSchedule:
    existing = get_schedule(store, scope, schedule_id)
    payload = ScheduleUpdatePayload.validate_payload(payload)
    fields = payload.model_fields_set

    updates = {}
    if "frequency" in fields:
        updates["frequency"] = payload.frequency
    if "next_run_date" in fields:
        updates["next_run_date"] = payload.next_run_date
        updates["anchor_day"] = payload.next_run_date.day
    if "is_active" in fields:
        updates["is_active"] = payload.is_active
    if "flow_template" in fields:
        template = payload.flow_template.to_template()
        _check_template_references(store, scope, template)
        updates["flow_template"] = template.to_dict()
    if not updates:
        return existing

    updated = store.update_schedule(schedule_id, updates, belong_id=scope.belong_id)
    if updated is None:
        raise RecordNotFound("Recurring schedule not found")
    return updated


def deactivate_schedule(store: LedgerStore, scope: OwnerScope, schedule_id: int) -> RecurringSchedule:
    updated = store.update_schedule(schedule_id, {"is_active": False}, belong_id=scope.belong_id)
    if updated is None:
        raise RecordNotFound("Recurring schedule not found")
    logger.info("Deactivated recurring schedule %s", schedule_id)
    return updated


def delete_schedule(store: LedgerStore, scope: OwnerScope, schedule_id: int) -> None:
    if not store.delete_schedule(schedule_id, belong_id=scope.belong_id):
        raise RecordNotFound("Recurring schedule not found")
    logger.info("Deleted recurring schedule %s", schedule_id)


def get_schedule(store: LedgerStore, scope: OwnerScope, schedule_id: int) -> RecurringSchedule:
    schedule = store.find_schedule(schedule_id, belong_id=scope.belong_id)
    if schedule is None:
        raise RecordNotFound("Recurring schedule not found")
    return schedule


def list_schedules(
    store: LedgerStore,
    scope: OwnerScope,
    is_active: bool | None = None,
    frequency: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[RecurringSchedule], int]:
    if frequency:
        frequency = ScheduleFrequency.validate(frequency)
    return store.list_schedules(
        scope.belong_id,
        is_active=is_active,
        frequency=frequency,
        limit=limit,
        offset=offset,
    )


def list_schedule_flows(store: LedgerStore, scope: OwnerScope, schedule_id: int) -> list[Flow]:
    get_schedule(store, scope, schedule_id)
    return store.list_flows_for_schedule(schedule_id)


def process_due_schedules(
    store: LedgerStore,
    today: date | None = None,
    rate_provider: RateProvider | None = None,
    scope: OwnerScope | None = None,
) -> ProcessRecurringResult:
    """Materialize one flow for every active schedule due on or before ``today``.

    Each due schedule is handled on its own: a failure is recorded in
    ``errors`` and the batch moves on. A schedule advances exactly one period
    per call, so a backlog catches up over successive runs. Without a scope
    every owner's schedules are processed.
    """
    today = today or date.today()
    belong_id = scope.belong_id if scope is not None else None
    due = store.list_due_schedules(today, belong_id=belong_id)
    result = ProcessRecurringResult()
    logger.info("Processing %d due recurring schedules for %s", len(due), today.isoformat())

    for schedule in due:
        try:
            flow = store.insert_flow(_generated_flow_values(schedule))
        except Exception as exc:  # one schedule's failure must not stop the batch
            logger.exception("Failed to create flow for recurring schedule %s", schedule.id)
            result.errors.append(ScheduleError(schedule_id=schedule.id, error=str(exc)))
            continue
        result.created_flows.append(flow.id)

        try:
            adjust_for_flow(
                store,
                schedule.flow_template,
                today,
                rate_provider=rate_provider,
                include_debt_payment=True,
            )
        except Exception:  # flow already exists, the schedule still advances
            logger.exception("Failed to adjust balances for recurring flow %s", flow.id)

        next_run_date = calculate_next_run_date(schedule.next_run_date, schedule.frequency, schedule.anchor_day)
        try:
            store.update_schedule(
                schedule.id,
                {"next_run_date": next_run_date, "last_run_date": schedule.next_run_date},
            )
        except Exception as exc:  # one schedule's failure must not stop the batch
            logger.exception("Failed to advance recurring schedule %s", schedule.id)
            result.errors.append(ScheduleError(schedule_id=schedule.id, error=str(exc)))
            continue
        result.processed += 1

    logger.info(
        "Recurring run for %s: %d processed, %d flows created, %d errors",
        today.isoformat(),
        result.processed,
        len(result.created_flows),
        len(result.errors),
    )
    return result


def _generated_flow_values(schedule: RecurringSchedule) -> dict:
    return {
        **schedule.flow_template.flow_values(),
        "user_id": schedule.user_id,
        "belong_id": schedule.belong_id,
        "date": schedule.next_run_date,
        "recurring_frequency": None,
        "schedule_id": schedule.id,
        "needs_review": False,
    }


def _check_template_references(store: LedgerStore, scope: OwnerScope, template: FlowTemplate) -> None:
    _, missing = store.resolve_references(
        scope,
        from_asset_id=template.from_asset_id,
        to_asset_id=template.to_asset_id,
        debt_id=template.debt_id,
        category_id=template.flow_expense_category_id,
    )
    if missing:
        raise ReferenceNotFound(missing[0])


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)

