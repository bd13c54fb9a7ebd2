from datetime import date, datetime
from decimal import Decimal
import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from flowledger import flow_service, recurring_schedules
from flowledger.config import (
    build_rate_provider,
    configure_logging,
    get_database_url,
    get_frontend_origin,
)
from flowledger.currency_conversion import RateProviderUnavailable
from flowledger.errors import (
    FlowValidationError,
    LedgerError,
    PersistenceError,
    RecordNotFound,
    ReferenceNotFound,
)
from flowledger.models import Flow, OwnerScope, ProcessRecurringResult, RecurringSchedule
from flowledger.schemas import FlowPayload, FlowUpdatePayload, SchedulePayload, ScheduleUpdatePayload
from flowledger.store import FlowFilters, LedgerStore, create_ledger_engine

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_frontend_origin()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

store = LedgerStore(create_ledger_engine(get_database_url()))
FX_PROVIDER = build_rate_provider()


@app.on_event("startup")
def init_db() -> None:
    store.create_all()


class FlowResponse(BaseModel):
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
    metadata: dict[str, Any] | None = None
    needs_review: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


class FlowListResponse(BaseModel):
    flows: list[FlowResponse]
    total: int


class ReviewCountResponse(BaseModel):
    count: int


class FlowStatsResponse(BaseModel):
    total_income: Decimal
    total_expense: Decimal
    total_transfer: Decimal
    net_flow: Decimal
    currency: str
    start_date: date
    end_date: date


class RecurringScheduleResponse(BaseModel):
    id: int
    user_id: int
    belong_id: str
    source_flow_id: int | None = None
    frequency: str
    next_run_date: date
    last_run_date: date | None = None
    is_active: bool
    flow_template: dict[str, Any]
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RecurringScheduleListResponse(BaseModel):
    schedules: list[RecurringScheduleResponse]
    total: int


class ScheduleErrorResponse(BaseModel):
    schedule_id: int
    error: str


class ProcessRecurringResponse(BaseModel):
    processed: int
    created_flows: list[int]
    errors: list[ScheduleErrorResponse]


def resolve_owner_scope(x_user_id: str | None, x_view_mode: str | None) -> OwnerScope:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    view_mode = (x_view_mode or "").strip().lower()
    if view_mode == "personal":
        return OwnerScope.personal(user_id)
    # Family view when requested or by default, but only for family members.
    family_id = store.family_id_for_user(user_id)
    if family_id is None:
        return OwnerScope.personal(user_id)
    return OwnerScope.family(user_id, family_id)


def to_http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, (FlowValidationError, ReferenceNotFound)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, RecordNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PersistenceError):
        logger.error("Storage failure: %s", exc)
        return HTTPException(status_code=500, detail=str(exc))
    return HTTPException(status_code=500, detail="Unexpected ledger error.")


def flow_response(flow: Flow) -> FlowResponse:
    return FlowResponse(
        id=flow.id,
        user_id=flow.user_id,
        belong_id=flow.belong_id,
        type=flow.type,
        amount=flow.amount,
        currency=flow.currency,
        date=flow.date,
        from_asset_id=flow.from_asset_id,
        to_asset_id=flow.to_asset_id,
        debt_id=flow.debt_id,
        category=flow.category,
        description=flow.description,
        flow_expense_category_id=flow.flow_expense_category_id,
        recurring_frequency=flow.recurring_frequency,
        schedule_id=flow.schedule_id,
        metadata=dict(flow.metadata) if flow.metadata is not None else None,
        needs_review=flow.needs_review,
        created_at=flow.created_at,
        updated_at=flow.updated_at,
    )


def schedule_response(schedule: RecurringSchedule) -> RecurringScheduleResponse:
    return RecurringScheduleResponse(
        id=schedule.id,
        user_id=schedule.user_id,
        belong_id=schedule.belong_id,
        source_flow_id=schedule.source_flow_id,
        frequency=schedule.frequency,
        next_run_date=schedule.next_run_date,
        last_run_date=schedule.last_run_date,
        is_active=schedule.is_active,
        flow_template=schedule.flow_template.to_dict(),
        created_at=schedule.created_at,
        updated_at=schedule.updated_at,
    )


def process_response(result: ProcessRecurringResult) -> ProcessRecurringResponse:
    return ProcessRecurringResponse(
        processed=result.processed,
        created_flows=list(result.created_flows),
        errors=[
            ScheduleErrorResponse(schedule_id=item.schedule_id, error=item.error)
            for item in result.errors
        ],
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/flows", response_model=FlowResponse)
def create_flow(
    payload: FlowPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_view_mode: str | None = Header(None, alias="x-view-mode"),
) -> FlowResponse:
    scope = resolve_owner_scope(x_user_id, x_view_mode)
    try:
        flow = flow_service.create_flow(store, scope, payload, rate_provider=FX_PROVIDER)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return flow_response(flow)


@app.get("/flows", response_model=FlowListResponse)
def list_flows(
    type: str | None = Query(None),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    asset_id: int | None = Query(None),
    limit: int = Query(20, ge=1, le=500),
    offset: int = Query(0, ge=0),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_view_mode: str | None = Header(None, alias="x-view-mode"),
) -> FlowListResponse:
    scope = resolve_owner_scope(x_user_id, x_view_mode)
    filters = FlowFilters(
        type=type.strip().lower() if type else None,
        start_date=start_date,
        end_date=end_date,
        asset_id=asset_id,
        limit=limit,
        offset=offset,
    )
    flows, total = flow_service.list_flows(store, scope, filters)
    return FlowListResponse(flows=[flow_response(flow) for flow in flows], total=total)


@app.get("/flows/review-count", response_model=ReviewCountResponse)
def get_flows_needing_review_count(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_view_mode: str | None = Header(None, alias="x-view-mode"),
) -> ReviewCountResponse:
    scope = resolve_owner_scope(x_user_id, x_view_mode)
    return ReviewCountResponse(count=flow_service.count_flows_needing_review(store, scope))


@app.get("/flows/stats", response_model=FlowStatsResponse)
def get_flow_stats(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    currency: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_view_mode: str | None = Header(None, alias="x-view-mode"),
) -> FlowStatsResponse:
    scope = resolve_owner_scope(x_user_id, x_view_mode)
    try:
        stats = flow_service.flow_stats(
            store,
            scope,
            start_date=start_date,
            end_date=end_date,
            currency=currency,
            rate_provider=FX_PROVIDER,
        )
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    except RateProviderUnavailable as exc:
        raise HTTPException(status_code=503, detail="Exchange rates are unavailable.") from exc
    return FlowStatsResponse(
        total_income=stats.total_income,
        total_expense=stats.total_expense,
        total_transfer=stats.total_transfer,
        net_flow=stats.net_flow,
        currency=stats.currency,
        start_date=stats.start_date,
        end_date=stats.end_date,
    )


@app.get("/flows/{flow_id}", response_model=FlowResponse)
def get_flow(
    flow_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_view_mode: str | None = Header(None, alias="x-view-mode"),
) -> FlowResponse:
    scope = resolve_owner_scope(x_user_id, x_view_mode)
    try:
        flow = flow_service.get_flow(store, scope, flow_id)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return flow_response(flow)


@app.put("/flows/{flow_id}", response_model=FlowResponse)
def update_flow(
    flow_id: int,
    payload: FlowUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_view_mode: str | None = Header(None, alias="x-view-mode"),
) -> FlowResponse:
    scope = resolve_owner_scope(x_user_id, x_view_mode)
    try:
        flow = flow_service.update_flow(store, scope, flow_id, payload, rate_provider=FX_PROVIDER)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return flow_response(flow)


@app.delete("/flows/{flow_id}")
def delete_flow(
    flow_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_view_mode: str | None = Header(None, alias="x-view-mode"),
) -> dict:
    scope = resolve_owner_scope(x_user_id, x_view_mode)
    try:
        flow_service.delete_flow(store, scope, flow_id)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return {"status": "deleted"}


@app.post("/flows/{flow_id}/review", response_model=FlowResponse)
def mark_flow_reviewed(
    flow_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_view_mode: str | None = Header(None, alias="x-view-mode"),
) -> FlowResponse:
    scope = resolve_owner_scope(x_user_id, x_view_mode)
    try:
        flow = flow_service.mark_flow_reviewed(store, scope, flow_id)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return flow_response(flow)


@app.get("/recurring-schedules", response_model=RecurringScheduleListResponse)
def list_recurring_schedules(
    is_active: bool | None = Query(None),
    frequency: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_view_mode: str | None = Header(None, alias="x-view-mode"),
) -> RecurringScheduleListResponse:
    scope = resolve_owner_scope(x_user_id, x_view_mode)
    try:
        schedules, total = recurring_schedules.list_schedules(
            store,
            scope,
            is_active=is_active,
            frequency=frequency,
            limit=limit,
            offset=offset,
        )
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return RecurringScheduleListResponse(
        schedules=[schedule_response(schedule) for schedule in schedules],
        total=total,
    )


@app.post("/recurring-schedules", response_model=RecurringScheduleResponse)
def create_recurring_schedule(
    payload: SchedulePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_view_mode: str | None = Header(None, alias="x-view-mode"),
) -> RecurringScheduleResponse:
    scope = resolve_owner_scope(x_user_id, x_view_mode)
    try:
        schedule = recurring_schedules.create_schedule(store, scope, payload)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return schedule_response(schedule)


@app.post("/recurring-schedules/process", response_model=ProcessRecurringResponse)
def process_recurring_schedules(
    as_of: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_view_mode: str | None = Header(None, alias="x-view-mode"),
) -> ProcessRecurringResponse:
    scope = resolve_owner_scope(x_user_id, x_view_mode)
    result = recurring_schedules.process_due_schedules(
        store,
        today=as_of or date.today(),
        rate_provider=FX_PROVIDER,
        scope=scope,
    )
    return process_response(result)


@app.get("/recurring-schedules/{schedule_id}", response_model=RecurringScheduleResponse)
def get_recurring_schedule(
    schedule_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_view_mode: str | None = Header(None, alias="x-view-mode"),
) -> RecurringScheduleResponse:
    scope = resolve_owner_scope(x_user_id, x_view_mode)
    try:
        schedule = recurring_schedules.get_schedule(store, scope, schedule_id)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return schedule_response(schedule)


@app.put("/recurring-schedules/{schedule_id}", response_model=RecurringScheduleResponse)
def update_recurring_schedule(
    schedule_id: int,
    payload: ScheduleUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_view_mode: str | None = Header(None, alias="x-view-mode"),
) -> RecurringScheduleResponse:
    scope = resolve_owner_scope(x_user_id, x_view_mode)
    try:
        schedule = recurring_schedules.update_schedule(store, scope, schedule_id, payload)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return schedule_response(schedule)


@app.post("/recurring-schedules/{schedule_id}/deactivate", response_model=RecurringScheduleResponse)
def deactivate_recurring_schedule(
    schedule_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_view_mode: str | None = Header(None, alias="x-view-mode"),
) -> RecurringScheduleResponse:
    scope = resolve_owner_scope(x_user_id, x_view_mode)
    try:
        schedule = recurring_schedules.deactivate_schedule(store, scope, schedule_id)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return schedule_response(schedule)


@app.delete("/recurring-schedules/{schedule_id}")
def delete_recurring_schedule(
    schedule_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_view_mode: str | None = Header(None, alias="x-view-mode"),
) -> dict:
    scope = resolve_owner_scope(x_user_id, x_view_mode)
    try:
        recurring_schedules.delete_schedule(store, scope, schedule_id)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return {"status": "deleted"}


@app.get("/recurring-schedules/{schedule_id}/flows", response_model=list[FlowResponse])
def list_recurring_schedule_flows(
    schedule_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_view_mode: str | None = Header(None, alias="x-view-mode"),
) -> list[FlowResponse]:
    scope = resolve_owner_scope(x_user_id, x_view_mode)
    try:
        flows = recurring_schedules.list_schedule_flows(store, scope, schedule_id)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return [flow_response(flow) for flow in flows]
