"""API router for aumos-changelog.

All changelog endpoints are registered here and included in main.py under the
/api/v1 prefix. Routes are thin: all business logic lives in the service
layer.

Read endpoints:
- GET     /changelog/history/{entity}/{row_identity}      - Change history of a row
- GET     /changelog/state/{entity}/{row_identity}        - Row state at a past time
- GET     /changelog/actors/{actor_id}                    - Activity of an actor
- GET     /changelog/tenants/{tenant_id}                  - Activity of a tenant
- GET     /changelog/transactions/{transaction_id}        - Changes of one transaction
- GET     /changelog/summary                              - Counts per entity and operation
- GET     /changelog/alerts                               - Unacknowledged alert events
- GET     /changelog/queue                                - Capture queue depth

Admin endpoints:
- GET/POST/DELETE /changelog/admin/capture[/{entity}]     - Capture toggles
- GET/POST/DELETE /changelog/admin/exclusions[...]        - Redaction rules
- GET/POST        /changelog/admin/partitions             - Partitions
- POST            /changelog/admin/partitions/archive     - Retention pass
- GET/POST        /changelog/admin/alert-rules            - Alert rules
- POST            /changelog/admin/alert-rules/{name}/... - Enable / disable
- POST            /changelog/admin/alerts/{id}/acknowledge
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from aumos_changelog.api.schemas import (
    AlertAcknowledgeRequest,
    AlertEventResponse,
    AlertRuleCreateRequest,
    AlertRuleResponse,
    ArchivePartitionsRequest,
    CaptureStatusResponse,
    ChangeRecordResponse,
    ChangeSummaryResponse,
    ExclusionCreateRequest,
    ExclusionResponse,
    PartitionCreateRequest,
    PartitionResponse,
    QueueDepthResponse,
    ReconstructedStateResponse,
    RetentionReportResponse,
)
from aumos_changelog.core.records import TimeRange
from aumos_changelog.core.services import MAX_PAGE_SIZE, ChangelogAdminService, ChangelogService
from aumos_changelog.errors import (
    ConflictError,
    NotFoundError,
    ReconstructionError,
    ValidationError,
)
from aumos_changelog.observability import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/changelog", tags=["changelog"])


# ---------------------------------------------------------------------------
# Dependency factories - services come from the runtime built at startup
# ---------------------------------------------------------------------------


def get_changelog_service(request: Request) -> ChangelogService:
    """Return the read service of the application runtime."""
    return request.app.state.runtime.changelog_service


def get_admin_service(request: Request) -> ChangelogAdminService:
    """Return the admin service of the application runtime."""
    return request.app.state.runtime.admin_service


def _time_range(start: datetime, end: datetime) -> TimeRange:
    try:
        return TimeRange(start=start, end=end)
    except PydanticValidationError as exc:
        raise ValidationError("start must be before end") from exc


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def install_error_handlers(app: FastAPI) -> None:
    """Map changelog errors to HTTP responses.

    NotFoundError → 404, ValidationError → 422, ConflictError and
    ReconstructionError → 409.
    """

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def _invalid(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": exc.message})

    @app.exception_handler(ConflictError)
    async def _conflict(request: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ReconstructionError)
    async def _unreplayable(request: Request, exc: ReconstructionError) -> JSONResponse:
        logger.warning("Reconstruction refused", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=409, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get("/history/{entity}/{row_identity}", response_model=list[ChangeRecordResponse])
async def get_history(
    entity: str,
    row_identity: str,
    service: Annotated[ChangelogService, Depends(get_changelog_service)],
    limit: int = Query(default=100, ge=1, le=MAX_PAGE_SIZE),
) -> list[ChangeRecordResponse]:
    """Return the recorded changes of one row, newest first.

    Fields excluded at the time of the request are withheld and listed in
    ``redacted_fields``.
    """
    records = await service.get_history(entity, row_identity, limit=limit)
    return [ChangeRecordResponse.from_record(record) for record in records]


@router.get("/state/{entity}/{row_identity}", response_model=ReconstructedStateResponse)
async def get_state_at(
    entity: str,
    row_identity: str,
    service: Annotated[ChangelogService, Depends(get_changelog_service)],
    as_of: datetime = Query(description="Point in time to reconstruct (UTC)"),
) -> ReconstructedStateResponse:
    """Reconstruct a row as it stood at ``as_of``.

    Returns 404 if the row did not exist at that time and 409 if its history
    cannot be replayed unambiguously.
    """
    state = await service.get_state_at(entity, row_identity, as_of)
    if state is None:
        raise NotFoundError(resource=entity, resource_id=f"{row_identity} at {as_of.isoformat()}")
    return ReconstructedStateResponse.from_state(state)


@router.get("/actors/{actor_id}", response_model=list[ChangeRecordResponse])
async def get_actor_activity(
    actor_id: str,
    service: Annotated[ChangelogService, Depends(get_changelog_service)],
    start: datetime = Query(description="Range start (inclusive, UTC)"),
    end: datetime = Query(description="Range end (exclusive, UTC)"),
    limit: int = Query(default=100, ge=1, le=MAX_PAGE_SIZE),
) -> list[ChangeRecordResponse]:
    records = await service.get_actor_activity(actor_id, _time_range(start, end), limit)
    return [ChangeRecordResponse.from_record(record) for record in records]


@router.get("/tenants/{tenant_id}", response_model=list[ChangeRecordResponse])
async def get_tenant_activity(
    tenant_id: str,
    service: Annotated[ChangelogService, Depends(get_changelog_service)],
    start: datetime = Query(description="Range start (inclusive, UTC)"),
    end: datetime = Query(description="Range end (exclusive, UTC)"),
    limit: int = Query(default=100, ge=1, le=MAX_PAGE_SIZE),
) -> list[ChangeRecordResponse]:
    records = await service.get_tenant_activity(tenant_id, _time_range(start, end), limit)
    return [ChangeRecordResponse.from_record(record) for record in records]


@router.get("/transactions/{transaction_id}", response_model=list[ChangeRecordResponse])
async def get_transaction_changes(
    transaction_id: int,
    service: Annotated[ChangelogService, Depends(get_changelog_service)],
) -> list[ChangeRecordResponse]:
    records = await service.get_transaction_changes(transaction_id)
    return [ChangeRecordResponse.from_record(record) for record in records]


@router.get("/summary", response_model=list[ChangeSummaryResponse])
async def get_change_summary(
    service: Annotated[ChangelogService, Depends(get_changelog_service)],
    start: datetime = Query(description="Range start (inclusive, UTC)"),
    end: datetime = Query(description="Range end (exclusive, UTC)"),
) -> list[ChangeSummaryResponse]:
    rows = await service.get_change_summary(_time_range(start, end))
    return [ChangeSummaryResponse(**row.model_dump()) for row in rows]


@router.get("/alerts", response_model=list[AlertEventResponse])
async def get_active_alerts(
    service: Annotated[ChangelogService, Depends(get_changelog_service)],
    start: datetime = Query(description="Range start (inclusive, UTC)"),
    end: datetime = Query(description="Range end (exclusive, UTC)"),
) -> list[AlertEventResponse]:
    events = await service.get_active_alerts(_time_range(start, end))
    return [AlertEventResponse.from_event(event) for event in events]


@router.get("/queue", response_model=QueueDepthResponse)
async def get_queue_depth(
    service: Annotated[ChangelogService, Depends(get_changelog_service)],
) -> QueueDepthResponse:
    return QueueDepthResponse(depth=await service.get_queue_depth())


# ---------------------------------------------------------------------------
# Admin endpoints - capture and exclusions
# ---------------------------------------------------------------------------


@router.get("/admin/capture", response_model=CaptureStatusResponse)
async def get_capture_status(
    service: Annotated[ChangelogAdminService, Depends(get_admin_service)],
) -> CaptureStatusResponse:
    return CaptureStatusResponse(tracked_entities=service.tracked_entities())


@router.post("/admin/capture/{entity}", response_model=CaptureStatusResponse)
async def enable_capture(
    entity: str,
    service: Annotated[ChangelogAdminService, Depends(get_admin_service)],
) -> CaptureStatusResponse:
    service.enable_capture(entity)
    return CaptureStatusResponse(tracked_entities=service.tracked_entities())


@router.delete("/admin/capture/{entity}", response_model=CaptureStatusResponse)
async def disable_capture(
    entity: str,
    service: Annotated[ChangelogAdminService, Depends(get_admin_service)],
) -> CaptureStatusResponse:
    service.disable_capture(entity)
    return CaptureStatusResponse(tracked_entities=service.tracked_entities())


@router.get("/admin/exclusions", response_model=list[ExclusionResponse])
async def list_exclusions(
    service: Annotated[ChangelogAdminService, Depends(get_admin_service)],
    entity: str | None = Query(default=None, description="Only rules for this entity"),
) -> list[ExclusionResponse]:
    rules = await service.list_exclusions(entity)
    return [ExclusionResponse.from_rule(rule) for rule in rules]


@router.post("/admin/exclusions", response_model=ExclusionResponse, status_code=201)
async def add_exclusion(
    request: ExclusionCreateRequest,
    service: Annotated[ChangelogAdminService, Depends(get_admin_service)],
) -> ExclusionResponse:
    """Stop capturing a field. Applies to captures from now on and masks reads of older records."""
    rule = await service.add_exclusion(
        request.entity, request.field, request.reason, actor=request.excluded_by
    )
    return ExclusionResponse.from_rule(rule)


@router.delete("/admin/exclusions/{entity}/{field}", status_code=204)
async def remove_exclusion(
    entity: str,
    field: str,
    service: Annotated[ChangelogAdminService, Depends(get_admin_service)],
) -> None:
    await service.remove_exclusion(entity, field)


# ---------------------------------------------------------------------------
# Admin endpoints - partitions
# ---------------------------------------------------------------------------


@router.get("/admin/partitions", response_model=list[PartitionResponse])
async def list_partitions(
    service: Annotated[ChangelogAdminService, Depends(get_admin_service)],
) -> list[PartitionResponse]:
    partitions = await service.list_partitions()
    return [PartitionResponse.from_partition(partition) for partition in partitions]


@router.post("/admin/partitions", response_model=PartitionResponse, status_code=201)
async def create_partition(
    request: PartitionCreateRequest,
    service: Annotated[ChangelogAdminService, Depends(get_admin_service)],
) -> PartitionResponse:
    """Create the partition of the period containing ``period_start``. Idempotent."""
    partition = await service.create_partition(request.period_start)
    return PartitionResponse.from_partition(partition)


@router.post("/admin/partitions/archive", response_model=RetentionReportResponse)
async def archive_partitions(
    request: ArchivePartitionsRequest,
    service: Annotated[ChangelogAdminService, Depends(get_admin_service)],
) -> RetentionReportResponse:
    """Retire every partition that ended at or before ``older_than``.

    Partitions that keep failing are retained and listed under ``failed``.
    """
    report = await service.archive_partitions(request.older_than)
    return RetentionReportResponse.from_report(report)


# ---------------------------------------------------------------------------
# Admin endpoints - alerts
# ---------------------------------------------------------------------------


@router.get("/admin/alert-rules", response_model=list[AlertRuleResponse])
async def list_alert_rules(
    service: Annotated[ChangelogAdminService, Depends(get_admin_service)],
) -> list[AlertRuleResponse]:
    rules = await service.list_alert_rules()
    return [AlertRuleResponse.from_rule(rule) for rule in rules]


@router.post("/admin/alert-rules", response_model=AlertRuleResponse, status_code=201)
async def register_alert_rule(
    request: AlertRuleCreateRequest,
    service: Annotated[ChangelogAdminService, Depends(get_admin_service)],
) -> AlertRuleResponse:
    rule = await service.register_alert_rule(request.to_rule())
    return AlertRuleResponse.from_rule(rule)


@router.post("/admin/alert-rules/{name}/enable", response_model=AlertRuleResponse)
async def enable_alert_rule(
    name: str,
    service: Annotated[ChangelogAdminService, Depends(get_admin_service)],
) -> AlertRuleResponse:
    return AlertRuleResponse.from_rule(await service.enable_alert_rule(name))


@router.post("/admin/alert-rules/{name}/disable", response_model=AlertRuleResponse)
async def disable_alert_rule(
    name: str,
    service: Annotated[ChangelogAdminService, Depends(get_admin_service)],
) -> AlertRuleResponse:
    return AlertRuleResponse.from_rule(await service.disable_alert_rule(name))


@router.post("/admin/alerts/{event_id}/acknowledge", response_model=AlertEventResponse)
async def acknowledge_alert(
    event_id: str,
    request: AlertAcknowledgeRequest,
    service: Annotated[ChangelogAdminService, Depends(get_admin_service)],
) -> AlertEventResponse:
    event = await service.acknowledge_alert(event_id, request.actor_id)
    return AlertEventResponse.from_event(event)
