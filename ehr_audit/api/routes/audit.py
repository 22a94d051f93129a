"""
Audit Trail API Endpoints.

Append to, verify, summarize, query and archive hash-chained channels.
File work runs in the threadpool so the event loop never waits on fsync.
"""

import logging
from typing import Annotated, Any, Optional, Union

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from ehr_audit.chain.models import (
    AppendResult,
    ArchiveResult,
    ChannelStatistics,
    LogLevel,
    LogRecord,
    Outcome,
    RecordQuery,
    Subject,
    VerificationResult,
    validate_channel,
)
from ehr_audit.chain.trail import AuditTrail
from ehr_audit.context import get_request_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/audit", tags=["Audit"])


def get_audit_trail(request: Request) -> AuditTrail:
    """FastAPI dependency that provides the application's AuditTrail."""
    return request.app.state.audit_trail


class AppendRequest(BaseModel):
    """Record to append; actor and request metadata come from the request context."""

    operation: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Symbolic action name",
        examples=["PHI_ACCESS"],
    )
    level: str = Field(
        default=LogLevel.INFO.value,
        max_length=16,
        description="Severity/category tag",
    )
    subject: Optional[Subject] = Field(
        default=None,
        description="Entity acted upon",
        examples=[{"type": "Patient", "id": "550e8400-e29b-41d4-a716-446655440000"}],
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Supplementary fields, redacted before storage",
    )
    result: Outcome = Field(default_factory=Outcome)
    duration_ms: Optional[int] = Field(default=None, ge=0)


class ChannelsResponse(BaseModel):
    """Channels that have a log file."""
    channels: list[str]


class RecordsResponse(BaseModel):
    """Records read back from a channel."""
    channel: str
    count: int
    records: list[LogRecord]


class ErrorResponse(BaseModel):
    """Error response."""

    error: str
    detail: Optional[str] = None


@router.get(
    "/channels",
    response_model=ChannelsResponse,
    summary="List channels",
)
async def list_channels(trail: AuditTrail = Depends(get_audit_trail)) -> ChannelsResponse:
    channels = await run_in_threadpool(trail.channels)
    return ChannelsResponse(channels=channels)


@router.post(
    "/channels/{channel}/records",
    response_model=AppendResult,
    status_code=status.HTTP_201_CREATED,
    summary="Append a record",
    description="Appends a redacted, hash-chained record. Returns 503 with the result when it was not written.",
    responses={
        201: {"description": "Record written"},
        400: {"model": ErrorResponse, "description": "Invalid channel name"},
        503: {"model": AppendResult, "description": "Record could not be written"},
    },
)
async def append_record(
    channel: str,
    body: AppendRequest,
    trail: AuditTrail = Depends(get_audit_trail),
) -> Union[AppendResult, JSONResponse]:
    validate_channel(channel)

    context = get_request_context()
    result = await run_in_threadpool(
        trail.append,
        channel,
        operation=body.operation,
        level=body.level,
        actor=context.actor if context else None,
        subject=body.subject,
        details=body.details,
        result=body.result,
        request_id=context.request_id if context else None,
        ip_address=context.ip_address if context else None,
        user_agent=context.user_agent if context else None,
        duration_ms=body.duration_ms,
    )

    if not result.written:
        logger.error(f"Append to channel={channel} failed: {result.error}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=result.model_dump(mode="json"),
        )

    return result


@router.get(
    "/channels/{channel}/verify",
    response_model=VerificationResult,
    summary="Verify a channel's hash chain",
    responses={400: {"model": ErrorResponse, "description": "Invalid channel name"}},
)
async def verify_channel(channel: str, trail: AuditTrail = Depends(get_audit_trail)) -> VerificationResult:
    return await run_in_threadpool(trail.verify, channel)


@router.get(
    "/channels/{channel}/statistics",
    response_model=ChannelStatistics,
    summary="Channel statistics",
    responses={400: {"model": ErrorResponse, "description": "Invalid channel name"}},
)
async def channel_statistics(channel: str, trail: AuditTrail = Depends(get_audit_trail)) -> ChannelStatistics:
    return await run_in_threadpool(trail.statistics, channel)


@router.get(
    "/channels/{channel}/records",
    response_model=RecordsResponse,
    summary="Query records",
    description="Filter records by operation, level, actor, subject, status and time range.",
    responses={400: {"model": ErrorResponse, "description": "Invalid channel name"}},
)
async def query_records(
    channel: str,
    query: Annotated[RecordQuery, Query()],
    trail: AuditTrail = Depends(get_audit_trail),
) -> RecordsResponse:
    records = await run_in_threadpool(trail.query, channel, query)
    return RecordsResponse(channel=channel, count=len(records), records=records)


@router.post(
    "/channels/{channel}/archive",
    response_model=ArchiveResult,
    summary="Archive a channel",
    description="Moves the channel log aside with a manifest and starts a new chain.",
    responses={400: {"model": ErrorResponse, "description": "Invalid channel name"}},
)
async def archive_channel(channel: str, trail: AuditTrail = Depends(get_audit_trail)) -> ArchiveResult:
    result = await run_in_threadpool(trail.archive, channel)
    if result.archived:
        logger.info(f"Channel {channel} archived via API ({result.entries} entries)")
    return result
