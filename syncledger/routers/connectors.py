"""Operator API over connector sync state and the recovery ledger.

The router is a thin shell: each endpoint opens a session from
``app.state.session_factory`` and delegates to the state store or the ledger
stored on ``app.state``. Dead-letter entries are the only ones that need an
operator; pending and retrying entries are listed for visibility.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import uuid
from collections.abc import Iterator
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..connectors import (
    ConnectorErrorView,
    ConnectorSyncStateView,
    ErrorRecoveryLedger,
    RecoveryMetrics,
    SyncStateStore,
)

router = APIRouter(prefix="/api/connectors", tags=["connectors"])

logger = logging.getLogger(__name__)


def get_db_session(request: Request) -> Iterator[Session]:
    """Yield a session whose transaction commits when the request succeeds."""

    factory = getattr(request.app.state, "session_factory", None)
    if factory is None:
        raise HTTPException(status_code=500, detail="Database is not configured")
    with factory.begin() as session:
        yield session


def resolve_tenant_id(request: Request) -> uuid.UUID:
    tenant = getattr(request.state, "tenant_id", None)
    if not tenant:
        tenant = request.headers.get("X-Tenant-Id")
    if not tenant:
        tenant = os.getenv("TENANT_ID")
    if not tenant:
        raise HTTPException(status_code=400, detail="Tenant identifier is required")
    if isinstance(tenant, uuid.UUID):
        return tenant
    try:
        return uuid.UUID(str(tenant))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid tenant identifier") from exc


def get_ledger(request: Request) -> ErrorRecoveryLedger:
    return request.app.state.ledger


def get_state_store(request: Request) -> SyncStateStore:
    return request.app.state.state_store


SessionDep = Annotated[Session, Depends(get_db_session)]
TenantDep = Annotated[uuid.UUID, Depends(resolve_tenant_id)]
LedgerDep = Annotated[ErrorRecoveryLedger, Depends(get_ledger)]
StateStoreDep = Annotated[SyncStateStore, Depends(get_state_store)]


class SyncStateList(BaseModel):
    connectors: list[ConnectorSyncStateView]


class ErrorList(BaseModel):
    errors: list[ConnectorErrorView]


class ErrorEnvelope(BaseModel):
    error: ConnectorErrorView


class ResolvedError(BaseModel):
    id: int


class MetricsPayload(BaseModel):
    registered: int
    retrying: int
    dead_lettered: int
    resolved_by_sync: int
    resolved_manually: int
    dead_letter_retries: int
    sync_ok: int
    sync_failed: int


@router.get("/state", response_model=SyncStateList)
def list_sync_state(
    session: SessionDep, tenant_id: TenantDep, store: StateStoreDep
) -> SyncStateList:
    """Return the sync state of every connector of the tenant."""

    return SyncStateList(connectors=store.list_states(session, tenant_id=tenant_id))


@router.get("/errors", response_model=ErrorList)
def list_errors(
    session: SessionDep,
    tenant_id: TenantDep,
    ledger: LedgerDep,
    status: Annotated[str | None, Query(max_length=32)] = None,
    limit: Annotated[int, Query()] = 100,
) -> ErrorList:
    return ErrorList(
        errors=ledger.list_errors(session, status, limit, tenant_id=tenant_id)
    )


@router.get("/errors/due", response_model=ErrorList)
def list_due_errors(
    session: SessionDep,
    tenant_id: TenantDep,
    ledger: LedgerDep,
    limit: Annotated[int, Query()] = 20,
) -> ErrorList:
    """Errors whose retry time has come, in processing order."""

    return ErrorList(errors=ledger.list_due(session, limit, tenant_id=tenant_id))


@router.get("/errors/dead-letter", response_model=ErrorList)
def list_dead_letter_errors(
    session: SessionDep,
    tenant_id: TenantDep,
    ledger: LedgerDep,
    limit: Annotated[int, Query()] = 50,
) -> ErrorList:
    return ErrorList(errors=ledger.list_dead_letter(session, limit, tenant_id=tenant_id))


@router.post("/errors/dead-letter/{error_id}/retry", response_model=ErrorEnvelope)
def retry_dead_letter_error(
    error_id: int, session: SessionDep, tenant_id: TenantDep, ledger: LedgerDep
) -> ErrorEnvelope:
    """Reset a dead-lettered error to pending with a fresh retry budget."""

    record = ledger.retry_dead_letter(session, error_id, tenant_id=tenant_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Dead letter error not found")
    logger.info("Dead letter error %s queued for retry", error_id)
    return ErrorEnvelope(error=record)


@router.post("/errors/{error_id}/resolve", response_model=ResolvedError)
def resolve_error(
    error_id: int, session: SessionDep, tenant_id: TenantDep, ledger: LedgerDep
) -> ResolvedError:
    resolved = ledger.resolve_by_id(session, error_id, tenant_id=tenant_id)
    if resolved is None:
        raise HTTPException(status_code=404, detail="Connector error not found")
    return ResolvedError(id=resolved)


@router.get("/metrics", response_model=MetricsPayload)
def recovery_metrics(request: Request) -> MetricsPayload:
    metrics: RecoveryMetrics = request.app.state.recovery_metrics
    snapshot = metrics.snapshot()
    return MetricsPayload(**dataclasses.asdict(snapshot))
