import datetime as dt

import pytest
from syncledger.connectors import (
    ConnectorSyncService,
    ErrorRecoveryLedger,
    RecoveryMetrics,
    SyncPatch,
)
from syncledger.core.config import RecoverySettings
from syncledger.core.exceptions import UnsupportedConnectorError
from syncledger.models import ErrorStatus, SyncStatus

CURSOR = dt.datetime(2024, 1, 1, 11, 30, tzinfo=dt.timezone.utc)


class UpstreamDown(RuntimeError):
    pass


def _failing(message="upstream unavailable"):
    def runner(prior_state):
        raise UpstreamDown(message)

    return runner


def _succeeding(cursor_id="conv-100"):
    seen = []

    def runner(prior_state):
        seen.append(prior_state)
        return {"cursor_ts": CURSOR, "cursor_id": cursor_id, "meta": {"fetched": 3}}

    runner.seen = seen
    return runner


@pytest.fixture
def service(session_factory, settings, ledger, store, metrics):
    return ConnectorSyncService(
        session_factory,
        settings=settings,
        ledger=ledger,
        state_store=store,
        metrics=metrics,
    )


def test_successful_run_stores_cursor(service, session_factory, store, tenant_id):
    outcome = service.run_connector_sync("chatwoot", _succeeding(), tenant_id=tenant_id)

    assert outcome.status == "ok"
    assert outcome.mode == "http"
    assert outcome.resolved_errors == 0
    assert outcome.patch.cursor_id == "conv-100"
    with session_factory() as session:
        state = store.get_state(session, "chatwoot", tenant_id=tenant_id)
    assert state.status is SyncStatus.OK
    assert state.cursor_ts == CURSOR
    assert state.cursor_id == "conv-100"
    assert state.meta == {"fetched": 3}


def test_runner_receives_previous_state(service, tenant_id):
    first = _succeeding("a")
    service.run_connector_sync("linear", first, tenant_id=tenant_id)
    assert first.seen == [None]

    second = _succeeding("b")
    service.run_connector_sync("linear", second, tenant_id=tenant_id)
    (prior,) = second.seen
    assert prior.cursor_id == "a"
    assert prior.status is SyncStatus.OK


def test_failed_run_is_recorded_in_state_and_ledger(
    service, session_factory, store, ledger, tenant_id
):
    outcome = service.run_connector_sync("chatwoot", _failing(), tenant_id=tenant_id)

    assert outcome.status == "failed"
    assert outcome.error == "upstream unavailable"
    assert outcome.registered_error.attempt == 1
    assert outcome.registered_error.status is ErrorStatus.PENDING

    with session_factory() as session:
        state = store.get_state(session, "chatwoot", tenant_id=tenant_id)
        (error,) = ledger.list_errors(session, tenant_id=tenant_id)
    assert state.status is SyncStatus.FAILED
    assert state.retry_count == 1
    assert state.last_error == "upstream unavailable"
    assert error.operation == "sync"
    assert error.source_ref == "chatwoot"
    assert error.error_kind == "sync_failed"
    assert error.payload == {"connector": "chatwoot", "mode": "http"}


def test_repeated_failures_escalate_then_success_resolves(
    service, session_factory, store, ledger, tenant_id
):
    for expected in (1, 2, 3):
        outcome = service.run_connector_sync("attio", _failing(), tenant_id=tenant_id)
        assert outcome.registered_error.attempt == expected
    assert outcome.registered_error.status is ErrorStatus.RETRYING

    with session_factory() as session:
        assert store.get_state(session, "attio", tenant_id=tenant_id).retry_count == 3

    outcome = service.run_connector_sync("attio", _succeeding(), tenant_id=tenant_id)
    assert outcome.status == "ok"
    assert outcome.resolved_errors == 1

    with session_factory() as session:
        state = store.get_state(session, "attio", tenant_id=tenant_id)
        (error,) = ledger.list_errors(session, tenant_id=tenant_id)
    assert state.retry_count == 0
    assert state.last_error is None
    assert error.status is ErrorStatus.RESOLVED


def test_runner_may_return_a_patch_or_nothing(service, tenant_id):
    outcome = service.run_connector_sync(
        "linear", lambda prior: SyncPatch(page_cursor="next"), tenant_id=tenant_id
    )
    assert outcome.patch.page_cursor == "next"

    outcome = service.run_connector_sync("linear", lambda prior: None, tenant_id=tenant_id)
    assert outcome.status == "ok"
    assert outcome.patch == SyncPatch()


def test_exception_without_message_uses_class_name(service, tenant_id):
    def runner(prior_state):
        raise UpstreamDown()

    outcome = service.run_connector_sync("chatwoot", runner, tenant_id=tenant_id)
    assert outcome.error == "UpstreamDown"


def test_unsupported_connector_raises(service, tenant_id):
    with pytest.raises(UnsupportedConnectorError) as excinfo:
        service.run_connector_sync("jira", _succeeding(), tenant_id=tenant_id)
    assert excinfo.value.connector == "jira"


def test_connector_mode_override(session_factory, clock, tenant_id):
    settings = RecoverySettings(connector_modes={"linear": "mcp"})
    service = ConnectorSyncService(
        session_factory,
        settings=settings,
        ledger=ErrorRecoveryLedger(settings, clock=clock),
    )
    outcome = service.run_connector_sync("Linear", _failing(), tenant_id=tenant_id)

    assert outcome.connector == "linear"
    assert outcome.mode == "mcp"
    with session_factory() as session:
        (error,) = service.ledger.list_errors(session, tenant_id=tenant_id)
    assert error.mode == "mcp"


def test_run_all_summarises_configured_connectors(service, tenant_id):
    summary = service.run_all(
        {
            "chatwoot": _succeeding(),
            "linear": _failing(),
            "jira": _succeeding(),
        },
        tenant_id=tenant_id,
    )

    assert summary.total == 2
    assert summary.ok == 1
    assert summary.failed == 1
    assert [(r.connector, r.status) for r in summary.results] == [
        ("chatwoot", "ok"),
        ("linear", "failed"),
    ]


def test_sync_runs_are_counted(service, metrics, tenant_id):
    service.run_connector_sync("chatwoot", _failing(), tenant_id=tenant_id)
    service.run_connector_sync("chatwoot", _succeeding(), tenant_id=tenant_id)

    snapshot = metrics.snapshot()
    assert snapshot.sync_ok == 1
    assert snapshot.sync_failed == 1
    assert snapshot.registered == 1
    assert snapshot.resolved_by_sync == 1


def test_private_metrics_are_isolated(session_factory, settings, tenant_id):
    first = ConnectorSyncService(session_factory, settings=settings, metrics=RecoveryMetrics())
    second = ConnectorSyncService(session_factory, settings=settings, metrics=RecoveryMetrics())
    first.run_connector_sync("chatwoot", _failing(), tenant_id=tenant_id)

    assert first.metrics.snapshot().sync_failed == 1
    assert second.metrics.snapshot().sync_failed == 0


@pytest.mark.parametrize("cursor_ts", ["", "   ", "page-7-marker"])
def test_unusable_cursor_timestamp_does_not_fail_the_run(
    service, session_factory, store, ledger, tenant_id, cursor_ts
):
    outcome = service.run_connector_sync(
        "chatwoot", lambda prior: {"cursor_ts": cursor_ts, "cursor_id": "x"}, tenant_id=tenant_id
    )

    assert outcome.status == "ok"
    assert outcome.patch.cursor_ts is None
    with session_factory() as session:
        state = store.get_state(session, "chatwoot", tenant_id=tenant_id)
        assert ledger.list_errors(session, tenant_id=tenant_id) == []
    assert state.status is SyncStatus.OK
    assert state.retry_count == 0
    assert state.cursor_id == "x"


def test_iso_cursor_timestamp_string_is_parsed(service, tenant_id):
    outcome = service.run_connector_sync(
        "linear",
        lambda prior: {"cursor_ts": "2024-01-01T11:30:00Z", "meta": None},
        tenant_id=tenant_id,
    )
    assert outcome.status == "ok"
    assert outcome.patch.cursor_ts == CURSOR
    assert outcome.patch.meta == {}
