import json
import logging
import uuid

import pytest
from starlette.testclient import TestClient
from syncledger.connectors import RecoveryMetrics
from syncledger.main import create_app


@pytest.fixture
def client(monkeypatch, tmp_path, session_factory, settings, clean_loggers):
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    app = create_app(session_factory=session_factory, settings=settings, metrics=RecoveryMetrics())
    return TestClient(app)


def _access_lines(caplog):
    return [r for r in caplog.records if r.name == "uvicorn.access"]


def test_unknown_error_resolution_is_logged_as_warning(client, caplog):
    tenant = str(uuid.uuid4())
    with caplog.at_level(logging.INFO, logger="uvicorn.access"):
        resp = client.post(
            "/api/connectors/errors/987654/resolve",
            headers={
                "X-Request-Id": "abc",
                "X-Tenant-Id": tenant,
                "Authorization": "Bearer secret",
            },
        )

    assert resp.status_code == 404
    assert resp.headers["X-Request-Id"] == "abc"
    (record,) = _access_lines(caplog)
    assert record.levelno == logging.WARNING
    data = json.loads(record.getMessage())
    assert data["request_id"] == "abc"
    assert data["route"] == "/api/connectors/errors/{error_id}/resolve"
    assert data["error_id"] == "987654"
    assert data["tenant_id"] == tenant
    assert data["headers"]["authorization"] == "***"


def test_state_listing_is_logged_at_info_with_generated_request_id(client, caplog):
    with caplog.at_level(logging.INFO, logger="uvicorn.access"):
        resp = client.get("/api/connectors/state", headers={"X-Tenant-Id": str(uuid.uuid4())})

    assert resp.status_code == 200
    (record,) = _access_lines(caplog)
    assert record.levelno == logging.INFO
    data = json.loads(record.getMessage())
    assert data["request_id"] == resp.headers["X-Request-Id"]
    assert len(data["request_id"]) == 32
    assert data["route"] == "/api/connectors/state"
    assert data["error_id"] is None


def test_health_and_metrics_are_not_logged(client, caplog):
    with caplog.at_level(logging.INFO, logger="uvicorn.access"):
        client.get("/api/health")
        client.get("/api/metrics")

    assert _access_lines(caplog) == []
