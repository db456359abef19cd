import json
import logging
import re

from fastapi.testclient import TestClient

from proposal_lifecycle.api.main import app
from proposal_lifecycle.api.observability import JsonFormatter, correlation_id_var


def test_observability_headers_preserve_inbound_correlation_and_trace_id():
    with TestClient(app) as client:
        response = client.get(
            "/health",
            headers={
                "X-Correlation-Id": "corr-inbound-123",
                "X-Request-Id": "req-inbound-123",
                "traceparent": "00-1234567890abcdef1234567890abcdef-0000000000000001-01",
            },
        )

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Correlation-Id"] == "corr-inbound-123"
    assert response.headers["X-Request-Id"] == "req-inbound-123"
    assert response.headers["X-Trace-Id"] == "1234567890abcdef1234567890abcdef"


def test_observability_headers_generate_ids_when_missing():
    with TestClient(app) as client:
        response = client.get("/health")

    assert re.fullmatch(r"corr_[0-9a-f]{12}", response.headers["X-Correlation-Id"])
    assert re.fullmatch(r"req_[0-9a-f]{12}", response.headers["X-Request-Id"])
    assert re.fullmatch(r"[0-9a-f]{32}", response.headers["X-Trace-Id"])
    assert re.fullmatch(r"00-[0-9a-f]{32}-0000000000000001-01", response.headers["traceparent"])


def test_metrics_endpoint_is_exposed():
    with TestClient(app) as client:
        client.get("/health")
        response = client.get("/metrics")

    assert response.status_code == 200
    assert "http_request" in response.text


def test_json_formatter_merges_extra_fields_and_context():
    token = correlation_id_var.set("corr-log-1")
    try:
        record = logging.LogRecord(
            name="proposal_lifecycle.core.proposals.service",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="proposal.transition.applied",
            args=(),
            exc_info=None,
        )
        record.extra_fields = {"proposal_id": 7, "transition": "approved"}
        payload = json.loads(JsonFormatter().format(record))
    finally:
        correlation_id_var.reset(token)

    assert payload["message"] == "proposal.transition.applied"
    assert payload["correlation_id"] == "corr-log-1"
    assert payload["proposal_id"] == 7
    assert payload["transition"] == "approved"
    assert "request_id" not in payload
