"""
App factory, middleware and logging tests.
"""

import json
import logging

from flask import g

from procflow.middleware.logging_config import JSONFormatter, ReadableFormatter, RequestContextFilter


def test_health(client):
    res = client.get("/api/v1/health")
    assert res.status_code == 200
    assert res.get_json()["status"] == "ok"


def test_request_id_round_trip(client):
    res = client.get("/api/v1/health", headers={"X-Request-ID": "req-123"})
    assert res.headers["X-Request-ID"] == "req-123"
    assert float(res.headers["X-Request-Duration-Ms"]) >= 0


def test_unknown_route_is_json_404(client):
    res = client.get("/api/v1/nope")
    assert res.status_code == 404
    assert res.get_json()["code"] == "ERR_NOT_FOUND"


def test_all_blueprints_registered(app):
    assert {"catalog", "instance", "archive"} <= set(app.blueprints)


def test_json_formatter_carries_workflow_context():
    record = logging.LogRecord("procflow.test", logging.INFO, __file__, 1, "moved %s", ("step",), None)
    record.process_instance_id = 7
    record.event_type = "step.transitioned"
    entry = json.loads(JSONFormatter().format(record))
    assert entry["message"] == "moved step"
    assert entry["process_instance_id"] == 7
    assert entry["event_type"] == "step.transitioned"
    assert "step_instance_id" not in entry


def test_request_context_filter_stamps_request(app):
    record = logging.LogRecord("procflow.test", logging.INFO, __file__, 1, "closed", (), None)
    with app.test_request_context("/api/v1/health", headers={"X-User-Id": "3"}):
        g.request_id = "abc123"
        assert RequestContextFilter().filter(record) is True
    entry = json.loads(JSONFormatter().format(record))
    assert entry["request_id"] == "abc123"
    assert entry["user_id"] == "3"


def test_filter_outside_request_leaves_record_alone():
    record = logging.LogRecord("procflow.test", logging.INFO, __file__, 1, "batch", (), None)
    RequestContextFilter().filter(record)
    assert getattr(record, "request_id", None) is None


def test_readable_formatter_tags_instance():
    record = logging.LogRecord("procflow.test", logging.INFO, __file__, 1, "skipped", (), None)
    record.process_instance_id = 4
    record.step_instance_id = 9
    assert ReadableFormatter().format(record).endswith("procflow.test: skipped [pi=4 step=9]")
