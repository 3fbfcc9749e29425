"""
test_logging.py — Log context, formatters and the request middleware.

Covers:
    • Phone masking
    • Alert context inherited by the background dispatch task
    • JSON / pretty formatters
    • Correlation ids, verified user id in context, per-route levels

Run with:
    pytest tests/test_logging.py -v
"""

from __future__ import annotations

import asyncio
import contextvars
import json
import logging

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from backend.app.alerts.ingestion import AlertService
from backend.app.alerts.store import InMemoryStore
from backend.app.core.background import TaskSupervisor
from backend.app.core.logging_config import (
    JSONFormatter,
    PrettyFormatter,
    bind_context,
    get_request_context,
    mask_phone,
    set_request_context,
)
from backend.app.core.middleware import RequestLoggingMiddleware

LOCATION = {"latitude": 12.9716, "longitude": 77.5946}


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

class ContextRecordingOrchestrator:
    def __init__(self):
        self.contexts = []

    async def dispatch(self, alert):
        self.contexts.append(dict(get_request_context()))


def _in_fresh_context(fn):
    return contextvars.copy_context().run(fn)


def _record(**extra) -> logging.LogRecord:
    return logging.makeLogRecord({
        "name": "backend.app.alerts.dispatcher",
        "levelname": "INFO",
        "levelno": logging.INFO,
        "msg": "Alert %s dispatched",
        "args": ("ALR-1",),
        **extra,
    })


def _app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestLoggingMiddleware)

    @app.middleware("http")
    async def verified_identity(request: Request, call_next):
        if request.headers.get("Authorization") == "Bearer good":
            request.state.user_id = "verified-user"
        return await call_next(request)

    @app.get("/context")
    async def context():
        return get_request_context()

    @app.post("/api/v1/alerts/sms-status")
    async def sms_status():
        return "OK"

    @app.get("/api/v1/alerts")
    async def alerts():
        return []

    return app


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Context
# ═══════════════════════════════════════════════════════════════════════════

class TestMaskPhone:
    def test_keeps_prefix_and_tail(self):
        assert mask_phone("+15550100123") == "+155*****123"

    def test_short_and_missing(self):
        assert mask_phone("12345") == "*****"
        assert mask_phone(None) == "-"


class TestContext:
    def test_bind_merges_without_touching_parent(self):
        def scenario():
            set_request_context(request_id="req-1")
            bind_context(alert_id="ALR-1", user_id=None)
            return get_request_context()

        assert _in_fresh_context(scenario) == {"request_id": "req-1", "alert_id": "ALR-1"}
        assert "alert_id" not in get_request_context()

    def test_dispatch_task_inherits_alert_id(self):
        orchestrator = ContextRecordingOrchestrator()
        supervisor = TaskSupervisor()
        service = AlertService(InMemoryStore(), orchestrator, supervisor)

        async def scenario():
            set_request_context(request_id="req-42", user_id="U1")
            alert = await service.create_alert("U1", LOCATION, "help")
            await supervisor.drain()
            return alert

        alert = asyncio.run(scenario())
        assert orchestrator.contexts == [
            {"request_id": "req-42", "user_id": "U1", "alert_id": alert.id},
        ]


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Formatters
# ═══════════════════════════════════════════════════════════════════════════

class TestFormatters:
    def test_json_flattens_context_and_extras(self):
        def scenario():
            set_request_context(request_id="req-7", alert_id="ALR-1")
            return JSONFormatter().format(_record(channel="push", unrelated="x"))

        entry = json.loads(_in_fresh_context(scenario))
        assert entry["message"] == "Alert ALR-1 dispatched"
        assert entry["request_id"] == "req-7"
        assert entry["alert_id"] == "ALR-1"
        assert entry["channel"] == "push"
        assert "unrelated" not in entry

    def test_pretty_tag(self):
        def scenario():
            set_request_context(request_id="0123456789abcdef", alert_id="ALR-1")
            return PrettyFormatter(color=False).format(_record())

        line = _in_fresh_context(scenario)
        assert "[01234567 ALR-1]" in line
        assert "\033[" not in line

    def test_pretty_without_context(self):
        assert PrettyFormatter.context_tag({}) == ""


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Request middleware
# ═══════════════════════════════════════════════════════════════════════════

class TestRequestLoggingMiddleware:
    def test_caller_request_id_is_kept(self):
        with TestClient(_app()) as client:
            resp = client.get("/context", headers={"X-Request-ID": "abc-123"})
        assert resp.headers["X-Request-ID"] == "abc-123"
        assert resp.json()["request_id"] == "abc-123"
        assert resp.headers["X-Process-Time"].endswith("ms")

    def test_unsafe_request_id_is_replaced(self):
        with TestClient(_app()) as client:
            resp = client.get("/context", headers={"X-Request-ID": "a b;c"})
        assert resp.headers["X-Request-ID"] != "a b;c"
        assert len(resp.headers["X-Request-ID"]) == 16

    def test_verified_user_in_context(self):
        with TestClient(_app()) as client:
            ctx = client.get("/context", headers={"Authorization": "Bearer good"}).json()
            anonymous = client.get("/context").json()
        assert ctx["user_id"] == "verified-user"
        assert "user_id" not in anonymous

    def test_status_callback_logged_at_debug(self, caplog):
        caplog.set_level(logging.DEBUG, logger="backend.app.core.middleware")
        with TestClient(_app()) as client:
            client.post("/api/v1/alerts/sms-status")
            client.get("/api/v1/alerts")

        levels = {
            r.endpoint: r.levelno for r in caplog.records
            if r.name == "backend.app.core.middleware"
        }
        assert levels["/api/v1/alerts/sms-status"] == logging.DEBUG
        assert levels["/api/v1/alerts"] == logging.INFO
