import logging

import pytest
from starlette.middleware import Middleware
from starlette.responses import PlainTextResponse

from apps.lumen_pg.app.core.context import bind_attributes
from apps.lumen_pg.app.middleware.context_injection import InjectTransaction, InjectUser
from apps.lumen_pg.app.middleware.request_id import RequestIdMiddleware
from apps.lumen_pg.app.middleware.request_logging import (
    QUERY_LOG_LIMIT,
    LogQueryExecution,
    LogRequest,
    LogSecurityEvents,
    LogTransactionEvents,
)


def _records(caplog, message):
    return [rec for rec in caplog.records if rec.getMessage() == message]


@pytest.fixture(autouse=True)
def _capture(caplog):
    caplog.set_level(logging.INFO)


def test_request_completed_line(build_client, caplog):
    client = build_client(Middleware(RequestIdMiddleware), Middleware(InjectUser), Middleware(LogRequest))
    client.cookies.set("username", "alice")
    client.get("/t", headers={"X-Request-ID": "rid-log", "User-Agent": "pytest"})
    (rec,) = _records(caplog, "request_completed")
    assert rec.method == "GET"
    assert rec.path == "/t"
    assert rec.status == 200
    assert rec.username == "alice"
    assert rec.userAgent == "pytest"
    assert rec.requestId == "rid-log"
    assert rec.durationMs >= 0


def test_request_failed_logged_and_reraised(build_client, caplog):
    async def crash(request):
        raise ValueError("boom")

    client = build_client(Middleware(LogRequest), endpoint=crash)
    with pytest.raises(ValueError):
        client.get("/t")
    (rec,) = _records(caplog, "request_failed")
    assert rec.error == "ValueError"


def test_empty_context_is_fine(build_client, caplog):
    client = build_client(Middleware(LogRequest))
    client.get("/t")
    (rec,) = _records(caplog, "request_completed")
    assert not hasattr(rec, "username")


def test_query_execution_logged_with_type(build_client, caplog):
    async def run_query(request):
        bind_attributes(request, query="SELECT * FROM users")
        return PlainTextResponse("rows")

    client = build_client(Middleware(LogQueryExecution), endpoint=run_query)
    client.post("/t")
    (rec,) = _records(caplog, "query_executed")
    assert rec.query == "SELECT * FROM users"
    assert rec.queryType == "DQL"
    assert rec.levelno == logging.INFO


def test_failed_query_logged_at_warning_and_truncated(build_client, caplog):
    long_query = "UPDATE t SET c = 1 WHERE " + "x = 1 AND " * 100

    async def run_query(request):
        bind_attributes(request, query=long_query)
        return PlainTextResponse("error", status_code=409)

    client = build_client(Middleware(LogQueryExecution), endpoint=run_query)
    client.post("/t")
    (rec,) = _records(caplog, "query_executed")
    assert rec.levelno == logging.WARNING
    assert rec.queryType == "DML"
    assert len(rec.query) == QUERY_LOG_LIMIT


def test_no_query_no_log(build_client, caplog):
    client = build_client(Middleware(LogQueryExecution))
    client.get("/t")
    assert not _records(caplog, "query_executed")


def test_security_event_from_status(build_client, caplog):
    async def denied(request):
        return PlainTextResponse("no", status_code=403)

    client = build_client(Middleware(LogSecurityEvents), endpoint=denied)
    client.get("/t")
    (rec,) = _records(caplog, "security_event")
    assert rec.event == "access_denied"
    assert rec.severity == "high"
    assert rec.levelno == logging.ERROR


def test_security_event_from_context(build_client, caplog):
    async def flagged(request):
        bind_attributes(request, event="suspicious_query", severity="critical", resource="public.users")
        return PlainTextResponse("ok")

    client = build_client(Middleware(LogSecurityEvents), endpoint=flagged)
    client.get("/t")
    (rec,) = _records(caplog, "security_event")
    assert rec.event == "suspicious_query"
    assert rec.resource == "public.users"


def test_ordinary_success_is_not_a_security_event(build_client, caplog):
    client = build_client(Middleware(LogSecurityEvents))
    client.get("/t")
    assert not _records(caplog, "security_event")


def test_transaction_event_with_cookie(build_client, caplog):
    async def commit(request):
        bind_attributes(request, event="commit", changes_count=3)
        return PlainTextResponse("ok")

    client = build_client(Middleware(InjectTransaction), Middleware(LogTransactionEvents), endpoint=commit)
    client.cookies.set("transaction_id", "tx-7")
    client.post("/t")
    (rec,) = _records(caplog, "transaction_event")
    assert rec.event == "commit"
    assert rec.transactionId == "tx-7"
    assert rec.transactionActive is True
    assert rec.changesCount == 3


def test_no_transaction_no_event(build_client, caplog):
    client = build_client(Middleware(LogTransactionEvents))
    client.get("/t")
    assert not _records(caplog, "transaction_event")
