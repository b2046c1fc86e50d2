import json
import threading
from datetime import date

import pytest
import requests
from facebook_business.exceptions import FacebookRequestError

from adscale.infrastructure.error_handling import (
    ExternalServiceError,
    OperationCancelled,
    RetryConfig,
    TokenExpired,
)
from adscale.integrations.meta_client import (
    AsyncReportClient,
    ClientConfig,
    MetaMetadataClient,
    parse_csv_export,
)
from adscale.models import DateRange, ReportState

from conftest import FakeResponse, FakeSession

RANGE = DateRange(since=date(2024, 6, 1), until=date(2024, 6, 14))
CSV = b"account_id,campaign_id,adset_id,date_start,spend\n111,c1,s1,2024-06-14,10.5\n111,c1,s2,2024-06-14,\n"


def _cfg(**kw):
    kw.setdefault("poll_interval", 0)
    kw.setdefault("poll_max_attempts", 3)
    kw.setdefault("retry", RetryConfig(max_retries=2, initial_delay=0, jitter=False))
    return ClientConfig(**kw)


def _client(responses, **kw):
    session = FakeSession(responses)
    return AsyncReportClient(_cfg(**kw), session=session, sleep=lambda s: None), session


def _status(s, pct=0):
    return FakeResponse(body={"id": "r1", "async_status": s, "async_percent_completion": pct})


# ------------- create_report -------------
def test_create_report_posts_daily_active_job():
    client, session = _client([FakeResponse(body={"report_run_id": "r1"})])
    assert client.create_report("tok", "111", RANGE) == "r1"

    method, url, kwargs = session.calls[0]
    assert method == "POST"
    assert url.endswith("/v23.0/act_111/insights")
    data = kwargs["data"]
    assert data["time_increment"] == 1
    assert json.loads(data["time_range"]) == {"since": "2024-06-01", "until": "2024-06-14"}
    assert "ACTIVE" in data["filtering"]


def test_create_report_without_handle_fails():
    client, _ = _client([FakeResponse(body={"ok": True})])
    with pytest.raises(ExternalServiceError):
        client.create_report("tok", "act_111", RANGE)


def test_create_report_rejected_is_not_retried():
    client, session = _client([FakeResponse(400, body={"error": {"code": 100, "message": "Invalid field"}})])
    with pytest.raises(ExternalServiceError) as exc:
        client.create_report("tok", "act_111", RANGE)
    assert exc.value.api_error_code == 100
    assert len(session.calls) == 1


def test_create_report_retries_transient_errors():
    client, session = _client([
        FakeResponse(500),
        FakeResponse(400, body={"error": {"code": 17, "message": "User request limit reached"}}),
        FakeResponse(body={"report_run_id": "r9"}),
    ])
    assert client.create_report("tok", "act_111", RANGE) == "r9"
    assert len(session.calls) == 3


def test_expired_token_surfaces_as_token_expired():
    client, _ = _client([FakeResponse(400, body={"error": {"code": 190, "message": "Session has expired"}})])
    with pytest.raises(TokenExpired):
        client.create_report("tok", "act_111", RANGE)


# ------------- poll_until_done -------------
def test_poll_until_completed():
    client, session = _client([_status("Job Not Started"), _status("Job Running", 40), _status("Job Completed", 100)])
    status = client.poll_until_done("tok", "r1")
    assert status.completed
    assert status.attempts == 3
    assert status.percent_complete == 100
    assert session.calls[0][1].endswith("/v23.0/r1")


def test_poll_job_failed():
    client, _ = _client([_status("Job Running"), _status("Job Failed")])
    status = client.poll_until_done("tok", "r1")
    assert status.state is ReportState.FAILED
    assert not status.synthetic


def test_poll_job_skipped_is_failed():
    client, _ = _client([_status("Job Skipped")])
    assert client.poll_until_done("tok", "r1").state is ReportState.FAILED


def test_poll_exhaustion_returns_synthetic_failure():
    client, _ = _client([_status("Job Running")] * 3)
    status = client.poll_until_done("tok", "r1")
    assert status.state is ReportState.FAILED
    assert status.synthetic
    assert status.attempts == 3
    assert status.async_status == "Job Failed"


def test_poll_transient_errors_consume_attempts():
    client, _ = _client([requests.ConnectionError("reset"), FakeResponse(503), _status("Job Completed")])
    status = client.poll_until_done("tok", "r1")
    assert status.completed
    assert status.attempts == 3


def test_poll_only_transient_errors_exhausts():
    client, _ = _client([FakeResponse(502)] * 3)
    status = client.poll_until_done("tok", "r1")
    assert status.synthetic
    assert "502" in status.error


def test_poll_honours_cancellation():
    cancel = threading.Event()
    cancel.set()
    client, session = _client([_status("Job Running")])
    with pytest.raises(OperationCancelled):
        client.poll_until_done("tok", "r1", cancel=cancel)
    assert session.calls == []


def test_poll_honours_deadline():
    client, _ = _client([_status("Job Running")])
    with pytest.raises(OperationCancelled):
        client.poll_until_done("tok", "r1", deadline=0.0)


# ------------- fetch_export -------------
def test_fetch_export_parses_csv():
    client, session = _client([FakeResponse(content=CSV, headers={"Content-Type": "text/csv"})])
    export = client.fetch_export("tok", "r1")
    assert export.record_count == 2
    assert export.rows[0]["spend"] == "10.5"
    # empty cells stay empty strings, never NaN
    assert export.rows[1]["spend"] == ""
    assert session.calls[0][2]["stream"] is True
    assert session.calls[0][2]["params"]["report_run_id"] == "r1"


def test_fetch_export_rejects_html():
    client, _ = _client([FakeResponse(content=b"<html>login</html>", headers={"Content-Type": "text/html"})])
    with pytest.raises(ExternalServiceError):
        client.fetch_export("tok", "r1")


def test_fetch_export_network_error_not_retried():
    client, session = _client([requests.ConnectionError("boom"), FakeResponse(content=CSV)])
    with pytest.raises(ExternalServiceError):
        client.fetch_export("tok", "r1")
    assert len(session.calls) == 1


def test_fetch_export_cancelled_between_chunks():
    cancel = threading.Event()

    def chunks():
        yield CSV[:20]
        cancel.set()
        yield CSV[20:]

    client, _ = _client([FakeResponse(chunks=chunks(), headers={"Content-Type": "text/csv"})])
    with pytest.raises(OperationCancelled):
        client.fetch_export("tok", "r1", cancel=cancel)


def test_parse_empty_export():
    assert parse_csv_export(b"") == []
    assert parse_csv_export(b"account_id,adset_id\n") == []


# ------------- metadata client -------------
def _sdk_failure(code):
    return FacebookRequestError(
        "Call was not successful",
        {"method": "GET", "path": "/act_111/adsets", "params": {}},
        400,
        {},
        json.dumps({"error": {"code": code, "message": f"error {code}"}}),
    )


def test_metadata_call_maps_token_error():
    client = MetaMetadataClient(_cfg(), api_factory=lambda token: None, sleep=lambda s: None)

    def fail():
        raise _sdk_failure(190)

    with pytest.raises(TokenExpired):
        client._call("adsets.list", fail)


def test_metadata_call_retries_rate_limit():
    client = MetaMetadataClient(_cfg(), api_factory=lambda token: None, sleep=lambda s: None)
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise _sdk_failure(17)
        return [{"id": "s1"}]

    assert client._call("adsets.list", flaky) == [{"id": "s1"}]
    assert len(attempts) == 2
