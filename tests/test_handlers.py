"""
test_handlers.py
----------------
FhirMan — FHIR Patient CLI — Test Suite for handlers.py
-------------------------------------------------------
Handlers run against a real FHIRClient over ``httpx.MockTransport``; the
log-file writer is replaced by a list so appended lines can be inspected.

Tests cover:
    - search_patients: count line + ids in server order, failure message,
      null or malformed Bundle entries, never raises
    - upload_patient: sent / received XML logged, exactly one log-file line
      with the resource location, format failure is silent on the console,
      transport failure returns a failed result
    - run_everything: total printed, Type/id logged per resource, failures
      logged without console output, null or malformed Bundle entries

Run:
    pytest tests/test_handlers.py -v --tb=short

Project: FhirMan — FHIR Patient CLI
"""

import logging
import os
import sys
from unittest.mock import patch

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import LOGGER_NAME, Settings
from fhir_client import FHIRAPIError, FHIRClient, FHIRFormatError, to_xml
from handlers import ClientContext, run_everything, search_patients, upload_patient

BASE = "https://fhir.test/baseDstu3"


# ── Helpers ────────────────────────────────────────────────────────────────────

def _context(handler, tmp_path):
    """Build a ClientContext over a mock transport; returns (ctx, log_lines)."""
    settings = Settings(base_url=BASE, log_file_path=str(tmp_path / "log.txt"))
    client = FHIRClient.from_settings(settings, transport=httpx.MockTransport(handler))
    client.connect()
    lines = []

    def write_log(text):
        lines.append(text)
        return True

    ctx = ClientContext(
        settings=settings,
        client=client,
        logger=logging.getLogger(LOGGER_NAME),
        write_log=write_log,
    )
    return ctx, lines


def _bundle(*resources, total=None):
    bundle = {
        "resourceType": "Bundle",
        "type": "searchset",
        "entry": [
            {"fullUrl": f"{BASE}/{r['resourceType']}/{r['id']}", "resource": r}
            for r in resources
        ],
    }
    if total is not None:
        bundle["total"] = total
    return bundle


def _unexpected(request):
    raise AssertionError(f"unexpected request: {request.method} {request.url}")


# ── search_patients ────────────────────────────────────────────────────────────

def test_search_prints_count_then_ids_in_server_order(tmp_path, capsys):
    """Two matches 123 and 456 → count line, then exactly '123' and '456'."""
    def handler(request):
        assert request.url.params["name"] == "Fhirman"
        return httpx.Response(
            200,
            json=_bundle(
                {"resourceType": "Patient", "id": "123"},
                {"resourceType": "Patient", "id": "456"},
                total=2,
            ),
        )

    ctx, _ = _context(handler, tmp_path)
    result = search_patients(ctx)

    lines = capsys.readouterr().out.splitlines()
    assert lines == ["Found 2 patients. Their logical IDs are:", "123", "456"]
    assert result.success is True
    assert result.data.ids == ["123", "456"]


def test_search_no_matches(tmp_path, capsys):
    ctx, _ = _context(lambda request: httpx.Response(200, json=_bundle()), tmp_path)
    result = search_patients(ctx, name="Nobody")
    assert capsys.readouterr().out.splitlines() == ["Found 0 patients. Their logical IDs are:"]
    assert result.success is True


def test_search_failure_prints_generic_message_and_does_not_raise(tmp_path, capsys, caplog):
    ctx, _ = _context(lambda request: httpx.Response(500, text="server down"), tmp_path)
    with caplog.at_level(logging.ERROR):
        result = search_patients(ctx)

    assert capsys.readouterr().out.splitlines() == ["An error occurred trying to search:"]
    assert result.success is False
    assert "500" in result.error
    assert any(r.exc_info for r in caplog.records if r.levelno == logging.ERROR)


def test_search_transport_failure(tmp_path, capsys):
    def handler(request):
        raise httpx.ConnectError("no route to host", request=request)

    ctx, _ = _context(handler, tmp_path)
    result = search_patients(ctx)
    assert result.success is False
    assert "An error occurred trying to search:" in capsys.readouterr().out


def test_search_null_entry_list_reads_as_no_matches(tmp_path, capsys):
    ctx, _ = _context(
        lambda request: httpx.Response(200, json={"resourceType": "Bundle", "entry": None}),
        tmp_path,
    )
    result = search_patients(ctx)
    assert result.success is True
    assert capsys.readouterr().out.splitlines() == ["Found 0 patients. Their logical IDs are:"]


@pytest.mark.parametrize(
    "bundle",
    [
        {"resourceType": "Bundle", "entry": [None]},
        {"resourceType": "Bundle", "entry": [{"fullUrl": f"{BASE}/Patient/1", "resource": None}]},
        {"resourceType": "Bundle", "entry": {"resource": {"resourceType": "Patient"}}},
    ],
    ids=["null-entry", "null-resource", "entry-not-a-list"],
)
def test_search_malformed_bundle_is_a_failed_result(tmp_path, capsys, bundle):
    ctx, _ = _context(lambda request: httpx.Response(200, json=bundle), tmp_path)
    result = search_patients(ctx)
    assert result.success is False
    assert capsys.readouterr().out.splitlines() == ["An error occurred trying to search:"]


def test_search_unexpected_error_is_a_failed_result(tmp_path, capsys):
    ctx, _ = _context(_unexpected, tmp_path)
    with patch.object(ctx.client, "search", side_effect=TypeError("boom")):
        result = search_patients(ctx)
    assert result.success is False
    assert result.error == "TypeError: boom"


# ── upload_patient ─────────────────────────────────────────────────────────────

CREATED_XML = """<Patient xmlns="http://hl7.org/fhir">
  <id value="123"/>
  <meta>
    <versionId value="1"/>
  </meta>
  <identifier>
    <system value="http://ns.electronichealth.net.au/id/hi/ihi/1.0"/>
    <value value="8003608166690503"/>
  </identifier>
  <name>
    <use value="official"/>
    <given value="Sam"/>
    <prefix value="Mr"/>
    <suffix value="Fhirman"/>
  </name>
</Patient>
"""


def _created_handler(request):
    assert request.headers["Content-Type"].startswith("application/fhir+xml")
    return httpx.Response(
        201,
        headers={
            "Content-Type": "application/fhir+xml;charset=UTF-8",
            "Location": f"{BASE}/Patient/123/_history/1",
        },
        text=CREATED_XML,
    )


def test_upload_logs_sent_and_received_and_appends_one_line(tmp_path, caplog):
    ctx, lines = _context(_created_handler, tmp_path)
    with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
        result = upload_patient(ctx)

    assert result.success is True
    assert result.data.logical_id == "123"
    assert lines == [f"Resource is available at: {BASE}/Patient/123/_history/1"]

    message = next(
        r.getMessage() for r in caplog.records if "This is what we sent up" in r.getMessage()
    )
    sent, received = message.split("This is what we received:")
    assert to_xml(ctx.settings.demo_patient.to_resource(), pretty=True) in sent
    assert 'value="123"' not in sent
    assert 'value="123"' in received
    assert "versionId" in received
    assert 'value="Fhirman"' in received


def test_upload_writes_to_log_file(tmp_path):
    """With the real writer the line lands in the configured file."""
    from file_log import LogFileWriter

    ctx, _ = _context(_created_handler, tmp_path)
    ctx.write_log = LogFileWriter(ctx.settings.log_file_path)
    upload_patient(ctx)

    with open(ctx.settings.log_file_path, encoding="utf-8") as fh:
        content = fh.read().splitlines()
    assert content == [f"Resource is available at: {BASE}/Patient/123/_history/1"]


def test_upload_format_failure_is_logged_not_printed(tmp_path, capsys, caplog):
    ctx, lines = _context(_unexpected, tmp_path)
    with patch.object(ctx.client, "create", side_effect=FHIRFormatError("bad resource")):
        with caplog.at_level(logging.ERROR):
            result = upload_patient(ctx)

    assert result.success is False
    assert "FHIRFormatError" in result.error
    assert lines == []
    assert capsys.readouterr().out == ""
    assert any("upload" in r.getMessage() for r in caplog.records)


def test_upload_server_rejection_returns_failure(tmp_path):
    ctx, lines = _context(lambda request: httpx.Response(400, text="invalid"), tmp_path)
    result = upload_patient(ctx)
    assert result.success is False
    assert "FHIRAPIError" in result.error
    assert lines == []


def test_upload_is_attempted_once(tmp_path):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503, text="unavailable")

    ctx, _ = _context(handler, tmp_path)
    upload_patient(ctx)
    assert len(calls) == 1


# ── run_everything ─────────────────────────────────────────────────────────────

def test_everything_prints_total_and_logs_each_resource(tmp_path, capsys, caplog):
    def handler(request):
        assert request.url.path == "/baseDstu3/Patient/2834343/$everything"
        return httpx.Response(
            200,
            json=_bundle(
                {"resourceType": "Patient", "id": "2834343"},
                {"resourceType": "Observation", "id": "9"},
                total=2,
            ),
        )

    ctx, _ = _context(handler, tmp_path)
    with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
        result = run_everything(ctx)

    assert capsys.readouterr().out.splitlines() == ["Received 2 results. The resources are:"]
    messages = [r.getMessage() for r in caplog.records if r.name == LOGGER_NAME]
    assert messages == ["Patient/2834343", "Observation/9"]
    assert result.success is True
    assert result.data.total == 2


def test_everything_custom_patient_id(tmp_path):
    def handler(request):
        assert request.url.path == "/baseDstu3/Patient/abc/$everything"
        return httpx.Response(200, json=_bundle(total=0))

    ctx, _ = _context(handler, tmp_path)
    assert run_everything(ctx, patient_id="abc").success is True


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(404, text="not found"),
        httpx.Response(200, json={"resourceType": "Parameters", "parameter": []}),
        httpx.Response(
            200,
            json={
                "resourceType": "Parameters",
                "parameter": [{"name": "return", "resource": {"resourceType": "Patient"}}],
            },
        ),
    ],
    ids=["http-404", "no-parameters", "not-a-bundle"],
)
def test_everything_failures_logged_without_console_output(tmp_path, capsys, caplog, response):
    ctx, _ = _context(lambda request: response, tmp_path)
    with caplog.at_level(logging.ERROR):
        result = run_everything(ctx)

    assert result.success is False
    assert capsys.readouterr().out == ""
    assert any("operate" in r.getMessage() for r in caplog.records)


def test_everything_transport_failure(tmp_path):
    ctx, _ = _context(_unexpected, tmp_path)
    with patch.object(ctx.client, "operation", side_effect=FHIRAPIError(0, "timed out")):
        result = run_everything(ctx)
    assert result.success is False
    assert "timed out" in result.error


@pytest.mark.parametrize(
    "bundle",
    [
        {
            "resourceType": "Bundle",
            "total": 1,
            "entry": [{"fullUrl": "http://x/Patient/1", "resource": None}],
        },
        {"resourceType": "Bundle", "total": 1, "entry": [None]},
        {"resourceType": "Bundle", "total": "many"},
    ],
    ids=["null-resource", "null-entry", "non-numeric-total"],
)
def test_everything_malformed_bundle_is_a_failed_result(tmp_path, capsys, caplog, bundle):
    ctx, _ = _context(lambda request: httpx.Response(200, json=bundle), tmp_path)
    with caplog.at_level(logging.ERROR):
        result = run_everything(ctx)

    assert result.success is False
    assert capsys.readouterr().out == ""
    assert any("operate" in r.getMessage() for r in caplog.records)


def test_everything_null_entry_list_reads_as_empty(tmp_path, capsys):
    ctx, _ = _context(
        lambda request: httpx.Response(200, json={"resourceType": "Bundle", "total": 0, "entry": None}),
        tmp_path,
    )
    result = run_everything(ctx)
    assert result.success is True
    assert result.data.resources == []
    assert capsys.readouterr().out.splitlines() == ["Received 0 results. The resources are:"]
