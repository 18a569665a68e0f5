"""Tests for the ATOM feed client."""

import asyncio

import httpx
import pytest

from feedsync.exceptions import NetworkError, ParseError
from feedsync.services.atom_client import AtomFeedClient, extract_ssrs_error, parse_atom_entries

FEED_URL = "http://srv/ReportServer?%2FPM%2FSummary&rs:Format=ATOM"
DETAIL_URL = "http://srv/ReportServer?%2FPM%2FDetail&ProjectID=1&rs:Format=ATOM&rc:ItemPath=Tablix1"


def _atom(*rows):
    entries = "".join(
        "<entry><content type=\"application/xml\"><m:properties>"
        + "".join(f"<d:{key}>{value}</d:{key}>" for key, value in row.items())
        + "</m:properties></content></entry>"
        for row in rows
    )
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<feed xmlns="http://www.w3.org/2005/Atom"'
        ' xmlns:m="http://schemas.microsoft.com/ado/2007/08/dataservices/metadata"'
        ' xmlns:d="http://schemas.microsoft.com/ado/2007/08/dataservices">'
        f"<title>Report</title>{entries}</feed>"
    )


def _client(handler, timeout=5.0):
    return AtomFeedClient(timeout=timeout, transport=httpx.MockTransport(handler))


class TestParseAtomEntries:
    """Test ATOM entry parsing."""

    def test_entries_flattened_in_order(self):
        xml = _atom({"ID": "100", "Name1": "Alpha"}, {"ID": "101", "Name1": "Beta"})

        entries = parse_atom_entries(xml)

        assert entries == [{"ID": "100", "Name1": "Alpha"}, {"ID": "101", "Name1": "Beta"}]

    def test_empty_property_becomes_empty_string(self):
        xml = _atom({"ID": "100", "Status": ""})
        assert parse_atom_entries(xml)[0]["Status"] == ""

    def test_entry_without_properties_is_ignored(self):
        xml = (
            '<feed xmlns="http://www.w3.org/2005/Atom"><entry><title>x</title></entry></feed>'
        )
        assert parse_atom_entries(xml) == []

    def test_leading_bom_is_tolerated(self):
        assert len(parse_atom_entries("\ufeff" + _atom({"ID": "1"}))) == 1

    def test_malformed_xml_raises(self):
        with pytest.raises(ParseError):
            parse_atom_entries("<feed><entry></feed>")


class TestExtractSsrsError:
    """Test SSRS error page extraction."""

    def test_detailed_message_div(self):
        body = '<html><div class="rsDetailedMessageDiv x">The report <b>failed</b> to render</div></html>'
        assert extract_ssrs_error(body) == "The report failed to render"

    def test_error_message_span(self):
        body = '<span class="rsErrorMessage">Parameter missing</span>'
        assert extract_ssrs_error(body) == "Parameter missing"

    def test_processing_aborted_paragraph(self):
        body = "<p>rsProcessingAborted: Cannot read data</p>"
        assert extract_ssrs_error(body) == "rsProcessingAborted: Cannot read data"

    def test_no_match(self):
        assert extract_ssrs_error("<html>Internal error</html>") is None


class TestAtomFeedClient:
    """Test AtomFeedClient transport behaviour."""

    @pytest.mark.asyncio
    async def test_context_manager_opens_and_closes(self):
        client = _client(lambda request: httpx.Response(200, text=_atom()))

        async with client:
            assert client._client is not None

        assert client._client is None

    @pytest.mark.asyncio
    async def test_fetch_requires_context_manager(self):
        client = _client(lambda request: httpx.Response(200, text=_atom()))
        with pytest.raises(RuntimeError):
            await client.fetch_feed(FEED_URL)

    @pytest.mark.asyncio
    async def test_fetch_entries_success(self):
        def handler(request):
            return httpx.Response(200, text=_atom({"ID": "100"}))

        async with _client(handler) as client:
            entries = await client.fetch_entries(FEED_URL)

        assert entries == [{"ID": "100"}]

    @pytest.mark.asyncio
    async def test_basic_auth_header_sent(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, text=_atom())

        client = AtomFeedClient(
            timeout=5.0, username="reports", password="secret", transport=httpx.MockTransport(handler)
        )
        async with client:
            await client.fetch_feed(FEED_URL)

        assert seen["auth"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_http_error_uses_ssrs_message(self):
        def handler(request):
            return httpx.Response(500, text='<span class="rsErrorMessage">Report not found</span>')

        async with _client(handler) as client:
            with pytest.raises(NetworkError) as exc_info:
                await client.fetch_feed(FEED_URL)

        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "HTTP 500: Report not found"
        assert exc_info.value.url == FEED_URL

    @pytest.mark.asyncio
    async def test_http_error_without_ssrs_message_uses_body(self):
        async with _client(lambda request: httpx.Response(401, text="Unauthorized")) as client:
            with pytest.raises(NetworkError) as exc_info:
                await client.fetch_feed(FEED_URL)

        assert exc_info.value.message == "HTTP 401: Unauthorized"

    @pytest.mark.asyncio
    async def test_transport_timeout_raises_network_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with _client(handler) as client:
            with pytest.raises(NetworkError) as exc_info:
                await client.fetch_feed(FEED_URL)

        assert "Timed out" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_slow_response_bounded_by_timeout(self):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, text=_atom())

        async with _client(handler, timeout=0.05) as client:
            with pytest.raises(NetworkError):
                await client.fetch_feed(FEED_URL)

    @pytest.mark.asyncio
    async def test_connection_error_raises_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(NetworkError) as exc_info:
                await client.fetch_feed(FEED_URL)

        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_feed_test_reports_fields(self):
        def handler(request):
            return httpx.Response(200, text=_atom({"ID": "1", "Name1": "A"}, {"ID": "2", "Name1": "B"}))

        async with _client(handler) as client:
            result = await client.test_feed(FEED_URL)

        assert result.success is True
        assert result.record_count == 2
        assert result.sample_fields == ["ID", "Name1"]

    @pytest.mark.asyncio
    async def test_feed_test_never_raises(self):
        async with _client(lambda request: httpx.Response(200, text="<not-xml")) as client:
            result = await client.test_feed(FEED_URL)

        assert result.success is False
        assert result.error


class TestFetchProjectDetail:
    """Test per-project detail retrieval across tablixes."""

    @pytest.mark.asyncio
    async def test_merges_first_rows_with_prefixes(self):
        rows = {
            "Tablix1": [{"Company": "Acme &amp; Sons", "Status": "Open", "Budget": "100"}],
            "Tablix2": [{"Work_Role": "Engineer", "Hours": "5"}, {"Work_Role": "PM", "Hours": "2"}],
        }

        def handler(request):
            assert request.url.params.get("ProjectID") == "2399"
            tablix = request.url.params.get("rc:ItemPath")
            if tablix not in rows:
                return httpx.Response(200, text=_atom())
            return httpx.Response(200, text=_atom(*rows[tablix]))

        async with _client(handler) as client:
            detail = await client.fetch_project_detail(DETAIL_URL, "2399", tablixes=["Tablix1", "Tablix2", "Tablix15"])

        assert detail.tablixes_with_data == 2
        assert detail.status == "Open"
        assert detail.fields["Tablix1_Company"] == "Acme & Sons"
        assert detail.fields["Company"] == "Acme & Sons"
        assert detail.fields["Tablix1_Budget"] == "100"
        assert "Budget" not in detail.fields
        assert detail.fields["Tablix2_Work_Role"] == "Engineer"
        assert detail.fields["Work_Role"] == "Engineer"
        assert detail.fields["Tablix2_RowCount"] == 2
        assert "Tablix1_RowCount" not in detail.fields

    @pytest.mark.asyncio
    async def test_failing_tablix_is_skipped(self):
        def handler(request):
            if request.url.params.get("rc:ItemPath") == "Tablix1":
                return httpx.Response(500, text="boom")
            return httpx.Response(200, text=_atom({"ProjectStatus": "Closed"}))

        async with _client(handler) as client:
            detail = await client.fetch_project_detail(DETAIL_URL, "7", tablixes=["Tablix1", "Tablix8"])

        assert detail.tablixes_with_data == 1
        assert detail.status == "Closed"

    @pytest.mark.asyncio
    async def test_no_data_returns_none(self):
        async with _client(lambda request: httpx.Response(200, text=_atom())) as client:
            assert await client.fetch_project_detail(DETAIL_URL, "7", tablixes=["Tablix1"]) is None
