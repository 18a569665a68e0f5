"""HTTP client for fetching and parsing SSRS ATOM feeds."""

import asyncio
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from feedsync.config import settings
from feedsync.exceptions import NetworkError, ParseError
from feedsync.services.atomsvc_parser import create_detail_feed_url
from feedsync.services.entity_mapper import clean_html_entities

logger = logging.getLogger(__name__)

# Patterns tried in order against SSRS HTML error pages
SSRS_ERROR_PATTERNS = [
    re.compile(r'<div[^>]*class="[^"]*rsDetailedMessageDiv[^"]*"[^>]*>([\s\S]*?)</div>', re.IGNORECASE),
    re.compile(r'<span[^>]*class="[^"]*rsErrorMessage[^"]*"[^>]*>([\s\S]*?)</span>', re.IGNORECASE),
    re.compile(r'<b>Exception Details:</b>([\s\S]*?)<br\s*/?>', re.IGNORECASE),
    re.compile(r'<p>((?:rsProcessingAborted|rsErrorExecutingCommand|rsReportNotReady)[\s\S]*?)</p>', re.IGNORECASE),
]

# Detail fields that are also stored without their tablix prefix
COMMON_DETAIL_FIELDS = {
    "Company", "Name", "Status", "End_Date", "Quoted", "Estimated_Cost", "Actual_Cost",
    "Billable", "Invoiced", "WIP21", "CIA_Remaining", "Hours_Budget", "Hours_Actual",
    "Work_Role", "ReportTitle",
}


@dataclass
class FeedTestResult:
    """Outcome of a feed connectivity test."""

    success: bool
    record_count: int = 0
    sample_fields: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ProjectDetail:
    """Merged detail payload for one project."""

    fields: Dict[str, Any]
    status: Optional[str] = None
    tablixes_with_data: int = 0


def extract_ssrs_error(body: str) -> Optional[str]:
    """Pull the human-readable message out of an SSRS HTML error page."""
    for pattern in SSRS_ERROR_PATTERNS:
        match = pattern.search(body)
        if match:
            message = re.sub(r"<[^>]*>", "", match.group(1)).strip()
            if message:
                return message
    return None


def parse_atom_entries(xml_content: str) -> List[Dict[str, str]]:
    """Parse an ATOM feed into a list of flat property dictionaries.

    Args:
        xml_content: Rendered ATOM feed XML.

    Returns:
        One ``{field_name: text}`` dict per entry, in feed order.

    Raises:
        ParseError: If the XML cannot be parsed.
    """
    cleaned = xml_content.lstrip("\ufeff\ufffe").strip()

    try:
        root = ET.fromstring(cleaned)
    except ET.ParseError as e:
        raise ParseError(f"Failed to parse ATOM feed: {e}") from e

    entries: List[Dict[str, str]] = []
    for entry in root:
        if _local_name(entry.tag) != "entry":
            continue

        properties = None
        for content in entry:
            if _local_name(content.tag) != "content":
                continue
            for child in content:
                if _local_name(child.tag) == "properties":
                    properties = child
                    break

        if properties is None:
            continue

        entries.append({_local_name(prop.tag, lower=False): (prop.text or "") for prop in properties})

    logger.info(f"Parsed {len(entries)} entries from feed")
    return entries


class AtomFeedClient:
    """Client for fetching rendered ATOM feeds from SSRS."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize ATOM feed client.

        Args:
            timeout: Upper bound in seconds for one fetch (defaults to
                settings.feed_fetch_timeout_seconds).
            username: Optional basic-auth user (defaults to settings.feed_username).
            password: Optional basic-auth password (defaults to settings.feed_password).
            transport: Optional httpx transport, used by tests.
        """
        self.timeout = timeout if timeout is not None else settings.feed_fetch_timeout_seconds
        self.username = username or settings.feed_username
        self.password = password or settings.feed_password
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        """Async context manager entry."""
        auth = httpx.BasicAuth(self.username, self.password or "") if self.username else None
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            auth=auth,
            follow_redirects=True,
            transport=self._transport,
            headers={"Accept": "application/atom+xml, application/xml, text/xml"},
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("AtomFeedClient must be used as async context manager")
        return self._client

    async def fetch_feed(self, url: str) -> str:
        """Fetch the raw body of a feed URL.

        Args:
            url: Fully decoded feed URL.

        Returns:
            Response body text.

        Raises:
            NetworkError: On transport failure, timeout or non-2xx status.
        """
        client = self._get_client()
        logger.info(f"Fetching feed (length: {len(url)}): {url[:500]}{'...' if len(url) > 500 else ''}")

        try:
            response = await asyncio.wait_for(client.get(url), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.error(f"Timeout after {self.timeout}s fetching {url[:200]}")
            raise NetworkError(f"Timed out after {self.timeout}s fetching feed", url=url) from e
        except httpx.RequestError as e:
            logger.error(f"Network error fetching {url[:200]}: {e}")
            raise NetworkError(f"Network error fetching feed: {e}", url=url) from e

        if not response.is_success:
            body = response.text
            extracted = extract_ssrs_error(body)
            logger.error(f"HTTP {response.status_code} fetching {url[:200]}: {extracted or body[:500]}")
            raise NetworkError(
                f"HTTP {response.status_code}: {extracted or body[:500]}",
                url=url,
                status_code=response.status_code,
            )

        logger.info(f"Received {len(response.text)} bytes")
        return response.text

    async def fetch_entries(self, url: str) -> List[Dict[str, str]]:
        """Fetch a feed and parse its entries."""
        return parse_atom_entries(await self.fetch_feed(url))

    async def fetch_project_detail(
        self,
        detail_feed_url: str,
        external_id: str,
        tablixes: Optional[List[str]] = None,
    ) -> Optional[ProjectDetail]:
        """Fetch every detail tablix for one project and merge the first rows.

        Tablixes that fail or return nothing are skipped.

        Returns:
            ProjectDetail, or None if no tablix returned data.
        """
        tablixes = tablixes or settings.detail_tablixes
        fields: Dict[str, Any] = {}
        status: Optional[str] = None
        tablixes_with_data = 0

        for tablix in tablixes:
            url = create_detail_feed_url(detail_feed_url, external_id, item_path=tablix)
            try:
                entries = await self.fetch_entries(url)
            except (NetworkError, ParseError) as e:
                logger.info(f"{tablix} for project {external_id}: skipped ({e.message})")
                continue

            if not entries:
                continue

            tablixes_with_data += 1
            # Multi-row tablixes carry their totals in the first row
            entry = entries[0]
            for key, value in entry.items():
                if value in (None, ""):
                    continue
                cleaned = clean_html_entities(value)
                if key in COMMON_DETAIL_FIELDS:
                    fields[key] = cleaned
                fields[f"{tablix}_{key}"] = cleaned

            if len(entries) > 1:
                fields[f"{tablix}_RowCount"] = len(entries)

            if status is None:
                raw_status = entry.get("Status") or entry.get("ProjectStatus") or entry.get("Project_Status")
                if raw_status:
                    status = clean_html_entities(raw_status)

        if tablixes_with_data == 0:
            logger.info(f"No detail data found for project {external_id}")
            return None

        logger.info(f"Found {len(fields)} detail fields from {tablixes_with_data} tablixes for project {external_id}")
        return ProjectDetail(fields=fields, status=status, tablixes_with_data=tablixes_with_data)

    async def test_feed(self, url: str) -> FeedTestResult:
        """Fetch and parse a feed without persisting anything. Never raises."""
        try:
            entries = await self.fetch_entries(url)
        except (NetworkError, ParseError) as e:
            return FeedTestResult(success=False, error=e.message)

        return FeedTestResult(
            success=True,
            record_count=len(entries),
            sample_fields=list(entries[0].keys()) if entries else [],
        )


def _local_name(tag, lower: bool = True) -> str:
    if not isinstance(tag, str):
        return ""
    name = tag.rsplit("}", 1)[-1].split(":")[-1]
    return name.lower() if lower else name
