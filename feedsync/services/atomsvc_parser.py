"""Parser for SSRS ATOMSVC subscription documents.

ATOMSVC files are XML service documents exported by SSRS with this structure::

    <?xml version="1.0" encoding="utf-8"?>
    <service xmlns="http://www.w3.org/2007/app">
      <workspace>
        <title>Report Server</title>
        <collection href="http://server/ReportServer?%2FFolder%2FReport&amp;rs:Command=Render&amp;rs:Format=ATOM">
          <title>Report Title</title>
        </collection>
      </workspace>
    </service>

Each collection becomes one feed descriptor. Parsing never touches the
database; callers decide what to persist.
"""

import logging
import re
import xml.etree.ElementTree as ET
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Union
from urllib.parse import quote, unquote_plus, urlsplit, urlunsplit

from feedsync.exceptions import ParseError
from feedsync.models.enums import FeedType

logger = logging.getLogger(__name__)

GENERIC_TITLE_PATTERN = re.compile(r"^(tablix|table|chart|matrix)\d*$", re.IGNORECASE)

# Checked in order; the first type with a matching keyword wins
FEED_TYPE_KEYWORDS = [
    (FeedType.SERVICE_TICKETS, ("ticket", "service", "helpdesk", "support", "incident", "sr ")),
    (FeedType.OPPORTUNITIES, ("opportunit", "sales", "pipeline", "opp ")),
    (FeedType.PROJECTS, ("project", "pm ")),
]

HTML_ENTITIES = [
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&amp;", "&"),
]

REPORT_CONTROL_PREFIXES = ("rs:", "rc:")

UNNAMED_FEED = "Unnamed Feed"
DEFAULT_ATOM_FEED_NAME = "ATOM Feed"


@dataclass(frozen=True)
class ParsedFeed:
    """Feed descriptor candidate extracted from a document."""

    name: str
    feed_url: str
    feed_type: FeedType


@dataclass(frozen=True)
class Found:
    descriptor: ParsedFeed


@dataclass(frozen=True)
class Skipped:
    reason: str
    title: Optional[str] = None


@dataclass(frozen=True)
class Failed:
    error: str
    title: Optional[str] = None


ParseOutcome = Union[Found, Skipped, Failed]


def is_valid_atomsvc_content(content: str) -> bool:
    """Check that a string looks like an ATOMSVC or ATOM XML document."""
    if not isinstance(content, str):
        return False
    trimmed = _strip_bom(content).strip()
    return trimmed.startswith("<?xml") or trimmed.startswith("<service") or trimmed.startswith("<feed")


def decode_atom_url(url: str) -> str:
    """Decode HTML entities in a feed URL.

    SSRS double-encodes ampersands in exported query strings, so decoding is
    repeated until the value is stable.
    """
    previous = None
    decoded = url.strip()
    while decoded != previous:
        previous = decoded
        for entity, char in HTML_ENTITIES:
            decoded = decoded.replace(entity, char)
    return decoded


def classify_feed_type(feed_url: str, title: str = "") -> FeedType:
    """Classify a feed by keywords found in its URL and title.

    Ticket keywords outrank opportunity keywords, which outrank project
    keywords. Feeds with no keyword match default to PROJECTS.
    """
    text = f"{feed_url} {title} ".lower().replace("%20", " ").replace("+", " ")

    for feed_type, keywords in FEED_TYPE_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return feed_type

    logger.info(f"Feed type ambiguous for '{title or feed_url[:80]}', defaulting to PROJECTS")
    return FeedType.PROJECTS


def parse_atomsvc(content: str) -> List[ParseOutcome]:
    """Parse an ATOMSVC (or plain ATOM) document into per-item outcomes.

    Args:
        content: Raw XML text.

    Returns:
        One outcome per collection (or a single outcome for a plain ATOM
        feed). Content that is not recognized as XML yields a single Skipped.

    Raises:
        ParseError: If the content looks like XML but cannot be parsed.
    """
    if not is_valid_atomsvc_content(content):
        logger.warning("Content not recognized as ATOMSVC or ATOM XML")
        return [Skipped(reason="Content not recognized as ATOMSVC or ATOM XML")]

    try:
        root = ET.fromstring(_strip_bom(content).strip())
    except ET.ParseError as e:
        logger.error(f"Error parsing ATOMSVC document: {e}")
        raise ParseError(f"Failed to parse ATOMSVC file: {e}") from e

    root_tag = _local_name(root.tag)

    if root_tag == "service":
        outcomes = []
        for workspace in _children(root, "workspace"):
            outcomes.extend(_parse_workspace(workspace))
        logger.info(
            f"Parsed ATOMSVC document: {sum(isinstance(o, Found) for o in outcomes)} feeds, "
            f"{sum(isinstance(o, Skipped) for o in outcomes)} skipped, "
            f"{sum(isinstance(o, Failed) for o in outcomes)} failed"
        )
        return outcomes

    if root_tag == "feed":
        # A rendered ATOM feed rather than a subscription; the caller must supply the URL
        title = _child_text(root, "title") or DEFAULT_ATOM_FEED_NAME
        return [Found(ParsedFeed(name=title, feed_url="", feed_type=FeedType.PROJECTS))]

    return [Skipped(reason=f"Unsupported root element '{root_tag}'")]


def parse_feed_descriptors(content: str) -> List[ParsedFeed]:
    """Parse a document and return only the usable feed descriptors."""
    return [outcome.descriptor for outcome in parse_atomsvc(content) if isinstance(outcome, Found)]


def _parse_workspace(workspace: ET.Element) -> List[ParseOutcome]:
    workspace_title = _child_text(workspace, "title")

    # First pass: resolve names so duplicates among fallback names can be numbered
    pending = []
    for collection in _children(workspace, "collection"):
        title = _child_text(collection, "title")
        href = _attribute(collection, "href") or _child_text(collection, "href")

        if not href:
            pending.append((Skipped(reason="Collection has no href", title=title), None, False))
            continue

        feed_url = decode_atom_url(href)
        try:
            is_absolute = bool(urlsplit(feed_url).scheme)
        except ValueError as e:
            pending.append((Failed(error=f"Collection href is not a valid URL: {e}", title=title), None, False))
            continue
        if not is_absolute:
            logger.warning(f"Collection '{title or workspace_title}' has a relative href: {feed_url[:100]}")

        name, used_fallback = _resolve_name(title, workspace_title)
        pending.append(((name, feed_url), name, used_fallback))

    fallback_counts = Counter(name for _item, name, used_fallback in pending if used_fallback)
    ordinals: Dict[str, int] = {}

    outcomes: List[ParseOutcome] = []
    for item, name, used_fallback in pending:
        if name is None:
            outcomes.append(item)
            continue

        _, feed_url = item
        display_name = name
        if used_fallback and fallback_counts[name] > 1:
            ordinals[name] = ordinals.get(name, 0) + 1
            display_name = f"{name} ({ordinals[name]})"

        feed_type = classify_feed_type(feed_url, name)
        outcomes.append(Found(ParsedFeed(name=display_name, feed_url=feed_url, feed_type=feed_type)))

    return outcomes


def _resolve_name(title: Optional[str], workspace_title: Optional[str]) -> tuple:
    """Return (name, used_workspace_fallback) for a collection."""
    if title and not GENERIC_TITLE_PATTERN.match(title):
        return title, False
    if workspace_title:
        return workspace_title, True
    return title or UNNAMED_FEED, False


def extract_report_parameters(url: str) -> Dict[str, List[str]]:
    """Extract report data parameters from an SSRS feed URL.

    Report-engine control parameters (``rs:*``, ``rc:*``) are dropped.
    Repeated keys (multi-select report parameters) keep every value in order.
    Malformed URLs yield an empty mapping.
    """
    params: Dict[str, List[str]] = {}

    try:
        parts = urlsplit(url)
    except (TypeError, ValueError, AttributeError):
        return params

    if not parts.scheme or not parts.netloc:
        return params

    for key, value in _query_items(parts.query):
        if key is None or key.lower().startswith(REPORT_CONTROL_PREFIXES):
            continue
        params.setdefault(key, []).append(value)

    return params


def create_detail_feed_url(detail_feed_url: str, external_id: str, item_path: Optional[str] = None) -> str:
    """Build the URL that renders one project's detail report.

    The project identifier is substituted into the first report parameter
    that names a project (or ``ID``); ``ProjectID`` is appended when the
    detail report has no such parameter. ``item_path`` selects a single
    tablix of the report through ``rc:ItemPath``.
    """
    parts = urlsplit(detail_feed_url)
    raw_items = [item for item in parts.query.split("&") if item] if parts.query else []

    substituted = False
    item_path_set = False
    rebuilt = []
    for raw in raw_items:
        if "=" not in raw:
            rebuilt.append(raw)
            continue

        raw_key, _raw_value = raw.split("=", 1)
        key = unquote_plus(raw_key)
        lower_key = key.lower()

        if lower_key == "rc:itempath" and item_path:
            rebuilt.append(f"{raw_key}={quote(item_path, safe='')}")
            item_path_set = True
        elif (
            not substituted
            and not lower_key.startswith(REPORT_CONTROL_PREFIXES)
            and ("project" in lower_key or lower_key == "id")
        ):
            rebuilt.append(f"{raw_key}={quote(str(external_id), safe='')}")
            substituted = True
        else:
            rebuilt.append(raw)

    if not substituted:
        rebuilt.append(f"ProjectID={quote(str(external_id), safe='')}")
    if item_path and not item_path_set:
        rebuilt.append(f"rc:ItemPath={quote(item_path, safe='')}")

    return urlunsplit((parts.scheme, parts.netloc, parts.path, "&".join(rebuilt), parts.fragment))


def _query_items(query: str):
    for raw in query.split("&"):
        if not raw or "=" not in raw:
            # The leading report path (e.g. %2FFolder%2FReport) carries no value
            continue
        key, value = raw.split("=", 1)
        yield unquote_plus(key), unquote_plus(value)


def _strip_bom(content: str) -> str:
    return content.lstrip("\ufeff\ufffe")


def _local_name(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1].split(":")[-1].lower()


def _children(element: ET.Element, name: str) -> List[ET.Element]:
    return [child for child in element if _local_name(child.tag) == name]


def _child_text(element: ET.Element, name: str) -> Optional[str]:
    for child in _children(element, name):
        text = "".join(child.itertext()).strip()
        if text:
            return text
    return None


def _attribute(element: ET.Element, name: str) -> Optional[str]:
    for key, value in element.attrib.items():
        if _local_name(key) == name and value and value.strip():
            return value
    return None
