"""Incremental discovery of newsletter/bulletin issues from a paginated listing."""

import logging
import os
import re
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Pattern, Tuple
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

import requests
from dotenv import load_dotenv

from .errors import DiscoveryError
from .logging_config import get_audit_logger, log_issue_discovered
from .store import Issue, IssueStatus, Series, SourceType

load_dotenv()

logger = logging.getLogger(__name__)

# Issue 433 is the February 2020 edition; one issue per month since.
EPOCH_ISSUE = 433
EPOCH_YEAR = 2020
EPOCH_MONTH = 2

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

# Listing link families, highest priority first. The first family with a match wins.
LINK_PATTERNS: List[Pattern[str]] = [
    re.compile(r'href="(/Board/Detail/\d+/\d+[^"]*)"'),
    re.compile(r'href="(/(?:view|detail|read|article|post|news)/\d+[^"]*)"', re.IGNORECASE),
    re.compile(r'href="([^"]*\?(?:id|no|seq|idx|num)=\d+[^"]*)"', re.IGNORECASE),
    re.compile(r'href="(/\d{4,}[^"]*)"'),
]

DOCUMENT_TITLE_DATE = re.compile(r'class="document-title"[^>]*>[\s\S]*?(\d{4})년\s*(\d{1,2})월')
HTML_TITLE_DATE = re.compile(r"<title[^>]*>.*?(\d{4})년\s*(\d{1,2})월")
BODY_DATE_PATTERNS = [
    re.compile(r"(\d{4})년\s*(\d{1,2})월호"),
    re.compile(r">\s*(\d{4})년\s*(\d{1,2})월\s*<"),
]
ISSUE_NUMBER_PATTERN = re.compile(r"제?(\d{3,4})호")
FULL_DATE_PATTERN = re.compile(r"(\d{4})\s*[년.\-/]\s*(\d{1,2})\s*[월.\-/]\s*(\d{1,2})\s*일?")

IMAGE_PATTERNS: List[Pattern[str]] = [
    re.compile(r'src="(https://data\.dimode\.co\.kr[^"\s]+\.(?:jpg|jpeg|png|gif))\s*"', re.IGNORECASE),
    re.compile(r'src="(https?://[^"\s]+\.(?:jpg|jpeg|png|gif))\s*"', re.IGNORECASE),
]

BOARD_ID_PATTERNS = [
    re.compile(r"/(\d+)/?(?:\?.*)?$"),
    re.compile(r"[?&](?:id|no|seq|idx|num)=(\d+)"),
]


@dataclass
class DiscoveryConfig:
    """Configuration for listing discovery."""
    listing_url: str = "https://www.anyangjeil.org/Board/Index/66"
    series: Series = Series.NEWSLETTER
    max_pages: int = 10
    listing_timeout: float = 30.0
    detail_timeout: float = 15.0
    user_agent: str = USER_AGENT


def get_discovery_config() -> DiscoveryConfig:
    """Get discovery configuration from environment."""
    return DiscoveryConfig(
        listing_url=os.getenv("NEWS_LISTING_URL", "https://www.anyangjeil.org/Board/Index/66"),
        series=Series(os.getenv("NEWS_SERIES", Series.NEWSLETTER.value)),
        max_pages=int(os.getenv("DISCOVERY_MAX_PAGES", "10")),
        listing_timeout=float(os.getenv("LISTING_TIMEOUT", "30")),
        detail_timeout=float(os.getenv("DETAIL_TIMEOUT", "15")),
    )


def issue_number_for(year: int, month: int) -> int:
    """Newsletter issue number of a (year, month) edition."""
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")
    return EPOCH_ISSUE + (year - EPOCH_YEAR) * 12 + (month - EPOCH_MONTH)


def year_month_for(issue_number: int) -> Tuple[int, int]:
    """Inverse of ``issue_number_for``."""
    if issue_number < 1:
        raise ValueError(f"Invalid issue number: {issue_number}")
    offset = issue_number - EPOCH_ISSUE + 1
    return EPOCH_YEAR + offset // 12, offset % 12 + 1


def issue_date_label(year: int, month: int) -> str:
    return f"{year}년 {month}월호"


def bulletin_number_for(day: date) -> int:
    """Bulletins are published weekly and numbered by their date (yyyymmdd)."""
    return day.year * 10000 + day.month * 100 + day.day


def bulletin_date_label(day: date) -> str:
    return f"{day.year}년 {day.month}월 {day.day}일"


def build_paginated_url(listing_url: str, page: int) -> str:
    parts = urlsplit(listing_url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "page"]
    query.append(("page", str(page)))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def detect_detail_links(html: str) -> List[str]:
    """Return detail links from a listing page using the first matching family."""
    for pattern in LINK_PATTERNS:
        links: List[str] = []
        for match in pattern.finditer(html):
            link = match.group(1)
            if link not in links:
                links.append(link)
        if links:
            return links
    return []


def extract_board_id(url: str) -> Optional[str]:
    for pattern in BOARD_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def extract_image_urls(html: str) -> List[str]:
    """Page images of a detail page; layout assets are excluded."""
    for pattern in IMAGE_PATTERNS:
        urls: List[str] = []
        for match in pattern.finditer(html):
            url = match.group(1).strip()
            if url in urls or "/Layouts/" in url or "/Images/" in url or "/files/" not in url:
                continue
            urls.append(url)
        if urls:
            return urls
    return []


def extract_year_month(html: str) -> Optional[Tuple[int, int]]:
    """Find the edition's year and month, most reliable location first."""
    for pattern in [DOCUMENT_TITLE_DATE, HTML_TITLE_DATE] + BODY_DATE_PATTERNS:
        match = pattern.search(html)
        if match:
            year, month = int(match.group(1)), int(match.group(2))
            if 1 <= month <= 12:
                return year, month

    match = ISSUE_NUMBER_PATTERN.search(html)
    if match:
        return year_month_for(int(match.group(1)))
    return None


def parse_detail_page(html: str, detail_url: str, series: Series = Series.NEWSLETTER) -> Optional[Issue]:
    """
    Build an issue descriptor from a detail page.

    Returns:
        Issue with status pending, or None when no edition date can be found
    """
    board_id = extract_board_id(detail_url)
    image_urls = extract_image_urls(html)

    if series == Series.BULLETIN:
        match = FULL_DATE_PATTERN.search(html)
        if not match:
            return None
        try:
            day = date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        except ValueError:
            return None
        return Issue(
            series=series,
            issue_number=bulletin_number_for(day),
            issue_date=bulletin_date_label(day),
            year=day.year,
            month=day.month,
            day=day.day,
            board_id=board_id,
            detail_url=detail_url,
            image_urls=image_urls,
            page_count=len(image_urls),
        )

    year_month = extract_year_month(html)
    if year_month is None:
        return None
    year, month = year_month
    return Issue(
        series=series,
        issue_number=issue_number_for(year, month),
        issue_date=issue_date_label(year, month),
        year=year,
        month=month,
        board_id=board_id,
        detail_url=detail_url,
        image_urls=image_urls,
        page_count=len(image_urls),
    )


class SourceDiscovery:
    """Listing scanner bounded by an optional issue-number range."""

    def __init__(self, store, config: Optional[DiscoveryConfig] = None, session: Optional[requests.Session] = None):
        self.store = store
        self.config = config or get_discovery_config()
        self.session = session or requests.Session()
        self.audit = get_audit_logger("discovery")

    def _get(self, url: str, timeout: float) -> str:
        try:
            response = self.session.get(url, headers={"User-Agent": self.config.user_agent}, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise DiscoveryError(f"GET {url} failed: {e}") from e
        return response.text

    def fetch_detail(self, detail_url: str) -> Optional[Issue]:
        """Fetch and parse one detail page; failures yield None."""
        try:
            html = self._get(detail_url, self.config.detail_timeout)
        except DiscoveryError as e:
            logger.warning(str(e))
            return None
        return parse_detail_page(html, detail_url, self.config.series)

    def resolve_range(self, start_url: Optional[str] = None, end_url: Optional[str] = None) -> Tuple[Optional[int], Optional[int]]:
        """
        Resolve boundary detail URLs to issue numbers.

        Returns:
            (upper, lower) with upper >= lower when both are known
        """
        upper = lower = None
        if start_url:
            issue = self.fetch_detail(start_url)
            upper = issue.issue_number if issue else None
        if end_url:
            issue = self.fetch_detail(end_url)
            lower = issue.issue_number if issue else None
        if upper is not None and lower is not None and upper < lower:
            upper, lower = lower, upper
        return upper, lower

    def scan(self, upper: Optional[int] = None, lower: Optional[int] = None, max_pages: Optional[int] = None) -> List[Issue]:
        """
        Walk the listing and collect issues within [lower, upper].

        Stops on an empty listing page, a failed listing fetch, or an issue numbered
        below ``lower``. Results are deduplicated and sorted newest first.
        """
        max_pages = max_pages or self.config.max_pages
        found: Dict[int, Issue] = {}

        for page in range(1, max_pages + 1):
            url = build_paginated_url(self.config.listing_url, page)
            try:
                html = self._get(url, self.config.listing_timeout)
            except DiscoveryError as e:
                logger.warning(f"Listing scan truncated at page {page}: {e}")
                break

            links = detect_detail_links(html)
            if not links:
                logger.info(f"No detail links on listing page {page}, stopping")
                break

            for link in links:
                issue = self.fetch_detail(urljoin(url, link))
                if issue is None:
                    continue
                if lower is not None and issue.issue_number < lower:
                    logger.info(f"Issue {issue.issue_number} is below the scan range, stopping")
                    return self._sorted(found)
                if upper is not None and issue.issue_number > upper:
                    continue
                if issue.issue_number not in found:
                    found[issue.issue_number] = issue
                    log_issue_discovered(self.audit, issue.series.value, issue.issue_number, issue.issue_date, issue.page_count)

        return self._sorted(found)

    @staticmethod
    def _sorted(found: Dict[int, Issue]) -> List[Issue]:
        return sorted(found.values(), key=lambda issue: issue.issue_number, reverse=True)

    def discover(
        self,
        full_rescan: bool = False,
        start_url: Optional[str] = None,
        end_url: Optional[str] = None,
        max_pages: Optional[int] = None,
    ) -> List[Issue]:
        """
        Produce the issues a run should consider, newest first.

        Incremental mode scans only above the highest cached number and merges in
        cached issues that never completed. Full-rescan mode first drops every
        non-completed cached issue, then scans the whole range.
        """
        upper, lower = self.resolve_range(start_url, end_url)
        series = self.config.series

        if full_rescan:
            deleted = self.store.delete_incomplete_issues(series)
            logger.info(f"Full rescan: removed {deleted} incomplete cached issues")
            return self.scan(upper, lower, max_pages)

        cached = {issue.issue_number: issue for issue in self.store.list_issues(series)}
        highest = self.store.max_issue_number(series)
        scan_lower = lower
        if highest is not None:
            scan_lower = max(lower or 0, highest + 1)

        if upper is not None and scan_lower is not None and scan_lower > upper:
            scanned: List[Issue] = []
        else:
            scanned = self.scan(upper, scan_lower, max_pages)

        merged: Dict[int, Issue] = {}
        for issue in scanned:
            known = cached.get(issue.issue_number)
            if known is not None and known.status == IssueStatus.COMPLETED:
                continue
            merged[issue.issue_number] = issue
        for number, issue in cached.items():
            if issue.status == IssueStatus.COMPLETED or number in merged:
                continue
            if issue.source_type != SourceType.WEB:
                continue
            if (upper is not None and number > upper) or (lower is not None and number < lower):
                continue
            merged[number] = issue

        logger.info(f"Discovered {len(scanned)} new issues, {len(merged)} to process")
        return self._sorted(merged)
