"""Feed discovery from OPML documents, HTML pages and feed URLs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Union
from urllib.parse import urljoin
from xml.etree import ElementTree as ET

import feedparser
import requests
from bs4 import BeautifulSoup

from .models import (
    FeedCandidate,
    FeedInfo,
    ScanFeedsError,
    ScanFeedsErrorCode,
    ScanFeedsSuccess,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; rss-subscriptions/0.1)"
FEED_LINK_TYPES = ("application/rss+xml", "application/atom+xml")


@dataclass
class OpmlSource:
    document: str


@dataclass
class UrlSource:
    url: str


DiscoverySource = Union[OpmlSource, UrlSource]


def classify_input(
    opml: Optional[str] = None, url: Optional[str] = None
) -> Optional[DiscoverySource]:
    """Pick which kind of input a scan request carries."""
    if opml:
        return OpmlSource(opml)
    if url:
        return UrlSource(url)
    return None


def fetch(url: str, timeout: float = DEFAULT_TIMEOUT, user_agent: str = DEFAULT_USER_AGENT):
    """GET ``url`` and raise on non-2xx responses."""
    logger.debug("Fetching %s", url)
    response = requests.get(
        url,
        timeout=timeout,
        headers={"User-Agent": user_agent},
    )
    response.raise_for_status()
    return response


def parse_opml(text: str) -> Optional[List[FeedCandidate]]:
    """Return every outline with a feed URL, or ``None`` for unusable input."""
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        logger.warning("Failed to parse OPML document: %s", exc)
        return None

    body = root.find("body")
    if body is None:
        logger.warning("OPML document is missing the <body> section")
        return None

    feeds: List[FeedCandidate] = []

    def walk(outline: ET.Element) -> None:
        feed_url = (outline.attrib.get("xmlUrl") or "").strip()
        if feed_url:
            title = outline.attrib.get("title") or outline.attrib.get("text")
            feeds.append(
                FeedCandidate(
                    url=feed_url,
                    title=title or feed_url,
                    type=(outline.attrib.get("type") or "rss").lower(),
                )
            )
        for child in outline.findall("outline"):
            walk(child)

    for outline in body.findall("outline"):
        walk(outline)

    logger.info("Found %d feeds in OPML document", len(feeds))
    return feeds or None


def extract_feed_links(html: str, base_url: str) -> List[FeedCandidate]:
    """Collect RSS autodiscovery ``<link>`` elements from an HTML page."""
    soup = BeautifulSoup(html, "html.parser")
    feeds: List[FeedCandidate] = []
    for link in soup.find_all("link"):
        link_type = (link.get("type") or "").strip().lower()
        if link_type not in FEED_LINK_TYPES:
            continue
        href = (link.get("href") or "").strip()
        if not href:
            logger.debug("Skipping feed link without href on %s", base_url)
            continue
        feeds.append(
            FeedCandidate(
                url=urljoin(base_url, href),
                title=(link.get("title") or "").strip(),
                type="rss",
            )
        )
    return feeds


def _feed_info(parsed, fallback_url: str) -> Optional[FeedInfo]:
    # feedparser leaves ``version`` empty for anything it does not recognise.
    if not parsed.get("version"):
        return None

    channel = parsed.feed
    feed_url = fallback_url
    for link in channel.get("links", []):
        if link.get("rel") == "self" and link.get("href"):
            feed_url = link["href"]
            break

    thumbnail = None
    image = channel.get("image")
    if image:
        thumbnail = image.get("href") or image.get("url")
    thumbnail = thumbnail or channel.get("logo") or channel.get("icon")

    return FeedInfo(
        url=feed_url,
        title=channel.get("title") or feed_url,
        description=channel.get("subtitle") or channel.get("description") or None,
        thumbnail=thumbnail,
    )


def parse_feed_document(content: bytes, url: str) -> Optional[FeedInfo]:
    """Parse an already downloaded feed body."""
    return _feed_info(feedparser.parse(content), url)


def parse_feed(
    url: str,
    timeout: float = DEFAULT_TIMEOUT,
    user_agent: str = DEFAULT_USER_AGENT,
) -> Optional[FeedInfo]:
    """Download and parse a feed; ``None`` when the body is not a feed."""
    response = fetch(url, timeout=timeout, user_agent=user_agent)
    info = parse_feed_document(response.content, getattr(response, "url", None) or url)
    if info is None:
        logger.info("Content at %s is not a valid feed", url)
    return info


def _is_not_found(exc: requests.RequestException) -> bool:
    response = getattr(exc, "response", None)
    return response is not None and response.status_code == 404


def _scan_url(
    url: str, timeout: float, user_agent: str
) -> Union[ScanFeedsSuccess, ScanFeedsError]:
    try:
        response = fetch(url, timeout=timeout, user_agent=user_agent)
    except requests.RequestException as exc:
        logger.warning("Failed to fetch %s: %s", url, exc)
        if _is_not_found(exc):
            return ScanFeedsError([ScanFeedsErrorCode.NOT_FOUND])
        return ScanFeedsError([ScanFeedsErrorCode.BAD_REQUEST])

    content_type = (response.headers.get("content-type") or "").lower()
    if "text/html" in content_type:
        feeds = extract_feed_links(response.text, getattr(response, "url", None) or url)
        logger.info("Found %d feed links on %s", len(feeds), url)
        return ScanFeedsSuccess(feeds)

    info = parse_feed_document(response.content, getattr(response, "url", None) or url)
    if info is None:
        logger.info("Content at %s is not a valid feed", url)
        return ScanFeedsError([ScanFeedsErrorCode.NOT_FOUND])
    return ScanFeedsSuccess([FeedCandidate(url=info.url, title=info.title, type="rss")])


def scan_feeds(
    opml: Optional[str] = None,
    url: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT,
    user_agent: str = DEFAULT_USER_AGENT,
) -> Union[ScanFeedsSuccess, ScanFeedsError]:
    """Normalise an OPML document, HTML page or feed URL into feed candidates."""
    source = classify_input(opml, url)

    if isinstance(source, OpmlSource):
        feeds = parse_opml(source.document)
        if feeds is None:
            return ScanFeedsError([ScanFeedsErrorCode.BAD_REQUEST])
        return ScanFeedsSuccess(feeds)

    if isinstance(source, UrlSource):
        try:
            return _scan_url(source.url, timeout, user_agent)
        except Exception:
            logger.exception("Error scanning URL %s", source.url)
            return ScanFeedsError([ScanFeedsErrorCode.BAD_REQUEST])

    logger.error("Missing opml and url")
    return ScanFeedsError([ScanFeedsErrorCode.BAD_REQUEST])
