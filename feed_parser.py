#!/usr/bin/env python3
"""
Feed parser adapter.

Turns raw feed documents into a stream of FeedMetadata / ParsedEntry events
using feedparser. Parsing is blocking and CPU-bound; callers run it in an
executor and must fully consume the iterator there.
"""

from calendar import timegm
from hashlib import md5
from io import BytesIO
from typing import Any, Iterator, Optional

import feedparser

from config import get_logger
from errors import FeedParseError
from models import FeedEvent, FeedMetadata, ParsedEntry

# Module-specific logger
logger = get_logger("feed_parser")


def parse_feed(content: bytes, base_url: str) -> Iterator[FeedEvent]:
    """Parse a feed document and yield its metadata followed by its entries.

    Args:
        content: The raw response body
        base_url: URL the content was fetched from, used to resolve relative links

    Raises:
        FeedParseError: If the content is not a recognizable feed
    """
    parsed = feedparser.parse(
        BytesIO(content),
        response_headers={'content-location': base_url},
        sanitize_html=True,
        resolve_relative_uris=True,
    )

    feed_type = parsed.get('version') or ''
    if not feed_type:
        if parsed.get('bozo') and parsed.get('bozo_exception') is not None:
            raise FeedParseError(f"Malformed feed: {parsed.bozo_exception}")
        raise FeedParseError("Unrecognized feed format")

    if parsed.get('bozo'):
        logger.warning(f"Feed parsing warning for {base_url}: {parsed.get('bozo_exception')}")

    logger.debug(f"Feed {base_url} parsed as {feed_type} format")

    feed_info = parsed.get('feed', {})
    yield FeedMetadata(
        title=_clean_text(feed_info.get('title')),
        link=_clean_text(feed_info.get('link')),
        language=_clean_text(feed_info.get('language')),
    )

    for entry in parsed.get('entries', []):
        uid = get_uid(entry)
        if not uid:
            logger.warning(f"Skipping entry without id, link, title or content in {base_url}")
            continue
        publish_time, publish_time_text = parse_publish_time(entry)
        yield ParsedEntry(
            uid=uid,
            title=_clean_text(entry.get('title')),
            link=_clean_text(entry.get('link')),
            content=extract_content(entry),
            author=_clean_text(entry.get('author')),
            publish_time=publish_time,
            publish_time_text=publish_time_text,
        )


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def get_uid(entry) -> Optional[str]:
    """Extract or derive a stable per-feed identifier for an entry."""
    entry_id = _clean_text(entry.get('id'))
    if entry_id:
        return entry_id

    # Derive a consistent hash from whatever identifies the entry
    link = _clean_text(entry.get('link'))
    if link:
        return md5(link.encode()).hexdigest()

    title = _clean_text(entry.get('title'))
    published = _clean_text(entry.get('published') or entry.get('updated'))
    if title:
        return md5(f"{title}{published or ''}".encode()).hexdigest()

    content = extract_content(entry)
    if content:
        return md5(content.encode()).hexdigest()

    return None


def extract_content(entry) -> Optional[str]:
    """Extract the richest available body of an entry."""
    for content_item in entry.get('content') or []:
        value = content_item.get('value')
        if value:
            return value

    # Fall back to summary, then description
    return entry.get('summary') or entry.get('description') or None


def parse_publish_time(entry) -> tuple[Optional[int], Optional[str]]:
    """Return the entry's publish time as a Unix timestamp and its raw text."""
    for field in ('published', 'updated', 'created'):
        text = _clean_text(entry.get(field))
        parsed = entry.get(f"{field}_parsed")
        if parsed:
            try:
                return timegm(parsed), text
            except (OverflowError, ValueError, TypeError) as e:
                logger.debug(f"Failed to convert {field} '{text}': {e}")
        if text:
            # feedparser could not parse it; keep the text for diagnostics
            return None, text
    return None, None
