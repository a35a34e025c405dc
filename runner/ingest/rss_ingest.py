import calendar
from datetime import datetime, timezone

import feedparser

from backend.errors import FetchError
from .extract import FEED_HEADERS, describe_fetch_error, fetch_url, first_image_src, html_to_text


def get_published(entry) -> str:
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if parsed:
        try:
            ts = calendar.timegm(parsed)
            return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
        except (TypeError, ValueError, OverflowError):
            pass
    return datetime.now(timezone.utc).isoformat()


def _entry_html(entry) -> str:
    for block in entry.get("content") or []:
        value = block.get("value") if isinstance(block, dict) else None
        if value:
            return value
    return entry.get("summary") or entry.get("description") or ""


def extract_image(entry) -> str | None:
    for media in entry.get("media_content") or []:
        url = media.get("url")
        if url:
            return url
    for enclosure in entry.get("enclosures") or []:
        href = enclosure.get("href") or enclosure.get("url")
        kind = (enclosure.get("type") or "").lower()
        if href and (not kind or kind.startswith("image/")):
            return href
    for thumb in entry.get("media_thumbnail") or []:
        url = thumb.get("url")
        if url:
            return url
    return first_image_src(_entry_html(entry))


def entry_to_item(entry) -> dict:
    link = (entry.get("link") or "").strip()
    content_html = _entry_html(entry)
    summary = html_to_text(entry.get("summary") or entry.get("description") or "")
    content = content_html or summary
    return {
        "title": html_to_text(entry.get("title") or ""),
        "summary": summary,
        "content": content,
        "published_at": get_published(entry),
        "original_url": link,
        "guid": entry.get("id") or entry.get("guid") or link,
        "image_url": extract_image(entry),
        "author": entry.get("author") or None,
    }


def parse_feed(text: str, max_items: int = 20) -> list[dict]:
    feed = feedparser.parse(text)
    if feed.bozo and not feed.entries:
        exc = feed.get("bozo_exception")
        print(f"RSS_PARSE_EMPTY err={type(exc).__name__ if exc else 'unknown'}")
        return []

    items = []
    for entry in feed.entries[:max_items]:
        item = entry_to_item(entry)
        if not item["original_url"]:
            continue
        items.append(item)
    return items


def collect_from_rss(source: dict, max_items: int = 20) -> list[dict]:
    text, err = fetch_url(source["url"], FEED_HEADERS)
    if err:
        raise FetchError(describe_fetch_error(err))
    return parse_feed(text or "", max_items=max_items)
