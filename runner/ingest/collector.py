from datetime import datetime, timedelta, timezone

from backend.config import Settings
from backend.db import Repositories
from backend.errors import NotFound, ValidationFailed
from runner.process.store import save_news_item
from .page_ingest import collect_from_page, scrape_by_period
from .rss_ingest import collect_from_rss

RSS_TYPES = {"rss"}
SCRAPE_TYPES = {"scraping", "html"}
SOURCE_TYPES = RSS_TYPES | SCRAPE_TYPES

TIMEFRAME_HOURS = {"24h": 24, "7d": 168, "30d": 720}


def _source_kind(source: dict) -> str:
    return (source.get("type") or "").strip().lower()


def _parse_ts(val) -> datetime | None:
    if not val:
        return None
    if isinstance(val, datetime):
        return val if val.tzinfo else val.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(val).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def next_fetch_at(source: dict, settings: Settings) -> datetime | None:
    last = _parse_ts(source.get("last_fetch"))
    if last is None:
        return None
    interval = int(source.get("fetch_frequency") or settings.default_fetch_frequency)
    return last + timedelta(seconds=interval)


def collect_items(source: dict, settings: Settings) -> list[dict]:
    kind = _source_kind(source)
    if kind in RSS_TYPES:
        return collect_from_rss(source, max_items=settings.collect_max_items)
    if kind in SCRAPE_TYPES:
        return collect_from_page(
            source,
            max_items=settings.collect_max_items,
            summary_chars=settings.scrape_summary_chars,
        )
    raise ValidationFailed(f"Unsupported source type: {source.get('type')}")


def persist_items(repos: Repositories, items: list[dict], source_id) -> dict:
    saved = 0
    duplicates = 0
    errors = 0
    for item in items:
        try:
            if save_news_item(repos, item, source_id):
                saved += 1
            else:
                duplicates += 1
        except Exception as e:
            errors += 1
            print(
                f"COLLECT_SAVE_FAIL source_id={source_id} url={item.get('original_url')} "
                f"err={type(e).__name__}: {str(e)[:200]}"
            )
    return {"saved": saved, "duplicates": duplicates, "errors": errors}


def collect_from_source(
    repos: Repositories,
    source_id,
    settings: Settings,
    force_refresh: bool = False,
    source: dict | None = None,
) -> dict:
    source = source or repos.sources.get(source_id)
    if not source:
        raise NotFound("Source not found")

    if not force_refresh:
        due = next_fetch_at(source, settings)
        if due is not None and datetime.now(timezone.utc) < due:
            return {
                "success": True,
                "data": {
                    "collected": 0,
                    "skipped": True,
                    "message": "Source fetched recently",
                    "next_fetch": due.isoformat(),
                },
            }

    try:
        items = collect_items(source, settings)
    except Exception as e:
        print(
            f"COLLECT_SOURCE_FAIL source={source.get('name')} id={source.get('id')} "
            f"err={type(e).__name__}: {str(e)[:200]}"
        )
        return {"success": False, "error": str(e) or type(e).__name__}

    counts = persist_items(repos, items, source["id"])
    repos.sources.mark_fetched(source["id"])
    print(
        f"COLLECT_SOURCE_OK source={source.get('name')} found={len(items)} "
        f"saved={counts['saved']} duplicates={counts['duplicates']} errors={counts['errors']}"
    )
    return {
        "success": True,
        "data": {
            "collected": counts["saved"],
            "total_found": len(items),
            "duplicates_skipped": counts["duplicates"],
            "errors": counts["errors"],
        },
    }


def collect_from_all_sources(
    repos: Repositories, settings: Settings, force_refresh: bool = False
) -> dict:
    # virtual sources (historical, google news) have no feed of their own
    sources = [s for s in repos.sources.list(active=True) if _source_kind(s) in SOURCE_TYPES]
    results = []
    total_collected = 0
    total_errors = 0

    for source in sources:
        try:
            result = collect_from_source(
                repos, source["id"], settings, force_refresh, source=source
            )
        except Exception as e:
            print(f"COLLECT_SOURCE_FAIL source={source.get('name')} err={type(e).__name__}: {e}")
            result = {"success": False, "error": str(e) or type(e).__name__}

        if result.get("success"):
            results.append({"source": source.get("name"), **result["data"]})
            total_collected += result["data"].get("collected", 0)
        else:
            results.append({"source": source.get("name"), "error": result.get("error")})
            total_errors += 1

    return {
        "success": total_errors == 0,
        "data": {
            "total_sources": len(sources),
            "total_collected": total_collected,
            "total_errors": total_errors,
            "results": results,
        },
    }


def collect_by_period(
    repos: Repositories,
    start: datetime,
    end: datetime,
    source_ids: list | None = None,
    limit_per_source: int = 100,
) -> dict:
    sources = [
        s
        for s in repos.sources.list(active=True, ids=source_ids or None)
        if _source_kind(s) in SCRAPE_TYPES
    ]
    summary = []
    grand_total = 0

    for source in sources:
        try:
            items = scrape_by_period(source, start, end, limit=limit_per_source)
            counts = persist_items(repos, items, source["id"])
            grand_total += counts["saved"]
            summary.append(
                {"source": source.get("name"), "inserted": counts["saved"], "checked": len(items)}
            )
        except Exception as e:
            print(f"PERIOD_COLLECT_FAIL source={source.get('name')} err={type(e).__name__}: {e}")
            summary.append(
                {
                    "source": source.get("name"),
                    "inserted": 0,
                    "checked": 0,
                    "error": str(e) or type(e).__name__,
                }
            )

    return {"success": True, "data": {"total_inserted": grand_total, "sources": summary}}


def collection_stats(repos: Repositories, timeframe: str = "24h") -> dict:
    hours = TIMEFRAME_HOURS.get(timeframe, 24)
    since = (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat()

    sources = repos.sources.list(active=True)
    total_news = repos.items.count(since=since)
    by_status: dict[str, int] = {}
    for row in repos.curation.statuses_since(since):
        status = row.get("status")
        by_status[status] = by_status.get(status, 0) + 1

    return {
        "sources": {
            "total": len(sources),
            "active": len([s for s in sources if s.get("is_active")]),
            "list": [
                {k: s.get(k) for k in ("id", "name", "url", "is_active", "last_fetch")}
                for s in sources
            ],
        },
        "collection": {
            "timeframe": timeframe,
            "total_collected": total_news,
            "pending_curation": by_status.get("pending", 0),
            "approved": by_status.get("approved", 0),
            "rejected": by_status.get("rejected", 0),
            "editing": by_status.get("editing", 0),
            "published": by_status.get("published", 0),
        },
    }
