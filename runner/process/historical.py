from datetime import datetime, timezone

from backend.config import Settings
from backend.db import Repositories, utcnow_iso
from backend.errors import ValidationFailed

PROCESSING_FILTERS = {"any", "processed", "unprocessed"}
REPROCESS_TYPES = {"reclassify", "improve", "redistribute"}


def rolling_hash(text: str) -> str:
    """31-multiplier 32-bit string hash over UTF-16 code units, hex of |h|."""
    h = 0
    data = (text or "").encode("utf-16-le")
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(abs(h), "x")


def _parse_date(value, name: str) -> str:
    if not value:
        raise ValidationFailed("startDate and endDate are required")
    try:
        datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationFailed(f"{name} is not an ISO date: {value}")
    return str(value)


def _months_ago(months: int) -> datetime:
    now = datetime.now(timezone.utc)
    year, month = now.year, now.month - months
    while month <= 0:
        month += 12
        year -= 1
    day = min(now.day, 28)
    return now.replace(year=year, month=month, day=day)


def get_or_create_historical_source(repos: Repositories, settings: Settings):
    existing = repos.sources.find_by_name(settings.historical_source_name)
    if existing:
        return existing["id"]
    created = repos.sources.create(
        {
            "name": settings.historical_source_name,
            "url": settings.site_url,
            "type": "api",
            "description": "Virtual source for reprocessing the portal's own published articles",
            "is_active": False,
            "fetch_frequency": 86400,
        }
    )
    print(f"HISTORICAL_SOURCE_CREATED id={created['id']}")
    return created["id"]


def reprocess_articles(
    repos: Repositories,
    settings: Settings,
    start_date,
    end_date,
    category_id=None,
    status: str = "published",
    limit: int = 50,
    reprocess_type: str = "reclassify",
) -> dict:
    start = _parse_date(start_date, "startDate")
    end = _parse_date(end_date, "endDate")
    if reprocess_type not in REPROCESS_TYPES:
        raise ValidationFailed(f"Unknown reprocessType: {reprocess_type}")

    articles = repos.articles.list_published_between(
        start, end, category_id=category_id, status=status, limit=limit
    )
    if not articles:
        return {
            "success": True,
            "data": {"processed": 0, "message": "No articles found in the given period"},
        }

    categories = {
        c["id"]: c for c in repos.categories.get_many([a.get("category_id") for a in articles])
    }
    source_id = get_or_create_historical_source(repos, settings)

    results = []
    success_count = 0
    error_count = 0
    for article in articles:
        category_name = (categories.get(article.get("category_id")) or {}).get("name")
        entry = {"article_id": article["id"], "title": article.get("title")}
        try:
            candidate = repos.items.insert_if_absent(
                {
                    "source_id": source_id,
                    "original_url": f"{settings.site_url}/artigo/{article.get('slug')}",
                    "title": article.get("title"),
                    "summary": article.get("summary") or "",
                    "content": article.get("content") or "",
                    "author": "System",
                    "published_at": article.get("published_at") or article.get("created_at"),
                    "image_url": article.get("featured_image"),
                    "tags": [],
                    "raw_data": {
                        "original_article_id": article["id"],
                        "reprocess_type": reprocess_type,
                        "original_category": category_name,
                    },
                    "content_hash": rolling_hash(
                        (article.get("title") or "") + (article.get("content") or "")
                    ),
                }
            )
            if candidate is None:
                error_count += 1
                results.append({**entry, "success": False, "error": "Article already queued for reprocessing"})
                continue

            repos.curation.create(
                {
                    "scraped_news_id": candidate["id"],
                    "status": "pending",
                    "suggested_category_id": article.get("category_id"),
                    "ai_confidence": None,
                    "ai_category_reasoning": (
                        f"Historical article reprocessed. Original category: {category_name}"
                    ),
                    "curator_notes": (
                        f"Historical reprocessing - type: {reprocess_type}, "
                        f"period: {start} to {end}"
                    ),
                }
            )
            success_count += 1
            results.append({**entry, "success": True, "scraped_news_id": candidate["id"]})
        except Exception as e:
            error_count += 1
            print(f"HISTORICAL_ARTICLE_FAIL article_id={article['id']} err={type(e).__name__}: {str(e)[:200]}")
            results.append({**entry, "success": False, "error": str(e) or type(e).__name__})

    print(f"HISTORICAL_ARTICLES found={len(articles)} processed={success_count} errors={error_count}")
    return {
        "success": error_count == 0,
        "data": {
            "total_found": len(articles),
            "processed": success_count,
            "errors": error_count,
            "period": {"startDate": start, "endDate": end},
            "reprocess_type": reprocess_type,
            "results": results[: settings.historical_article_results],
        },
    }


def _sources_summary(news: list[dict], source_names: dict) -> list[dict]:
    counts: dict[str, int] = {}
    for item in news:
        name = source_names.get(item.get("source_id")) or "Unknown source"
        counts[name] = counts.get(name, 0) + 1
    return sorted(
        ({"name": name, "count": count} for name, count in counts.items()),
        key=lambda x: x["count"],
        reverse=True,
    )


def reprocess_source_items(
    repos: Repositories,
    settings: Settings,
    start_date,
    end_date,
    source_ids: list | None = None,
    status: str = "any",
    limit: int = 50,
    reprocess_type: str = "reclassify",
) -> dict:
    start = _parse_date(start_date, "startDate")
    end = _parse_date(end_date, "endDate")
    if status not in PROCESSING_FILTERS:
        raise ValidationFailed("status must be any, processed or unprocessed")
    if reprocess_type not in REPROCESS_TYPES:
        raise ValidationFailed(f"Unknown reprocessType: {reprocess_type}")

    news = repos.items.list_created_between(start, end, source_ids=source_ids, limit=limit)
    if not news:
        return {
            "success": True,
            "data": {"processed": 0, "message": "No news found in the given period"},
        }

    curations = repos.curation.list_for_candidates([n["id"] for n in news])
    by_item = {c.get("scraped_news_id"): c for c in curations}
    if status == "processed":
        filtered = [n for n in news if n["id"] in by_item]
    elif status == "unprocessed":
        filtered = [n for n in news if n["id"] not in by_item]
    else:
        filtered = news

    if not filtered:
        label = "processed" if status == "processed" else "unprocessed"
        return {
            "success": True,
            "data": {"processed": 0, "message": f"No {label} news found in the given period"},
        }

    source_rows = repos.sources.list(ids=list({n.get("source_id") for n in filtered}))
    source_names = {s["id"]: s.get("name") for s in source_rows}

    results = []
    success_count = 0
    error_count = 0
    for item in filtered:
        source_name = source_names.get(item.get("source_id"))
        entry = {"news_id": item["id"], "title": item.get("title")}
        existing = by_item.get(item["id"])
        if existing and status != "processed":
            results.append({**entry, "success": False, "error": "Already processed", "skipped": True})
            continue
        if existing and existing.get("status") != "pending":
            results.append(
                {
                    **entry,
                    "success": False,
                    "error": f"Curation is {existing.get('status')}; only pending items are reprocessed",
                    "skipped": True,
                }
            )
            continue

        notes = (
            f"Historical collection - source: {source_name}, type: {reprocess_type}, "
            f"period: {start} to {end}"
        )
        fields = {
            "status": "pending",
            "suggested_category_id": None,
            "ai_confidence": None,
            "ai_category_reasoning": f"Historical reprocessing of external source: {source_name}",
        }
        try:
            if existing:
                updated = repos.curation.update(
                    existing["id"],
                    {**fields, "curator_notes": notes + " (Reprocessed)", "updated_at": utcnow_iso()},
                    expected_status="pending",
                )
                if updated is None:
                    raise RuntimeError("curation record changed concurrently")
                action = "updated"
            else:
                repos.curation.create({"scraped_news_id": item["id"], **fields, "curator_notes": notes})
                action = "created"
            success_count += 1
            results.append({**entry, "source": source_name, "success": True, "action": action})
        except Exception as e:
            error_count += 1
            print(f"HISTORICAL_SOURCE_ITEM_FAIL news_id={item['id']} err={type(e).__name__}: {str(e)[:200]}")
            results.append({**entry, "success": False, "error": str(e) or type(e).__name__})

    print(
        f"HISTORICAL_SOURCES found={len(news)} filtered={len(filtered)} "
        f"processed={success_count} errors={error_count}"
    )
    return {
        "success": error_count == 0,
        "data": {
            "total_found": len(news),
            "total_filtered": len(filtered),
            "processed": success_count,
            "errors": error_count,
            "period": {"startDate": start, "endDate": end},
            "reprocess_type": reprocess_type,
            "filter_status": status,
            "sources_summary": _sources_summary(filtered, source_names),
            "results": results[: settings.historical_source_results],
        },
    }


def article_stats(repos: Repositories, months: int = 12) -> dict:
    start = _months_ago(months)
    end = datetime.now(timezone.utc)
    articles = repos.articles.list_published_since(start.isoformat())

    by_month: dict[str, int] = {}
    by_category: dict = {}
    for article in articles:
        month = str(article.get("published_at") or "")[:7]
        if month:
            by_month[month] = by_month.get(month, 0) + 1
        cid = article.get("category_id")
        by_category[cid] = by_category.get(cid, 0) + 1

    names = {c["id"]: c.get("name") for c in repos.categories.get_many(list(by_category))}
    return {
        "period": {"months": months, "start_date": start.isoformat(), "end_date": end.isoformat()},
        "articles_by_month": [{"month": m, "count": c} for m, c in sorted(by_month.items())],
        "total_articles": len(articles),
        "available_categories": [
            {"category_id": cid, "name": names.get(cid), "count": count}
            for cid, count in by_category.items()
        ],
    }


def source_stats(repos: Repositories, months: int = 6) -> dict:
    start = _months_ago(months)
    since = start.isoformat()
    sources = repos.sources.list(active=True)
    news = repos.items.list_since(since)
    curations = repos.curation.statuses_since(since)

    curated_ids = {c.get("scraped_news_id") for c in curations}
    source_rows = []
    for source in sources:
        source_news = [n for n in news if n.get("source_id") == source["id"]]
        processed = len([n for n in source_news if n["id"] in curated_ids])
        source_rows.append(
            {
                **source,
                "total_news": len(source_news),
                "processed_news": processed,
                "unprocessed_news": len(source_news) - processed,
                "last_news": max((n.get("created_at") or "" for n in source_news), default=None),
            }
        )

    by_month: dict[str, int] = {}
    for item in news:
        month = str(item.get("created_at") or "")[:7]
        if month:
            by_month[month] = by_month.get(month, 0) + 1

    total = len(news)
    processed_total = len(curations)
    return {
        "period": {
            "months": months,
            "start_date": since,
            "end_date": datetime.now(timezone.utc).isoformat(),
        },
        "summary": {
            "total_sources": len(sources),
            "total_news": total,
            "processed_news": processed_total,
            "unprocessed_news": max(0, total - processed_total),
            "processing_rate": round(processed_total / total * 100) if total else 0,
        },
        "sources": source_rows,
        "news_by_month": [{"month": m, "count": c} for m, c in sorted(by_month.items())],
    }
