from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, quote_plus, urlparse

from backend.db import Repositories
from backend.errors import FetchError, ValidationFailed
from runner.process.store import save_news_item
from .extract import FEED_HEADERS, describe_fetch_error, fetch_url
from .rss_ingest import parse_feed

GOOGLE_NEWS_RSS = "https://news.google.com/rss"
GOOGLE_NEWS_SOURCE = "Google News"

# the feed never returns more than this per request
FEED_MAX_ITEMS = 100

TOPICS = {
    "business": "BUSINESS",
    "entertainment": "ENTERTAINMENT",
    "health": "HEALTH",
    "science": "SCIENCE",
    "sports": "SPORTS",
    "technology": "TECHNOLOGY",
}
TOPIC_ALIASES = {
    "economia": "business",
    "entretenimento": "entertainment",
    "saude": "health",
    "ciencia": "science",
    "esportes": "sports",
    "tecnologia": "technology",
}
TIME_RANGES = {"today": "1d", "week": "7d", "month": "30d"}

TAG_KEYWORDS = (
    "política",
    "economia",
    "esporte",
    "futebol",
    "saúde",
    "tecnologia",
    "educação",
    "covid",
    "vacina",
    "eleição",
    "governo",
    "brasil",
    "são paulo",
    "rio de janeiro",
    "presidente",
    "ministro",
    "congresso",
)


def resolve_topic(category: str | None) -> str | None:
    if not category:
        return None
    key = category.strip().lower()
    key = TOPIC_ALIASES.get(key, key)
    if key not in TOPICS:
        raise ValidationFailed(f"Unknown Google News category: {category}")
    return TOPICS[key]


def build_google_news_url(
    query: str,
    language: str = "pt-BR",
    country: str = "BR",
    category: str | None = None,
    time_range: str | None = "today",
) -> str:
    locale = f"hl={language}&gl={country}&ceid={country}:{language}"
    topic = resolve_topic(category)
    if topic:
        return f"{GOOGLE_NEWS_RSS}/headlines/section/topic/{topic}?{locale}"

    if time_range and time_range not in TIME_RANGES:
        raise ValidationFailed(f"Unknown time range: {time_range}")
    terms = (query or "").strip()
    if not terms:
        raise ValidationFailed("query is required")
    if time_range:
        terms = f"{terms} when:{TIME_RANGES[time_range]}"
    return f"{GOOGLE_NEWS_RSS}/search?q={quote_plus(terms)}&{locale}"


def split_source(title: str) -> tuple[str, str | None]:
    """Google titles read "Headline - Outlet"; returns (headline, outlet)."""
    title = (title or "").strip()
    if " - " not in title:
        return title, None
    headline, outlet = title.rsplit(" - ", 1)
    outlet = outlet.strip()
    if not headline.strip() or not outlet:
        return title, None
    return headline.strip(), outlet


def unwrap_link(link: str) -> str:
    parsed = urlparse(link or "")
    if parsed.netloc.endswith("news.google.com"):
        target = parse_qs(parsed.query).get("url")
        if target and target[0]:
            return target[0]
    return link


def extract_tags(title: str, summary: str | None = None) -> list[str]:
    text = f"{title or ''} {summary or ''}".lower()
    return [kw for kw in TAG_KEYWORDS if kw in text]


def get_or_create_google_news_source(repos: Repositories):
    existing = repos.sources.find_by_name(GOOGLE_NEWS_SOURCE)
    if existing:
        return existing["id"]
    # inactive: searches go through collect_google_news, not the batch loop
    created = repos.sources.create(
        {
            "name": GOOGLE_NEWS_SOURCE,
            "url": "https://news.google.com",
            "type": "rss",
            "description": "Google News search results",
            "is_active": False,
            "fetch_frequency": 3600,
        }
    )
    print(f"GOOGLE_NEWS_SOURCE_CREATED id={created['id']}")
    return created["id"]


def to_news_item(item: dict, query: str, category: str | None) -> dict:
    headline, outlet = split_source(item.get("title") or "")
    outlet = outlet or item.get("author") or GOOGLE_NEWS_SOURCE
    summary = item.get("summary") or ""
    return {
        **item,
        "title": headline,
        "original_url": unwrap_link(item.get("original_url") or ""),
        "author": outlet,
        "content": summary or item.get("content"),
        "tags": extract_tags(headline, summary),
        "raw_data": {
            "google_news": True,
            "query": query,
            "category": category,
            "original_source": outlet,
        },
    }


def collect_google_news(
    repos: Repositories,
    query: str = "Brasil",
    language: str = "pt-BR",
    country: str = "BR",
    category: str | None = None,
    time_range: str | None = "today",
    limit: int = 20,
) -> dict:
    url = build_google_news_url(query, language, country, category, time_range)
    print(f"GOOGLE_NEWS_FETCH url={url}")
    text, err = fetch_url(url, FEED_HEADERS)
    if err:
        raise FetchError(describe_fetch_error(err))

    found = parse_feed(text or "", max_items=FEED_MAX_ITEMS)
    if not found:
        return {
            "success": True,
            "data": {"collected": 0, "message": "No news found for the given criteria"},
        }

    source_id = get_or_create_google_news_source(repos)
    collected = 0
    duplicates = 0
    errors = 0
    results = []
    for raw in found[: max(limit, 0)]:
        item = to_news_item(raw, query, category)
        try:
            if save_news_item(repos, item, source_id):
                collected += 1
                status = "collected"
            else:
                duplicates += 1
                status = "duplicate"
            results.append({"title": item["title"], "source": item["author"], "status": status})
        except Exception as e:
            errors += 1
            print(
                f"GOOGLE_NEWS_SAVE_FAIL url={item.get('original_url')} "
                f"err={type(e).__name__}: {str(e)[:200]}"
            )
            results.append({"title": item["title"], "status": "error", "error": str(e)})

    repos.sources.mark_fetched(source_id)
    print(
        f"GOOGLE_NEWS_OK query={query!r} found={len(found)} saved={collected} "
        f"duplicates={duplicates} errors={errors}"
    )
    return {
        "success": True,
        "data": {
            "query": query,
            "category": category,
            "time_range": time_range,
            "total_found": len(found),
            "total_processed": min(len(found), max(limit, 0)),
            "collected": collected,
            "duplicates": duplicates,
            "errors": errors,
            "source_id": source_id,
            "results": results[:10],
        },
    }


def google_news_stats(repos: Repositories, days: int = 7) -> dict:
    source = repos.sources.find_by_name(GOOGLE_NEWS_SOURCE)
    end = datetime.now(timezone.utc)
    start = end - timedelta(days=days)
    period = {"days": days, "start_date": start.isoformat(), "end_date": end.isoformat()}
    categories = sorted(TOPICS)
    if not source:
        return {
            "configured": False,
            "source": None,
            "period": period,
            "stats": {"total": 0, "by_day": {}},
            "available_categories": categories,
        }

    news = repos.items.list_since(start.isoformat(), source_id=source["id"])
    by_day: dict[str, int] = {}
    for item in news:
        day = str(item.get("created_at") or "")[:10]
        if day:
            by_day[day] = by_day.get(day, 0) + 1

    return {
        "configured": True,
        "source": {k: source.get(k) for k in ("id", "name", "last_fetch")},
        "period": period,
        "stats": {"total": len(news), "by_day": by_day},
        "available_categories": categories,
    }
