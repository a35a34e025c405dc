import re
import time
from datetime import datetime, timedelta, timezone
from urllib.parse import urlparse

from bs4 import BeautifulSoup, FeatureNotFound

from backend.errors import FetchError
from .extract import HEADERS, absolute_url, describe_fetch_error, fetch_url, is_bot_challenge

DEFAULT_SELECTORS = {
    "article_selector": "article, .post, .news-item",
    "title_selector": "h1, h2, .title",
    "summary_selector": ".summary, .excerpt, p",
    "link_selector": "a",
    "image_selector": "img",
}

# wider defaults used when walking archive pages
ARCHIVE_SELECTORS = {
    "article_selector": "article, .post, .news-item, .entry, .story",
    "title_selector": "h1, h2, h3, .title, .headline, .entry-title",
    "summary_selector": "p, .summary, .excerpt, .description, .lead",
    "link_selector": "a",
    "image_selector": "img",
}

SITE_PRESETS = {
    "g1.globo.com": {
        "article_selector": ".feed-post, .post",
        "title_selector": ".feed-post-link, .post__title",
        "date_selector": ".feed-post-datetime, .post__date",
        "summary_selector": ".feed-post-body-resumo, .post__excerpt",
    },
    "folha.uol.com.br": {
        "article_selector": ".c-headline, .news-item",
        "title_selector": ".c-headline__title, .news-item__title",
        "date_selector": ".c-headline__dateline, .news-item__date",
    },
    "estadao.com.br": {
        "article_selector": ".card, .noticia",
        "title_selector": ".card__title, .titulo",
        "date_selector": ".card__date, .data",
    },
}

ARCHIVE_LINK_SELECTORS = [
    'a[href*="arquivo"]',
    'a[href*="archive"]',
    'a[href*="/202"]',
    'a[href*="historico"]',
]

MONTHS = {
    "janeiro": 1, "fevereiro": 2, "março": 3, "marco": 3, "abril": 4, "maio": 5,
    "junho": 6, "julho": 7, "agosto": 8, "setembro": 9, "outubro": 10,
    "novembro": 11, "dezembro": 12,
    "jan": 1, "fev": 2, "mar": 3, "abr": 4, "mai": 5, "jun": 6,
    "jul": 7, "ago": 8, "set": 9, "out": 10, "nov": 11, "dez": 12,
}

_DMY_RE = re.compile(r"(\d{1,2})[/-](\d{1,2})[/-](\d{2,4})")
_YMD_RE = re.compile(r"(\d{4})[/-](\d{1,2})[/-](\d{1,2})")
_TEXTUAL_RE = re.compile(r"(\d{1,2})\s+de\s+(\w+)\s+de\s+(\d{4})", re.IGNORECASE)

MAX_ITEMS_PER_ARCHIVE_PAGE = 50


def _soup(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except FeatureNotFound:
        return BeautifulSoup(html, "html.parser")


def resolve_config(source: dict, base: dict | None = None) -> dict:
    config = dict(base or DEFAULT_SELECTORS)
    for key, value in (source.get("scraping_config") or {}).items():
        if value not in (None, ""):
            config[key] = value
    return config


def parse_date(text: str | None) -> datetime | None:
    if not text:
        return None
    try:
        m = _YMD_RE.search(text)
        if m:
            y, mo, d = m.groups()
            return datetime(int(y), int(mo), int(d), tzinfo=timezone.utc)
        m = _DMY_RE.search(text)
        if m:
            d, mo, y = m.groups()
            year = int(f"20{y}") if len(y) == 2 else int(y)
            return datetime(year, int(mo), int(d), tzinfo=timezone.utc)
        m = _TEXTUAL_RE.search(text)
        if m:
            d, month_name, y = m.groups()
            month = MONTHS.get(month_name.lower())
            if month:
                return datetime(int(y), month, int(d), tzinfo=timezone.utc)
    except ValueError:
        return None
    return None


def _select_text(el, selector: str) -> str:
    found = el.select_one(selector)
    if found is None:
        return ""
    return " ".join(found.get_text(separator=" ").split())


def _select_attr(el, selector: str, attr: str) -> str | None:
    found = el.select_one(selector)
    if found is None:
        return None
    value = found.get(attr)
    if not value and attr == "src":
        value = found.get("data-src")
    return value or None


def scrape_items(
    html: str,
    base_url: str,
    config: dict,
    max_items: int = 20,
    summary_chars: int = 500,
) -> list[dict]:
    soup = _soup(html)
    items: list[dict] = []
    now = datetime.now(timezone.utc).isoformat()
    date_selector = config.get("date_selector")

    for el in soup.select(config["article_selector"]):
        if len(items) >= max_items:
            break
        title = _select_text(el, config["title_selector"])
        link = _select_attr(el, config["link_selector"], "href")
        if not link and el.name == "a":
            link = el.get("href")
        if not title or not link:
            continue

        full_url = absolute_url(base_url, link)
        image = absolute_url(base_url, _select_attr(el, config["image_selector"], "src"))
        summary = _select_text(el, config["summary_selector"])
        published = parse_date(_select_text(el, date_selector)) if date_selector else None

        items.append(
            {
                "title": title,
                "summary": summary[:summary_chars],
                "content": summary,
                "published_at": published.isoformat() if published else now,
                "original_url": full_url,
                "guid": full_url,
                "image_url": image,
                "author": None,
                "_dated": published is not None,
            }
        )
    return items


def fetch_page(url: str, headers: dict | None = None) -> str:
    html, err = fetch_url(url, headers or HEADERS)
    if err:
        raise FetchError(describe_fetch_error(err))
    if is_bot_challenge(html):
        raise FetchError("Site protected by a bot challenge (Cloudflare or similar); access blocked")
    return html or ""


def collect_from_page(source: dict, max_items: int = 20, summary_chars: int = 500) -> list[dict]:
    config = resolve_config(source)
    html = fetch_page(source["url"], config.get("headers"))
    items = scrape_items(html, source["url"], config, max_items, summary_chars)
    for item in items:
        item.pop("_dated", None)
    return items


def archive_urls(source: dict, config: dict, start: datetime, end: datetime) -> list[str]:
    base_url = source["url"].rstrip("/")
    pattern = config.get("archive_pattern")
    if pattern:
        urls = []
        day = start
        while day <= end:
            urls.append(
                pattern.replace("{yyyy}", f"{day.year:04d}")
                .replace("{mm}", f"{day.month:02d}")
                .replace("{dd}", f"{day.day:02d}")
            )
            day += timedelta(days=1)
        return urls

    urls: list[str] = []
    try:
        html = fetch_page(source["url"], config.get("headers"))
        soup = _soup(html)
        selectors = list(ARCHIVE_LINK_SELECTORS)
        if config.get("archive_selector"):
            selectors.append(config["archive_selector"])
        for selector in selectors:
            for a in soup.select(selector):
                href = absolute_url(source["url"], a.get("href"))
                if href:
                    urls.append(href)
    except FetchError as e:
        print(f"ARCHIVE_DISCOVERY_FAIL url={source['url']} err={e}")

    if not urls:
        urls.append(source["url"])
        for page in range(2, 6):
            urls.append(f"{base_url}/page/{page}")
            urls.append(f"{base_url}?page={page}")

    return list(dict.fromkeys(urls))


def scrape_by_period(
    source: dict,
    start: datetime,
    end: datetime,
    limit: int = 100,
    delay_sec: float | None = None,
) -> list[dict]:
    host = (urlparse(source["url"]).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    base = dict(ARCHIVE_SELECTORS)
    base.update(SITE_PRESETS.get(host, {}))
    config = resolve_config(source, base)
    max_pages = int(config.get("max_pages") or 5)
    if delay_sec is None:
        delay_sec = float(config.get("delay_ms") or 1000) / 1000.0

    collected: list[dict] = []
    seen: set[str] = set()
    for url in archive_urls(source, config, start, end)[:max_pages]:
        if len(collected) >= limit:
            break
        try:
            html = fetch_page(url, config.get("headers"))
        except FetchError as e:
            print(f"ARCHIVE_PAGE_FAIL url={url} err={e}")
            continue

        for item in scrape_items(html, url, config, MAX_ITEMS_PER_ARCHIVE_PAGE):
            dated = item.pop("_dated", False)
            if dated:
                published = datetime.fromisoformat(item["published_at"])
                if published < start or published > end:
                    continue
            if item["original_url"] in seen:
                continue
            seen.add(item["original_url"])
            collected.append(item)

        if delay_sec > 0:
            time.sleep(delay_sec)

    return collected[:limit]
