import re
import time
from typing import Optional
from urllib.parse import urljoin

import requests
from urllib3.util.retry import Retry
from requests.adapters import HTTPAdapter
from bs4 import BeautifulSoup

from backend.config import get_bool, get_float


HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": (
        "text/html,application/xhtml+xml,application/xml;q=0.9,"
        "image/avif,image/webp,image/apng,*/*;q=0.8"
    ),
    "Accept-Language": "pt-BR,pt;q=0.9,en;q=0.8",
    "Accept-Encoding": "gzip, deflate",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Sec-Ch-Ua": '"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"',
    "Sec-Ch-Ua-Mobile": "?0",
    "Sec-Ch-Ua-Platform": '"Windows"',
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Upgrade-Insecure-Requests": "1",
}

FEED_HEADERS = {
    "User-Agent": HEADERS["User-Agent"],
    "Accept": "application/rss+xml, application/atom+xml, application/xml, text/xml, text/html",
    "Accept-Language": HEADERS["Accept-Language"],
    "Accept-Encoding": "gzip, deflate",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}

DEFAULT_CONNECT_TIMEOUT = get_float("FETCH_CONNECT_TIMEOUT", 10.0)
DEFAULT_READ_TIMEOUT = get_float("FETCH_READ_TIMEOUT", 20.0)
FETCH_LOG = get_bool("FETCH_LOG")

_session = None


def _get_session() -> requests.Session:
    global _session
    if _session is not None:
        return _session

    session = requests.Session()
    # no retries: a failed source is reported and the run moves on
    retries = Retry(total=0, allowed_methods=["GET", "HEAD"])
    adapter = HTTPAdapter(max_retries=retries)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    _session = session
    return _session


def fetch_url(url: str, headers: dict) -> tuple[Optional[str], Optional[str]]:
    """GET a page. Returns (text, None) on success or (None, error_code)."""
    try:
        start_ts = time.monotonic()
        response = _get_session().get(
            url,
            timeout=(DEFAULT_CONNECT_TIMEOUT, DEFAULT_READ_TIMEOUT),
            headers=dict(headers or {}),
        )
        elapsed_ms = int((time.monotonic() - start_ts) * 1000)
        if FETCH_LOG:
            print(
                f"GET {url} status={response.status_code} "
                f"content-type={response.headers.get('content-type')} "
                f"bytes={len(response.content)} elapsed={elapsed_ms}ms"
            )
        if response.status_code in (401, 403, 429):
            return None, f"blocked:{response.status_code}"
        if response.status_code >= 400:
            return None, f"request_error:HTTP{response.status_code}"
        return response.text, None
    except requests.exceptions.Timeout:
        if FETCH_LOG:
            print(f"GET {url} status=timeout")
        return None, "request_error:timeout"
    except requests.exceptions.RequestException as e:
        if FETCH_LOG:
            print(f"GET {url} status=error err={type(e).__name__}")
        return None, f"request_error:{type(e).__name__}"


def describe_fetch_error(err: str) -> str:
    if err.startswith("blocked:"):
        code = err.split(":", 1)[1]
        return f"HTTP {code}: site refused the request (possibly protected by Cloudflare or similar)"
    if err == "request_error:timeout":
        return "Request timed out"
    if err.startswith("request_error:HTTP"):
        return f"HTTP {err.split('HTTP', 1)[1]}: unexpected response"
    return f"Request failed ({err.split(':', 1)[-1]})"


_CHALLENGE_MARKERS = (
    "cf-chl-",
    "cf-mitigated",
    "challenge-platform",
    "checking your browser",
    "attention required! | cloudflare",
    "<title>just a moment...</title>",
)


def is_bot_challenge(html: str | None) -> bool:
    if not html:
        return False
    lower = html.lower()
    return any(marker in lower for marker in _CHALLENGE_MARKERS)


def html_to_text(html: str | None) -> str:
    if not html:
        return ""
    if "<" not in html:
        return re.sub(r"\s+", " ", html).strip()
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    text = soup.get_text(separator=" ")
    return re.sub(r"\s+", " ", text).strip()


def first_image_src(html: str | None) -> str | None:
    if not html or "<img" not in html.lower():
        return None
    soup = BeautifulSoup(html, "html.parser")
    img = soup.find("img")
    if img is None:
        return None
    src = (img.get("src") or "").strip()
    return src or None


def absolute_url(base: str, href: str | None) -> str | None:
    href = (href or "").strip()
    if not href:
        return None
    if href.startswith("http://") or href.startswith("https://"):
        return href
    if href.startswith("//"):
        return "https:" + href
    return urljoin(base, href)
