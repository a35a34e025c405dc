import argparse
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[1]
sys.path.append(str(BASE_DIR))

from backend.db import get_client

load_dotenv()

SEED_PATH = BASE_DIR / "scripts" / "seed_data.json"


def load_json(path: Path):
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def normalize_source_type(raw: str | None, src: dict) -> str:
    if not raw:
        url = src.get("url") or ""
        return "rss" if url.endswith((".xml", "/feed", "/rss")) else "scraping"

    x = raw.strip().lower()

    if x in {"rss", "feed", "atom"}:
        return "rss"

    if x in {"scraping", "html", "web", "site", "page"}:
        return "scraping"

    return "scraping"


def normalize_source(item: dict, default_frequency: int) -> dict | None:
    url = (item.get("url") or "").strip()
    if not item.get("name") or not url:
        return None
    return {
        "name": item["name"].strip(),
        "url": url,
        "type": normalize_source_type(item.get("type"), item),
        "description": item.get("description"),
        "fetch_frequency": int(item.get("fetch_frequency") or default_frequency),
        "scraping_config": item.get("scraping_config") or {},
        "is_active": bool(item.get("is_active", True)),
    }


def normalize_category(item: dict) -> dict | None:
    if not item.get("name"):
        return None
    return {
        "name": item["name"].strip(),
        "description": item.get("description"),
        "color": item.get("color"),
        "is_active": bool(item.get("is_active", True)),
    }


def chunked(rows: list[dict], size: int = 100):
    for i in range(0, len(rows), size):
        yield rows[i : i + size]


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--file", help="Path to a JSON file with 'sources' and 'categories'")
    parser.add_argument("--default-frequency", type=int, default=3600)
    args = parser.parse_args()

    path = Path(args.file) if args.file else SEED_PATH
    if not path.exists():
        print(f"Seed file not found: {path}")
        return 1
    seed = load_json(path)

    sources = [normalize_source(s, args.default_frequency) for s in seed.get("sources", [])]
    categories = [normalize_category(c) for c in seed.get("categories", [])]
    sources = [s for s in sources if s]
    categories = [c for c in categories if c]

    if not sources and not categories:
        print("Nothing to seed.")
        return 0

    sb = get_client()
    for batch in chunked(sources, size=100):
        sb.table("news_sources").upsert(batch, on_conflict="url").execute()
    for batch in chunked(categories, size=100):
        sb.table("categories").upsert(batch, on_conflict="name").execute()

    print(f"Seeded/updated {len(sources)} sources and {len(categories)} categories.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
