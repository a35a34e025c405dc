from backend.db import Repositories

ITEM_COLUMNS = (
    "title",
    "summary",
    "content",
    "original_url",
    "guid",
    "image_url",
    "author",
    "published_at",
    "raw_data",
    "content_hash",
    "tags",
)


def save_news_item(repos: Repositories, item: dict, source_id) -> bool:
    """
    Inserts into 'scraped_news'. Returns True if inserted, False if skipped (duplicate).
    Requires the (source_id, original_url) unique constraint in DB.
    """
    url = (item.get("original_url") or "").strip()
    if not url:
        raise ValueError("News item missing original_url")

    if repos.items.exists(source_id, url):
        return False

    row = {k: item.get(k) for k in ITEM_COLUMNS if item.get(k) is not None}
    row["original_url"] = url
    row["source_id"] = source_id

    # a concurrent run may have inserted the same url since the check above
    return repos.items.insert_if_absent(row) is not None
