import math
import re
import time
import unicodedata

from backend.config import Settings
from backend.db import CURATION_STATUSES, Repositories, utcnow_iso
from backend.errors import (
    InvalidTransition,
    NotFound,
    PersistenceFailed,
    Unauthorized,
    ValidationFailed,
)
from backend.ollama import clean_text

WORDS_PER_MINUTE = 200

TRANSITIONS = {
    "pending": {"approved", "rejected", "editing"},
    "editing": {"editing", "approved", "published"},
    "approved": {"published"},
    "rejected": set(),
    "published": set(),
}


def generate_slug(title: str) -> str:
    text = unicodedata.normalize("NFD", (title or "").lower())
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    # unicode whitespace (nbsp, thin space) separates words too
    text = re.sub(r"\s+", " ", text)
    text = re.sub(r"[^\w\s-]", "", text, flags=re.ASCII)
    text = re.sub(r"\s+", "-", text)
    text = re.sub(r"-+", "-", text)
    return text.strip("-")


def unique_slug(repos: Repositories, title: str, now_ms: int | None = None) -> str:
    base = generate_slug(title) or "article"
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    slug = f"{base}-{stamp}"
    while repos.articles.slug_exists(slug):
        stamp += 1
        slug = f"{base}-{stamp}"
    return slug


def reading_time(text: str | None) -> int:
    words = len(clean_text(text).split())
    return max(1, math.ceil(words / WORDS_PER_MINUTE))


def resolve_actor(repos: Repositories, settings: Settings):
    if settings.admin_user_id:
        return settings.admin_user_id
    user_id = repos.users.first_admin_id()
    if not user_id:
        raise Unauthorized("No curator user available")
    return user_id


def can_transition(current: str | None, target: str) -> bool:
    return target in TRANSITIONS.get(current or "", set())


def _require(repos: Repositories, curation_id) -> dict:
    record = repos.curation.get(curation_id)
    if not record:
        raise NotFound("Curation record not found")
    return record


def _check_transition(record: dict, target: str) -> None:
    current = record.get("status")
    if not can_transition(current, target):
        raise InvalidTransition(
            current, target, f"Cannot move a {current} item to {target}"
        )


def _write(repos: Repositories, record: dict, fields: dict) -> dict:
    updated = repos.curation.update(record["id"], fields, expected_status=record.get("status"))
    if updated is None:
        raise InvalidTransition(
            record.get("status"),
            fields.get("status", record.get("status")),
            "Curation record changed concurrently; reload and retry",
        )
    return updated


def _overrides(data: dict) -> dict:
    fields = {}
    for key in ("title", "summary", "content"):
        if data.get(key) is not None:
            fields[f"curated_{key}"] = data[key]
    return fields


def approve(repos: Repositories, record: dict, user_id, data: dict) -> dict:
    _check_transition(record, "approved")
    fields = {
        "status": "approved",
        "curator_id": user_id,
        "approved_at": utcnow_iso(),
        "curator_notes": data.get("notes") or record.get("curator_notes"),
    }
    if data.get("categoryId"):
        fields["manual_category_id"] = data["categoryId"]
    updated = _write(repos, record, fields)
    repos.audit.record(
        record["id"], user_id, "approved",
        {"notes": data.get("notes"), "categoryId": data.get("categoryId")},
    )
    return {"message": "News item approved", "curation": updated}


def reject(repos: Repositories, record: dict, user_id, data: dict) -> dict:
    _check_transition(record, "rejected")
    reason = data.get("reason") or "Rejected by curator"
    updated = _write(
        repos,
        record,
        {"status": "rejected", "curator_id": user_id, "curator_notes": reason},
    )
    repos.audit.record(record["id"], user_id, "rejected", {"reason": reason})
    return {"message": "News item rejected", "curation": updated}


def edit(repos: Repositories, record: dict, user_id, data: dict) -> dict:
    _check_transition(record, "editing")
    fields = {"status": "editing", "curator_id": user_id, **_overrides(data)}
    if data.get("categoryId"):
        fields["manual_category_id"] = data["categoryId"]
    if data.get("notes") is not None:
        fields["curator_notes"] = data["notes"]
    updated = _write(repos, record, fields)
    repos.audit.record(record["id"], user_id, "edited", {"changes": data})
    return {"message": "Edits saved", "curation": updated}


def publish(repos: Repositories, record: dict, user_id, data: dict) -> dict:
    """Materialize the record as a published article.

    The article is created first and the record only becomes `published`
    once it exists; if that status write fails the article is removed again
    and the record keeps its previous status.
    """
    _check_transition(record, "published")
    news = repos.items.get(record.get("scraped_news_id")) or {}

    title = data.get("title") or record.get("curated_title") or news.get("title")
    summary = data.get("summary") or record.get("curated_summary") or news.get("summary")
    content = data.get("content") or record.get("curated_content") or news.get("content")
    if not (title or "").strip() or not (content or "").strip():
        raise ValidationFailed("Title and content are required to publish")

    category_id = (
        data.get("categoryId")
        or record.get("manual_category_id")
        or record.get("suggested_category_id")
    )
    now = utcnow_iso()
    article_row = {
        "title": title,
        "summary": summary,
        "slug": unique_slug(repos, title),
        "content": content,
        "category_id": category_id,
        "author_id": user_id,
        "featured_image": news.get("image_url"),
        "status": "published",
        "is_featured": False,
        "reading_time": reading_time(content),
        "published_at": now,
    }

    try:
        article = repos.articles.create(article_row)
    except Exception as e:
        print(f"PUBLISH_ARTICLE_FAIL curation_id={record['id']} err={type(e).__name__}: {str(e)[:200]}")
        raise PersistenceFailed("Failed to create article") from e

    fields = {
        "status": "published",
        "curator_id": user_id,
        "published_article_id": article["id"],
        "published_at": now,
        **_overrides(data),
    }
    if data.get("categoryId"):
        fields["manual_category_id"] = data["categoryId"]
    try:
        updated = _write(repos, record, fields)
    except Exception as e:
        print(f"PUBLISH_STATUS_FAIL curation_id={record['id']} article_id={article['id']} err={e}")
        try:
            repos.articles.delete(article["id"])
        except Exception as cleanup_err:
            print(f"PUBLISH_ROLLBACK_FAIL article_id={article['id']} err={cleanup_err}")
        if isinstance(e, InvalidTransition):
            raise
        raise PersistenceFailed("Failed to mark news item as published") from e

    repos.audit.record(record["id"], user_id, "published", {"article_id": article["id"]})
    return {
        "message": "Article published",
        "article_id": article["id"],
        "slug": article.get("slug") or article_row["slug"],
        "curation": updated,
    }


HANDLERS = {
    "approve": approve,
    "reject": reject,
    "edit": edit,
    "publish": publish,
}


def apply_action(repos: Repositories, curation_id, action: str, user_id, data: dict | None) -> dict:
    handler = HANDLERS.get(action)
    if handler is None:
        raise ValidationFailed(f"Unknown action: {action}")
    if not curation_id:
        raise ValidationFailed("curationId is required")
    record = _require(repos, curation_id)
    return handler(repos, record, user_id, data or {})


def delete_curation(repos: Repositories, curation_id, user_id) -> dict:
    record = _require(repos, curation_id)
    if record.get("status") == "published":
        raise InvalidTransition("published", "deleted", "Published items cannot be deleted")
    repos.curation.delete(record["id"])
    repos.audit.record(
        record["id"], user_id, "deleted", {"scraped_news_id": record.get("scraped_news_id")}
    )
    return {"message": "Curation record deleted", "id": record["id"]}


def bulk_delete(repos: Repositories, ids: list, user_id) -> dict:
    if not ids:
        raise ValidationFailed("ids must be a non-empty list")
    records = repos.curation.get_many(ids)
    published = [r["id"] for r in records if r.get("status") == "published"]
    if published:
        raise InvalidTransition(
            "published",
            "deleted",
            f"{len(published)} selected item(s) are published and cannot be deleted; "
            "nothing was deleted",
        )

    found = [r["id"] for r in records]
    found_keys = {str(i) for i in found}
    missing = [i for i in ids if str(i) not in found_keys]
    deleted = repos.curation.delete_many(found)
    for record in records:
        repos.audit.record(
            record["id"], user_id, "deleted",
            {"bulk": True, "scraped_news_id": record.get("scraped_news_id")},
        )
    return {"deleted": deleted, "missing": missing}


def select_all_ids(repos: Repositories, status: str) -> list:
    _validate_status(status)
    return repos.curation.ids_by_status(status)


def _validate_status(status: str) -> None:
    if status not in CURATION_STATUSES:
        raise ValidationFailed(f"Unknown status: {status}")


def _attach_relations(repos: Repositories, records: list[dict]) -> list[dict]:
    news_rows = repos.items.get_many([r.get("scraped_news_id") for r in records if r.get("scraped_news_id")])
    news_by_id = {n["id"]: n for n in news_rows}
    source_ids = list({n.get("source_id") for n in news_rows if n.get("source_id") is not None})
    sources = {s["id"]: s for s in repos.sources.list(ids=source_ids)} if source_ids else {}
    category_ids = []
    for r in records:
        category_ids.extend([r.get("suggested_category_id"), r.get("manual_category_id")])
    categories = {c["id"]: c for c in repos.categories.get_many(category_ids)}

    out = []
    for record in records:
        news = news_by_id.get(record.get("scraped_news_id"))
        if news is not None:
            source = sources.get(news.get("source_id"))
            news = {
                **news,
                "news_sources": (
                    {k: source.get(k) for k in ("id", "name", "url", "type")} if source else None
                ),
            }
        out.append(
            {
                **record,
                "scraped_news": news,
                "suggested_category": categories.get(record.get("suggested_category_id")),
                "manual_category": categories.get(record.get("manual_category_id")),
            }
        )
    return out


def list_queue(repos: Repositories, status: str = "pending", page: int = 1, limit: int = 20) -> dict:
    _validate_status(status)
    offset = (page - 1) * limit
    records, total = repos.curation.list_by_status(status, offset, limit)
    return {
        "data": _attach_relations(repos, records),
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if limit else 0,
        },
    }


def get_detail(repos: Repositories, curation_id) -> dict:
    record = _require(repos, curation_id)
    return _attach_relations(repos, [record])[0]
