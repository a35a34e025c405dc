import os
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx
from dotenv import load_dotenv
from supabase import create_client as _create_client

_ENV_PATH = os.path.join(os.path.dirname(__file__), ".env")
load_dotenv(_ENV_PATH)

_sb = None

CURATION_STATUSES = ("pending", "approved", "rejected", "editing", "published")


def create_client(url: str | None = None, key: str | None = None):
    url = url or os.getenv("SUPABASE_URL")
    key = key or os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_KEY")
    if not url or not key:
        missing = []
        if not url:
            missing.append("SUPABASE_URL")
        if not (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_KEY")):
            missing.append("SUPABASE_SERVICE_ROLE_KEY or SUPABASE_KEY")
        raise RuntimeError(f"Missing {', '.join(missing)}")
    return _create_client(url, key)


def get_client():
    global _sb
    if _sb:
        return _sb

    _sb = create_client()
    return _sb


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _first(res) -> dict | None:
    if res.data:
        return res.data[0]
    return None


def _is_transient_error(err: Exception) -> bool:
    if isinstance(err, (httpx.ConnectError, httpx.ReadError, httpx.RemoteProtocolError)):
        return True
    msg = str(err)
    transient_markers = [
        "UNEXPECTED_EOF_WHILE_READING",
        "Connection reset",
        "Broken pipe",
        "timed out",
    ]
    return any(m in msg for m in transient_markers)


def _with_retry(fn, delays=(0.5, 1, 2)):
    """Run an idempotent query, retrying dropped connections only."""
    for i, delay in enumerate(delays, start=1):
        try:
            return fn()
        except Exception as e:
            if not _is_transient_error(e) or i == len(delays):
                raise
            print(f"DB_RETRY attempt={i} error={str(e)[:200]}")
            time.sleep(delay + random.uniform(0, 0.2))


class SourceRepository:
    table = "news_sources"

    def __init__(self, sb):
        self.sb = sb

    def get(self, source_id) -> dict | None:
        res = self.sb.table(self.table).select("*").eq("id", source_id).limit(1).execute()
        return _first(res)

    def find_by_url(self, url: str) -> dict | None:
        res = self.sb.table(self.table).select("id").eq("url", url).limit(1).execute()
        return _first(res)

    def find_by_name(self, name: str) -> dict | None:
        res = self.sb.table(self.table).select("*").eq("name", name).limit(1).execute()
        return _first(res)

    def list(
        self,
        active: bool | None = None,
        kind: str | None = None,
        ids: list | None = None,
    ) -> list[dict]:
        q = self.sb.table(self.table).select("*").order("name")
        if active is not None:
            q = q.eq("is_active", active)
        if kind:
            q = q.eq("type", kind)
        if ids:
            q = q.in_("id", list(ids))
        return q.execute().data or []

    def create(self, row: dict) -> dict:
        res = self.sb.table(self.table).insert(row).execute()
        created = _first(res)
        if not created:
            raise RuntimeError("news_sources insert returned no row")
        return created

    def update(self, source_id, fields: dict) -> dict | None:
        res = self.sb.table(self.table).update(fields).eq("id", source_id).execute()
        return _first(res)

    def delete(self, source_id) -> None:
        self.sb.table(self.table).delete().eq("id", source_id).execute()

    def mark_fetched(self, source_id, when: str | None = None) -> None:
        self.update(source_id, {"last_fetch": when or utcnow_iso()})


class CandidateItemRepository:
    """`scraped_news`: the only write path is `insert_if_absent`."""

    table = "scraped_news"

    def __init__(self, sb):
        self.sb = sb

    def get(self, item_id) -> dict | None:
        res = self.sb.table(self.table).select("*").eq("id", item_id).limit(1).execute()
        return _first(res)

    def get_many(self, ids: list) -> list[dict]:
        if not ids:
            return []
        res = self.sb.table(self.table).select("*").in_("id", list(ids)).execute()
        return res.data or []

    def exists(self, source_id, original_url: str) -> bool:
        res = (
            self.sb.table(self.table)
            .select("id")
            .eq("source_id", source_id)
            .eq("original_url", original_url)
            .limit(1)
            .execute()
        )
        return bool(res.data)

    def insert_if_absent(self, row: dict) -> dict | None:
        # relies on the (source_id, original_url) unique constraint
        res = _with_retry(
            lambda: self.sb.table(self.table)
            .upsert(row, on_conflict="source_id,original_url", ignore_duplicates=True)
            .execute()
        )
        return _first(res)

    def count(self, since: str | None = None, source_id=None) -> int:
        q = self.sb.table(self.table).select("id", count="exact")
        if since:
            q = q.gte("created_at", since)
        if source_id is not None:
            q = q.eq("source_id", source_id)
        res = q.execute()
        return res.count or 0

    def list_page(self, offset: int, limit: int) -> list[dict]:
        res = (
            self.sb.table(self.table)
            .select("*")
            .order("created_at", desc=False)
            .range(offset, offset + limit - 1)
            .execute()
        )
        return res.data or []

    def list_created_between(
        self, start: str, end: str, source_ids: list | None = None, limit: int = 50
    ) -> list[dict]:
        q = (
            self.sb.table(self.table)
            .select("*")
            .gte("created_at", start)
            .lte("created_at", end)
            .order("created_at", desc=True)
            .limit(limit)
        )
        if source_ids:
            q = q.in_("source_id", list(source_ids))
        return q.execute().data or []

    def list_since(self, since: str, source_id=None) -> list[dict]:
        q = self.sb.table(self.table).select("id,source_id,created_at").gte("created_at", since)
        if source_id is not None:
            q = q.eq("source_id", source_id)
        return q.execute().data or []

    def search(
        self,
        after: str | None = None,
        source_id=None,
        text: str | None = None,
        limit: int = 100,
    ) -> list[dict]:
        q = (
            self.sb.table(self.table)
            .select("*")
            .order("created_at", desc=True)
            .limit(limit)
        )
        if after:
            q = q.gte("created_at", after)
        if source_id is not None:
            q = q.eq("source_id", source_id)
        if text:
            q = q.or_(f"title.ilike.%{text}%,summary.ilike.%{text}%")
        return q.execute().data or []

    def delete_many(self, ids: list) -> int:
        if not ids:
            return 0
        res = self.sb.table(self.table).delete().in_("id", list(ids)).execute()
        return len(res.data or [])


class CurationRepository:
    table = "news_curation"

    def __init__(self, sb):
        self.sb = sb

    def get(self, curation_id) -> dict | None:
        res = (
            self.sb.table(self.table).select("*").eq("id", curation_id).limit(1).execute()
        )
        return _first(res)

    def get_many(self, ids: list) -> list[dict]:
        if not ids:
            return []
        res = self.sb.table(self.table).select("*").in_("id", list(ids)).execute()
        return res.data or []

    def get_by_candidate(self, candidate_id) -> dict | None:
        res = (
            self.sb.table(self.table)
            .select("*")
            .eq("scraped_news_id", candidate_id)
            .limit(1)
            .execute()
        )
        return _first(res)

    def list_for_candidates(self, candidate_ids: list) -> list[dict]:
        if not candidate_ids:
            return []
        res = (
            self.sb.table(self.table)
            .select("*")
            .in_("scraped_news_id", list(candidate_ids))
            .execute()
        )
        return res.data or []

    def list_by_status(self, status: str, offset: int, limit: int) -> tuple[list[dict], int]:
        res = (
            self.sb.table(self.table)
            .select("*", count="exact")
            .eq("status", status)
            .order("created_at", desc=True)
            .range(offset, offset + limit - 1)
            .execute()
        )
        return res.data or [], res.count or 0

    def ids_by_status(self, status: str) -> list:
        res = self.sb.table(self.table).select("id").eq("status", status).execute()
        return [row["id"] for row in (res.data or [])]

    def count(self, status: str | None = None, unsuggested: bool = False) -> int:
        q = self.sb.table(self.table).select("id", count="exact")
        if status:
            q = q.eq("status", status)
        if unsuggested:
            q = q.is_("suggested_category_id", "null")
        return q.execute().count or 0

    def statuses_since(self, since: str) -> list[dict]:
        res = (
            self.sb.table(self.table)
            .select("id,status,scraped_news_id,created_at")
            .gte("created_at", since)
            .execute()
        )
        return res.data or []

    def create(self, row: dict) -> dict:
        res = self.sb.table(self.table).insert(row).execute()
        created = _first(res)
        if not created:
            raise RuntimeError("news_curation insert returned no row")
        return created

    def restore(self, rows: list[dict]) -> int:
        """Re-insert previously deleted records with their original ids."""
        if not rows:
            return 0
        res = self.sb.table(self.table).insert([dict(r) for r in rows]).execute()
        return len(res.data or [])

    def update(
        self, curation_id, fields: dict, expected_status: str | None = None
    ) -> dict | None:
        """Update one record. With `expected_status` the write only lands if
        the row is still in that status; None means nothing was updated."""
        payload = dict(fields)
        payload.setdefault("updated_at", utcnow_iso())
        q = self.sb.table(self.table).update(payload).eq("id", curation_id)
        if expected_status:
            q = q.eq("status", expected_status)
        return _first(q.execute())

    def delete(self, curation_id) -> None:
        self.sb.table(self.table).delete().eq("id", curation_id).execute()

    def delete_many(self, ids: list) -> int:
        if not ids:
            return 0
        res = self.sb.table(self.table).delete().in_("id", list(ids)).execute()
        return len(res.data or [])


class ArticleRepository:
    table = "articles"

    def __init__(self, sb):
        self.sb = sb

    def create(self, row: dict) -> dict:
        res = self.sb.table(self.table).insert(row).execute()
        created = _first(res)
        if not created:
            raise RuntimeError("articles insert returned no row")
        return created

    def delete(self, article_id) -> None:
        self.sb.table(self.table).delete().eq("id", article_id).execute()

    def slug_exists(self, slug: str) -> bool:
        res = self.sb.table(self.table).select("id").eq("slug", slug).limit(1).execute()
        return bool(res.data)

    def list_published_between(
        self,
        start: str,
        end: str,
        category_id=None,
        status: str = "published",
        limit: int = 50,
    ) -> list[dict]:
        q = (
            self.sb.table(self.table)
            .select("*")
            .eq("status", status)
            .gte("published_at", start)
            .lte("published_at", end)
            .order("published_at", desc=True)
            .limit(limit)
        )
        if category_id is not None:
            q = q.eq("category_id", category_id)
        return q.execute().data or []

    def list_published_since(self, since: str) -> list[dict]:
        res = (
            self.sb.table(self.table)
            .select("id,category_id,published_at")
            .eq("status", "published")
            .gte("published_at", since)
            .execute()
        )
        return res.data or []


class CategoryRepository:
    table = "categories"

    def __init__(self, sb):
        self.sb = sb

    def list_active(self) -> list[dict]:
        res = (
            self.sb.table(self.table)
            .select("id,name,description,color")
            .eq("is_active", True)
            .execute()
        )
        return res.data or []

    def get_many(self, ids: list) -> list[dict]:
        ids = [i for i in ids if i is not None]
        if not ids:
            return []
        res = (
            self.sb.table(self.table)
            .select("id,name,color")
            .in_("id", list(set(ids)))
            .execute()
        )
        return res.data or []


class UserRepository:
    table = "users"

    def __init__(self, sb):
        self.sb = sb

    def first_admin_id(self):
        res = self.sb.table(self.table).select("id").eq("role", "admin").limit(1).execute()
        row = _first(res)
        return row.get("id") if row else None


class AuditLog:
    """`curation_logs` writes. A failed write is printed, never raised."""

    table = "curation_logs"

    def __init__(self, sb):
        self.sb = sb

    def record(self, curation_id, user_id, action: str, details: dict | None = None) -> bool:
        try:
            self.sb.table(self.table).insert(
                {
                    "curation_id": curation_id,
                    "user_id": user_id,
                    "action": action,
                    "details": details or {},
                }
            ).execute()
            return True
        except Exception as e:
            print(
                f"AUDIT_LOG_FAIL curation_id={curation_id} action={action} "
                f"err={type(e).__name__}: {str(e)[:200]}"
            )
            return False


class FeedbackRepository:
    table = "ai_feedback"

    def __init__(self, sb):
        self.sb = sb

    def create(self, row: dict) -> dict | None:
        res = self.sb.table(self.table).insert(row).execute()
        return _first(res)


@dataclass
class Repositories:
    sources: SourceRepository
    items: CandidateItemRepository
    curation: CurationRepository
    articles: ArticleRepository
    categories: CategoryRepository
    users: UserRepository
    audit: AuditLog
    feedback: FeedbackRepository

    @classmethod
    def from_client(cls, sb) -> "Repositories":
        return cls(
            sources=SourceRepository(sb),
            items=CandidateItemRepository(sb),
            curation=CurationRepository(sb),
            articles=ArticleRepository(sb),
            categories=CategoryRepository(sb),
            users=UserRepository(sb),
            audit=AuditLog(sb),
            feedback=FeedbackRepository(sb),
        )


def get_repositories() -> Repositories:
    return Repositories.from_client(get_client())
