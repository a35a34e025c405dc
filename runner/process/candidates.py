from backend.db import Repositories
from backend.errors import InvalidTransition, PersistenceFailed, ValidationFailed

BULK_ACTIONS = {"delete", "send_to_curation"}


def list_candidates(
    repos: Repositories,
    after: str | None = None,
    source_id=None,
    search: str | None = None,
    limit: int = 100,
) -> list[dict]:
    rows = repos.items.search(after=after, source_id=source_id, text=search, limit=limit)
    source_ids = list({r.get("source_id") for r in rows if r.get("source_id") is not None})
    sources = {s["id"]: s for s in repos.sources.list(ids=source_ids)} if source_ids else {}
    out = []
    for row in rows:
        source = sources.get(row.get("source_id"))
        out.append(
            {
                **row,
                "news_sources": (
                    {k: source.get(k) for k in ("id", "name", "url")} if source else None
                ),
            }
        )
    return out


def delete_candidates(repos: Repositories, news_ids: list) -> dict:
    curations = repos.curation.list_for_candidates(news_ids)
    published = [c for c in curations if c.get("status") == "published"]
    if published:
        raise InvalidTransition(
            "published",
            "deleted",
            f"{len(published)} selected item(s) were published; nothing was deleted",
        )
    repos.curation.delete_many([c["id"] for c in curations])
    try:
        deleted = repos.items.delete_many(news_ids)
    except Exception as e:
        print(f"CANDIDATE_DELETE_FAIL ids={len(news_ids)} err={type(e).__name__}: {str(e)[:200]}")
        try:
            repos.curation.restore(curations)
        except Exception as restore_err:
            print(f"CANDIDATE_RESTORE_FAIL curations={len(curations)} err={restore_err}")
            raise PersistenceFailed(
                f"Failed to delete news items; {len(curations)} curation record(s) were lost"
            ) from e
        raise PersistenceFailed("Failed to delete news items; nothing was deleted") from e
    return {"deleted": deleted, "curation_removed": len(curations)}


def send_to_curation(repos: Repositories, news_ids: list) -> dict:
    existing = {c.get("scraped_news_id") for c in repos.curation.list_for_candidates(news_ids)}
    known = {n["id"] for n in repos.items.get_many(news_ids)}
    created = 0
    skipped = []
    for news_id in news_ids:
        if news_id not in known or news_id in existing:
            skipped.append(news_id)
            continue
        repos.curation.create(
            {
                "scraped_news_id": news_id,
                "status": "pending",
                "curator_notes": "Sent from collected news",
            }
        )
        created += 1
    return {"sent_to_curation": created, "skipped": skipped}


def bulk_action(repos: Repositories, action: str, news_ids: list) -> dict:
    if action not in BULK_ACTIONS or not isinstance(news_ids, list) or not news_ids:
        raise ValidationFailed("Invalid parameters: action and a non-empty news_ids list are required")
    if action == "delete":
        return delete_candidates(repos, news_ids)
    return send_to_curation(repos, news_ids)
