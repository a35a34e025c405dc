from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from backend.errors import ValidationFailed
from runner.ingest import collector
from runner.process import historical


def _window():
    now = datetime.now(timezone.utc)
    return (now - timedelta(days=1)).isoformat(), (now + timedelta(days=1)).isoformat()


@pytest.mark.parametrize(
    "text,expected",
    [
        ("", "0"),
        ("a", "61"),
        ("hello", "5e918d2"),
        ("polygenelubricants", "80000000"),
    ],
)
def test_rolling_hash(text, expected):
    assert historical.rolling_hash(text) == expected


@pytest.fixture
def published(sb, add_category):
    category = add_category("Politica")
    rows = []
    for n, day in enumerate((5, 12, 20)):
        rows.append(
            sb.table("articles").insert(
                {
                    "title": f"Article {n}",
                    "summary": "s",
                    "content": f"content {n}",
                    "slug": f"article-{n}",
                    "category_id": category["id"],
                    "status": "published",
                    "published_at": f"2024-02-{day:02d}T10:00:00+00:00",
                }
            ).execute().data[0]
        )
    sb.table("articles").insert(
        {"title": "Draft", "slug": "draft", "status": "draft", "published_at": "2024-02-10T10:00:00+00:00"}
    ).execute()
    return category, rows


def test_reprocess_articles_queues_pending_records(repos, sb, settings, published):
    category, rows = published

    result = historical.reprocess_articles(
        repos, settings, "2024-02-01", "2024-02-28", reprocess_type="improve"
    )

    assert result["success"] is True
    data = result["data"]
    assert data["total_found"] == 3
    assert data["processed"] == 3
    assert data["reprocess_type"] == "improve"

    source = repos.sources.find_by_name("Historical Articles")
    assert source["type"] == "api"
    assert source["is_active"] is False
    items = sb.rows("scraped_news")
    assert {i["original_url"] for i in items} == {
        f"https://portal.example/artigo/{row['slug']}" for row in rows
    }
    assert all(i["source_id"] == source["id"] for i in items)
    assert all(i["raw_data"]["original_category"] == "Politica" for i in items)

    records = sb.rows("news_curation")
    assert len(records) == 3
    assert all(r["status"] == "pending" for r in records)
    assert all(r["suggested_category_id"] == category["id"] for r in records)
    assert all("Politica" in r["ai_category_reasoning"] for r in records)


def test_reprocess_articles_twice_reports_duplicates(repos, sb, settings, published):
    historical.reprocess_articles(repos, settings, "2024-02-01", "2024-02-28")
    again = historical.reprocess_articles(repos, settings, "2024-02-01", "2024-02-28")

    assert again["success"] is False
    assert again["data"]["errors"] == 3
    assert again["data"]["results"][0]["error"] == "Article already queued for reprocessing"
    assert len(sb.rows("news_curation")) == 3
    assert len(sb.rows("news_sources")) == 1


def test_reprocess_articles_filters_and_limits(repos, settings, published):
    result = historical.reprocess_articles(repos, settings, "2024-02-10", "2024-02-28", limit=1)
    assert result["data"]["total_found"] == 1
    assert result["data"]["results"][0]["title"] == "Article 2"


def test_reprocess_articles_empty_period(repos, settings, published):
    result = historical.reprocess_articles(repos, settings, "2023-01-01", "2023-01-31")
    assert result["data"]["processed"] == 0


def test_reprocess_requires_valid_dates(repos, settings):
    with pytest.raises(ValidationFailed):
        historical.reprocess_articles(repos, settings, None, "2024-01-01")
    with pytest.raises(ValidationFailed):
        historical.reprocess_articles(repos, settings, "yesterday", "2024-01-01")
    with pytest.raises(ValidationFailed):
        historical.reprocess_articles(repos, settings, "2024-01-01", "2024-01-02", reprocess_type="x")


@pytest.fixture
def collected(add_source, add_item, add_curation):
    source = add_source(name="Folha")
    fresh = add_item(source["id"])
    waiting = add_item(source["id"])
    waiting_record = add_curation(waiting["id"], suggested_category_id="cat", curator_notes="queued")
    approved = add_item(source["id"])
    approved_record = add_curation(approved["id"], status="approved")
    return source, fresh, waiting_record, approved_record


def test_reprocess_unprocessed_items(repos, sb, settings, collected):
    source, fresh, _, _ = collected
    start, end = _window()

    result = historical.reprocess_source_items(repos, settings, start, end, status="unprocessed")

    data = result["data"]
    assert data["total_found"] == 3
    assert data["total_filtered"] == 1
    assert data["processed"] == 1
    assert data["sources_summary"] == [{"name": "Folha", "count": 1}]
    assert repos.curation.get_by_candidate(fresh["id"])["status"] == "pending"


def test_reprocess_processed_items_resets_only_pending(repos, settings, collected):
    _, _, waiting_record, approved_record = collected
    start, end = _window()

    result = historical.reprocess_source_items(repos, settings, start, end, status="processed")

    data = result["data"]
    assert data["total_filtered"] == 2
    assert data["processed"] == 1
    reset = repos.curation.get(waiting_record["id"])
    assert reset["suggested_category_id"] is None
    assert reset["curator_notes"].endswith("(Reprocessed)")
    untouched = repos.curation.get(approved_record["id"])
    assert untouched["status"] == "approved"
    skipped = [r for r in data["results"] if r.get("skipped")]
    assert len(skipped) == 1


def test_reprocess_any_skips_existing_records(repos, settings, collected):
    start, end = _window()
    result = historical.reprocess_source_items(repos, settings, start, end)

    data = result["data"]
    assert data["processed"] == 1
    errors = [r["error"] for r in data["results"] if not r["success"]]
    assert errors == ["Already processed", "Already processed"]


def test_reprocess_source_items_validates_filter(repos, settings):
    start, end = _window()
    with pytest.raises(ValidationFailed):
        historical.reprocess_source_items(repos, settings, start, end, status="done")


def test_article_stats(repos, sb, add_category):
    category = add_category("Economia")
    recent = datetime.now(timezone.utc) - timedelta(days=3)
    for _ in range(2):
        sb.table("articles").insert(
            {"status": "published", "category_id": category["id"], "published_at": recent.isoformat()}
        ).execute()

    stats = historical.article_stats(repos, months=12)

    assert stats["total_articles"] == 2
    assert stats["articles_by_month"] == [{"month": recent.isoformat()[:7], "count": 2}]
    assert stats["available_categories"] == [
        {"category_id": category["id"], "name": "Economia", "count": 2}
    ]


def test_source_stats(repos, collected):
    stats = historical.source_stats(repos, months=6)

    assert stats["summary"]["total_sources"] == 1
    assert stats["summary"]["total_news"] == 3
    assert stats["summary"]["processed_news"] == 2
    assert stats["summary"]["processing_rate"] == 67
    row = stats["sources"][0]
    assert row["processed_news"] == 2
    assert row["unprocessed_news"] == 1


def test_batch_collection_still_succeeds_after_reprocessing(repos, settings, published, add_source):
    add_source(name="Feed", url="https://feed.example/rss")
    historical.reprocess_articles(repos, settings, "2024-02-01", "2024-02-28")

    feed = "<rss version='2.0'><channel><title>t</title></channel></rss>"
    with mock.patch("runner.ingest.rss_ingest.fetch_url", return_value=(feed, None)):
        result = collector.collect_from_all_sources(repos, settings)

    assert result["success"] is True
    assert result["data"]["total_sources"] == 1
    assert result["data"]["total_errors"] == 0
