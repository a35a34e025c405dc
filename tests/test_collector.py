from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from backend.errors import NotFound
from runner.ingest import collector
from runner.process.store import save_news_item

FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example</title>
    <item>
      <title>First story</title>
      <link>https://news.example/first</link>
      <description>First summary</description>
      <pubDate>Mon, 04 Mar 2024 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Second story</title>
      <link>https://news.example/second</link>
      <description>Second summary</description>
    </item>
    <item>
      <title>Third story</title>
      <link>https://news.example/third</link>
      <description>Third summary</description>
    </item>
  </channel>
</rss>
"""


def _feed_ok(url, headers):
    return FEED, None


def test_collect_counts_new_and_duplicate_items(repos, settings, add_source, add_item):
    source = add_source(name="Example")
    add_item(source["id"], original_url="https://news.example/second")

    with mock.patch("runner.ingest.rss_ingest.fetch_url", side_effect=_feed_ok):
        result = collector.collect_from_source(repos, source["id"], settings)

    assert result["success"] is True
    assert result["data"]["total_found"] == 3
    assert result["data"]["collected"] == 2
    assert result["data"]["duplicates_skipped"] == 1
    assert repos.items.count(source_id=source["id"]) == 3
    assert repos.sources.get(source["id"])["last_fetch"] is not None


def test_second_collect_stores_nothing_new(repos, settings, add_source):
    source = add_source()
    with mock.patch("runner.ingest.rss_ingest.fetch_url", side_effect=_feed_ok):
        collector.collect_from_source(repos, source["id"], settings)
        again = collector.collect_from_source(repos, source["id"], settings, force_refresh=True)

    assert again["data"]["collected"] == 0
    assert again["data"]["duplicates_skipped"] == 3
    assert repos.items.count() == 3


def test_recently_fetched_source_is_skipped(repos, settings, add_source):
    recent = (datetime.now(timezone.utc) - timedelta(minutes=5)).isoformat()
    source = add_source(last_fetch=recent, fetch_frequency=3600)

    with mock.patch("runner.ingest.rss_ingest.fetch_url") as fetch:
        result = collector.collect_from_source(repos, source["id"], settings)

    fetch.assert_not_called()
    assert result["data"]["skipped"] is True
    assert result["data"]["collected"] == 0
    assert "next_fetch" in result["data"]


def test_force_refresh_ignores_interval(repos, settings, add_source):
    recent = (datetime.now(timezone.utc) - timedelta(minutes=5)).isoformat()
    source = add_source(last_fetch=recent)

    with mock.patch("runner.ingest.rss_ingest.fetch_url", side_effect=_feed_ok):
        result = collector.collect_from_source(repos, source["id"], settings, force_refresh=True)

    assert result["data"]["collected"] == 3


def test_failing_source_does_not_stop_the_others(repos, settings, add_source):
    good = add_source(name="Good", url="https://good.example/rss")
    add_source(name="Blocked", url="https://blocked.example/rss")

    def fake_fetch(url, headers):
        if "blocked" in url:
            return None, "blocked:403"
        return FEED, None

    with mock.patch("runner.ingest.rss_ingest.fetch_url", side_effect=fake_fetch):
        result = collector.collect_from_all_sources(repos, settings)

    data = result["data"]
    assert data["total_sources"] == 2
    assert data["total_collected"] == 3
    assert data["total_errors"] == 1
    blocked = next(r for r in data["results"] if r["source"] == "Blocked")
    assert "403" in blocked["error"]
    assert repos.items.count(source_id=good["id"]) == 3


def test_inactive_sources_are_not_collected(repos, settings, add_source):
    add_source(is_active=False)
    with mock.patch("runner.ingest.rss_ingest.fetch_url") as fetch:
        result = collector.collect_from_all_sources(repos, settings)
    fetch.assert_not_called()
    assert result["data"]["total_sources"] == 0


def test_unknown_source_type_is_reported(repos, settings, add_source):
    source = add_source(type="api")
    result = collector.collect_from_source(repos, source["id"], settings)
    assert result["success"] is False
    assert "Unsupported source type" in result["error"]


def test_missing_source_raises(repos, settings):
    with pytest.raises(NotFound):
        collector.collect_from_source(repos, "nope", settings)


def test_save_news_item_requires_url(repos, add_source):
    source = add_source()
    with pytest.raises(ValueError):
        save_news_item(repos, {"title": "No link"}, source["id"])


def test_save_news_item_lost_race_counts_as_duplicate(repos, sb, add_source, add_item):
    source = add_source()
    item = {"title": "Racy", "original_url": "https://news.example/racy"}

    # another writer lands the same url between the check and the insert
    with mock.patch.object(repos.items, "exists", return_value=False):
        add_item(source["id"], original_url="https://news.example/racy")
        assert save_news_item(repos, item, source["id"]) is False

    assert len(sb.rows("scraped_news")) == 1


def test_next_fetch_at_uses_source_frequency(settings):
    last = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    due = collector.next_fetch_at({"last_fetch": last.isoformat(), "fetch_frequency": 600}, settings)
    assert due == last + timedelta(seconds=600)
    assert collector.next_fetch_at({"last_fetch": None}, settings) is None


def test_collection_stats_counts_recent_activity(repos, add_source, add_item, add_curation):
    source = add_source()
    first = add_item(source["id"])
    add_item(source["id"])
    add_curation(first["id"], status="approved")

    stats = collector.collection_stats(repos, "24h")

    assert stats["sources"]["total"] == 1
    assert stats["collection"]["total_collected"] == 2
    assert stats["collection"]["approved"] == 1
    assert stats["collection"]["pending_curation"] == 0


def test_collect_by_period_persists_scraped_items(repos, add_source):
    source = add_source(type="scraping", url="https://site.example/")
    start = datetime(2024, 3, 1, tzinfo=timezone.utc)
    end = datetime(2024, 3, 31, tzinfo=timezone.utc)
    scraped = [
        {"title": "A", "original_url": "https://site.example/a", "published_at": "2024-03-02T00:00:00+00:00"},
        {"title": "B", "original_url": "https://site.example/b", "published_at": "2024-03-03T00:00:00+00:00"},
    ]

    with mock.patch.object(collector, "scrape_by_period", return_value=scraped):
        result = collector.collect_by_period(repos, start, end, [source["id"]])

    assert result["data"]["total_inserted"] == 2
    assert result["data"]["sources"][0] == {"source": source["name"], "inserted": 2, "checked": 2}


def test_batch_collect_skips_sources_without_a_feed(repos, settings, add_source):
    add_source(name="Feed", url="https://feed.example/rss")
    add_source(name="Internal", url="https://portal.example", type="api")

    with mock.patch("runner.ingest.rss_ingest.fetch_url", side_effect=_feed_ok):
        result = collector.collect_from_all_sources(repos, settings)

    assert result["success"] is True
    assert result["data"]["total_sources"] == 1
    assert result["data"]["total_errors"] == 0
    assert [r["source"] for r in result["data"]["results"]] == ["Feed"]


def test_collect_by_period_only_scrapes_page_sources(repos, add_source):
    page = add_source(name="Page", type="html", url="https://site.example/")
    add_source(name="Feed", type="rss")
    add_source(name="Internal", type="api")
    start = datetime(2024, 3, 1, tzinfo=timezone.utc)
    end = datetime(2024, 3, 31, tzinfo=timezone.utc)

    with mock.patch.object(collector, "scrape_by_period", return_value=[]) as scrape:
        result = collector.collect_by_period(repos, start, end)

    assert scrape.call_count == 1
    assert scrape.call_args.args[0]["id"] == page["id"]
    assert [s["source"] for s in result["data"]["sources"]] == ["Page"]
