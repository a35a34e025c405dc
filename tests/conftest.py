import itertools
from datetime import datetime, timedelta, timezone

import pytest

from backend.config import Settings
from backend.db import Repositories


class Result:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count


def _same(a, b) -> bool:
    if a is None or b is None:
        return a is b
    return str(a) == str(b)


class Query:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload = None
        self.filters = []
        self.orders = []
        self.window = None
        self.max_rows = None
        self.want_count = False
        self.on_conflict = None
        self.ignore_duplicates = False

    # -- statements --
    def select(self, *cols, count=None):
        self.want_count = count == "exact"
        return self

    def insert(self, rows):
        self.op = "insert"
        self.payload = rows
        return self

    def upsert(self, rows, on_conflict=None, ignore_duplicates=False):
        self.op = "upsert"
        self.payload = rows
        self.on_conflict = on_conflict
        self.ignore_duplicates = ignore_duplicates
        return self

    def update(self, fields):
        self.op = "update"
        self.payload = fields
        return self

    def delete(self):
        self.op = "delete"
        return self

    # -- filters --
    def eq(self, col, value):
        self.filters.append(lambda r: _same(r.get(col), value))
        return self

    def neq(self, col, value):
        self.filters.append(lambda r: not _same(r.get(col), value))
        return self

    def in_(self, col, values):
        keys = {str(v) for v in values}
        self.filters.append(lambda r: r.get(col) is not None and str(r.get(col)) in keys)
        return self

    def is_(self, col, value):
        if value == "null":
            self.filters.append(lambda r: r.get(col) is None)
        else:
            self.filters.append(lambda r: r.get(col) is value)
        return self

    def gte(self, col, value):
        self.filters.append(lambda r: r.get(col) is not None and str(r.get(col)) >= str(value))
        return self

    def lte(self, col, value):
        self.filters.append(lambda r: r.get(col) is not None and str(r.get(col)) <= str(value))
        return self

    def or_(self, expr):
        clauses = []
        for part in expr.split(","):
            col, _, pattern = part.split(".", 2)
            clauses.append((col, pattern.strip("%").lower()))
        self.filters.append(
            lambda r: any(needle in str(r.get(col) or "").lower() for col, needle in clauses)
        )
        return self

    def order(self, col, desc=False):
        self.orders.append((col, desc))
        return self

    def range(self, start, end):
        self.window = (start, end)
        return self

    def limit(self, n):
        self.max_rows = n
        return self

    # -- execution --
    def _matches(self, row) -> bool:
        return all(f(row) for f in self.filters)

    def execute(self):
        failure = self.db.failures.pop((self.table, self.op), None)
        if failure is not None:
            raise failure
        rows = self.db.tables.setdefault(self.table, [])

        if self.op in ("insert", "upsert"):
            payload = self.payload if isinstance(self.payload, list) else [self.payload]
            out = []
            for row in payload:
                row = dict(row)
                if self.op == "upsert" and self.on_conflict:
                    keys = self.on_conflict.split(",")
                    clash = next(
                        (r for r in rows if all(_same(r.get(k), row.get(k)) for k in keys)),
                        None,
                    )
                    if clash is not None:
                        if not self.ignore_duplicates:
                            clash.update(row)
                            out.append(dict(clash))
                        continue
                row.setdefault("id", self.db.next_id())
                row.setdefault("created_at", self.db.next_ts())
                rows.append(row)
                out.append(dict(row))
            return Result(out)

        matched = [r for r in rows if self._matches(r)]

        if self.op == "update":
            for r in matched:
                r.update(self.payload)
            return Result([dict(r) for r in matched])

        if self.op == "delete":
            self.db.tables[self.table] = [r for r in rows if not self._matches(r)]
            return Result([dict(r) for r in matched])

        for col, desc in reversed(self.orders):
            matched.sort(key=lambda r: (r.get(col) is None, str(r.get(col) or "")), reverse=desc)
        total = len(matched)
        if self.window is not None:
            start, end = self.window
            matched = matched[start : end + 1]
        if self.max_rows is not None:
            matched = matched[: self.max_rows]
        return Result([dict(r) for r in matched], total if self.want_count else None)


class FakeSupabase:
    """In-memory stand-in for the supabase query builder used by backend.db."""

    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.failures: dict[tuple[str, str], Exception] = {}
        self._ids = itertools.count(1)
        self._ticks = itertools.count(1)
        self._base = datetime.now(timezone.utc) - timedelta(minutes=30)

    def table(self, name: str) -> Query:
        return Query(self, name)

    def next_id(self) -> str:
        return str(next(self._ids))

    def next_ts(self) -> str:
        ts = self._base + timedelta(milliseconds=next(self._ticks))
        return ts.isoformat(timespec="microseconds")

    def fail_next(self, table: str, op: str, exc: Exception | None = None) -> None:
        self.failures[(table, op)] = exc or RuntimeError(f"{table} {op} failed")

    def rows(self, table: str) -> list[dict]:
        return self.tables.get(table, [])


@pytest.fixture
def sb():
    return FakeSupabase()


@pytest.fixture
def repos(sb):
    return Repositories.from_client(sb)


@pytest.fixture
def settings():
    return Settings(
        admin_user_id="curator-1",
        site_url="https://portal.example",
        classify_delay_sec=0,
        automation_step_pause_sec=0,
    )


@pytest.fixture
def add_source(repos):
    def _add(**fields):
        row = {
            "name": "Feed",
            "url": f"https://news{len(repos.sources.list())}.example/rss",
            "type": "rss",
            "is_active": True,
            "fetch_frequency": 3600,
            "last_fetch": None,
            "scraping_config": {},
        }
        row.update(fields)
        return repos.sources.create(row)

    return _add


@pytest.fixture
def add_item(sb):
    def _add(source_id, **fields):
        n = len(sb.rows("scraped_news"))
        row = {
            "source_id": source_id,
            "title": f"Story {n}",
            "summary": "summary",
            "content": "some story content",
            "original_url": f"https://news.example/story-{n}",
        }
        row.update(fields)
        return sb.table("scraped_news").insert(row).execute().data[0]

    return _add


@pytest.fixture
def add_category(sb):
    def _add(name, **fields):
        row = {"name": name, "description": f"{name} news", "color": "#000", "is_active": True}
        row.update(fields)
        return sb.table("categories").insert(row).execute().data[0]

    return _add


@pytest.fixture
def add_curation(repos):
    def _add(news_id, status="pending", **fields):
        return repos.curation.create({"scraped_news_id": news_id, "status": status, **fields})

    return _add
