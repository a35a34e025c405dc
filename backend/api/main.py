import os
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from backend.config import Settings, get_list, get_settings
from backend.db import Repositories, get_repositories
from backend.errors import (
    FetchError,
    InvalidTransition,
    NotFound,
    PersistenceFailed,
    Unauthorized,
    ValidationFailed,
)
from runner.ingest.collector import (
    SOURCE_TYPES,
    collect_by_period,
    collect_from_all_sources,
    collect_from_source,
    collection_stats,
)
from runner.ingest.google_news import collect_google_news, google_news_stats
from runner.process import candidates, classify, curation, historical
from runner.process.automation import automation_stats, run_automation

app = FastAPI(title="Newsroom Curation API")

ALLOWED_ORIGINS = get_list("CORS_ORIGINS", ["http://localhost:3000"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)

ADMIN_KEY = os.environ.get("ADMIN_API_KEY")

Id = str | int


def require_admin(x_admin_key: str | None = Header(default=None)):
    if not ADMIN_KEY or x_admin_key != ADMIN_KEY:
        raise HTTPException(status_code=401, detail="Unauthorized")


def get_repos() -> Repositories:
    return get_repositories()


def _error(status_code: int):
    def handler(request: Request, exc: Exception):
        return JSONResponse(
            status_code=status_code,
            content={"success": False, "detail": str(exc)},
        )

    return handler


app.add_exception_handler(NotFound, _error(404))
app.add_exception_handler(ValidationFailed, _error(400))
app.add_exception_handler(InvalidTransition, _error(409))
app.add_exception_handler(Unauthorized, _error(401))
app.add_exception_handler(PersistenceFailed, _error(500))
app.add_exception_handler(FetchError, _error(502))


def _parse_iso(value: str | None, name: str) -> datetime:
    if not value:
        raise HTTPException(status_code=400, detail="startDate and endDate are required")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name}")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@app.get("/health")
def health():
    return {"ok": True}


# -- collection ----------------------------------------------------------------


class CollectIn(BaseModel):
    sourceId: Id | None = None
    forceRefresh: bool = False


class PeriodCollectIn(BaseModel):
    startDate: str | None = None
    endDate: str | None = None
    sourceIds: list[Id] = []
    limitPerSource: int = Field(100, ge=1, le=500)


class GoogleNewsIn(BaseModel):
    query: str = "Brasil"
    language: str = "pt-BR"
    country: str = "BR"
    category: str | None = None
    timeRange: str | None = "today"
    limit: int = Field(20, ge=1, le=100)


@app.post("/collect", dependencies=[Depends(require_admin)])
def collect(
    payload: CollectIn,
    repos: Repositories = Depends(get_repos),
    settings: Settings = Depends(get_settings),
):
    if payload.sourceId is not None:
        return collect_from_source(repos, payload.sourceId, settings, payload.forceRefresh)
    return collect_from_all_sources(repos, settings, payload.forceRefresh)


@app.get("/collect", dependencies=[Depends(require_admin)])
def collect_status(
    timeframe: str = Query("24h"),
    repos: Repositories = Depends(get_repos),
):
    return {"success": True, "data": collection_stats(repos, timeframe)}


@app.post("/collect/historical", dependencies=[Depends(require_admin)])
def collect_historical(payload: PeriodCollectIn, repos: Repositories = Depends(get_repos)):
    start = _parse_iso(payload.startDate, "startDate")
    end = _parse_iso(payload.endDate, "endDate")
    return collect_by_period(repos, start, end, payload.sourceIds, payload.limitPerSource)


@app.post("/collect/google-news", dependencies=[Depends(require_admin)])
def collect_google(payload: GoogleNewsIn, repos: Repositories = Depends(get_repos)):
    return collect_google_news(
        repos,
        query=payload.query,
        language=payload.language,
        country=payload.country,
        category=payload.category,
        time_range=payload.timeRange,
        limit=payload.limit,
    )


@app.get("/collect/google-news", dependencies=[Depends(require_admin)])
def google_status(days: int = Query(7, ge=1, le=90), repos: Repositories = Depends(get_repos)):
    return {"success": True, "data": google_news_stats(repos, days)}


# -- classification ------------------------------------------------------------


class ClassifyIn(BaseModel):
    newsId: Id | None = None
    batchSize: int | None = Field(default=None, ge=1, le=100)


class FeedbackIn(BaseModel):
    curationId: Id | None = None
    feedback: dict[str, Any] = {}


@app.post("/classify", dependencies=[Depends(require_admin)])
def classify_news(
    payload: ClassifyIn,
    repos: Repositories = Depends(get_repos),
    settings: Settings = Depends(get_settings),
):
    if payload.newsId is not None:
        return classify.classify_news(repos, payload.newsId, settings)
    return classify.classify_batch(repos, settings, payload.batchSize)


@app.get("/classify", dependencies=[Depends(require_admin)])
def classify_status(repos: Repositories = Depends(get_repos)):
    return {"success": True, "data": classify.classification_status(repos)}


@app.put("/classify", dependencies=[Depends(require_admin)])
def classify_feedback(payload: FeedbackIn, repos: Repositories = Depends(get_repos)):
    classify.save_feedback(repos, payload.curationId, payload.feedback)
    return {"success": True, "message": "Feedback recorded"}


# -- curation ------------------------------------------------------------------


class CurationActionIn(BaseModel):
    action: str
    curationId: Id | None = None
    data: dict[str, Any] = {}


class TransitionIn(BaseModel):
    action: str
    data: dict[str, Any] = {}


class BulkDeleteIn(BaseModel):
    ids: list[Id]


class HistoricalArticlesIn(BaseModel):
    startDate: str | None = None
    endDate: str | None = None
    categoryId: Id | None = None
    status: str = "published"
    limit: int = Field(50, ge=1, le=500)
    reprocessType: str = "reclassify"


class HistoricalSourcesIn(BaseModel):
    startDate: str | None = None
    endDate: str | None = None
    sourceIds: list[Id] = []
    status: str = "any"
    limit: int = Field(50, ge=1, le=500)
    reprocessType: str = "reclassify"


def _transition_response(result: dict) -> dict:
    message = result.pop("message", None)
    return {"success": True, "message": message, "data": result}


@app.get("/curation", dependencies=[Depends(require_admin)])
def curation_queue(
    status: str = Query("pending"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    repos: Repositories = Depends(get_repos),
):
    return {"success": True, **curation.list_queue(repos, status, page, limit)}


@app.post("/curation", dependencies=[Depends(require_admin)])
def curation_action(
    payload: CurationActionIn,
    repos: Repositories = Depends(get_repos),
    settings: Settings = Depends(get_settings),
):
    user_id = curation.resolve_actor(repos, settings)
    result = curation.apply_action(repos, payload.curationId, payload.action, user_id, payload.data)
    return _transition_response(result)


@app.get("/curation/ids", dependencies=[Depends(require_admin)])
def curation_select_all(
    status: str = Query("pending"),
    repos: Repositories = Depends(get_repos),
):
    ids = curation.select_all_ids(repos, status)
    return {"success": True, "data": {"status": status, "ids": ids, "total": len(ids)}}


@app.post("/curation/bulk-delete", dependencies=[Depends(require_admin)])
def curation_bulk_delete(
    payload: BulkDeleteIn,
    repos: Repositories = Depends(get_repos),
    settings: Settings = Depends(get_settings),
):
    user_id = curation.resolve_actor(repos, settings)
    return {"success": True, "data": curation.bulk_delete(repos, payload.ids, user_id)}


@app.post("/curation/historical", dependencies=[Depends(require_admin)])
def curation_historical(
    payload: HistoricalArticlesIn,
    repos: Repositories = Depends(get_repos),
    settings: Settings = Depends(get_settings),
):
    return historical.reprocess_articles(
        repos,
        settings,
        payload.startDate,
        payload.endDate,
        category_id=payload.categoryId,
        status=payload.status,
        limit=payload.limit,
        reprocess_type=payload.reprocessType,
    )


@app.get("/curation/historical", dependencies=[Depends(require_admin)])
def curation_historical_stats(
    months: int = Query(12, ge=1, le=120),
    repos: Repositories = Depends(get_repos),
):
    return {"success": True, "data": historical.article_stats(repos, months)}


@app.post("/curation/sources-historical", dependencies=[Depends(require_admin)])
def curation_sources_historical(
    payload: HistoricalSourcesIn,
    repos: Repositories = Depends(get_repos),
    settings: Settings = Depends(get_settings),
):
    return historical.reprocess_source_items(
        repos,
        settings,
        payload.startDate,
        payload.endDate,
        source_ids=payload.sourceIds,
        status=payload.status,
        limit=payload.limit,
        reprocess_type=payload.reprocessType,
    )


@app.get("/curation/sources-historical", dependencies=[Depends(require_admin)])
def curation_sources_historical_stats(
    months: int = Query(6, ge=1, le=120),
    repos: Repositories = Depends(get_repos),
):
    return {"success": True, "data": historical.source_stats(repos, months)}


@app.get("/curation/{curation_id}", dependencies=[Depends(require_admin)])
def curation_detail(curation_id: str, repos: Repositories = Depends(get_repos)):
    return {"success": True, "data": curation.get_detail(repos, curation_id)}


@app.put("/curation/{curation_id}", dependencies=[Depends(require_admin)])
def curation_transition(
    curation_id: str,
    payload: TransitionIn,
    repos: Repositories = Depends(get_repos),
    settings: Settings = Depends(get_settings),
):
    user_id = curation.resolve_actor(repos, settings)
    result = curation.apply_action(repos, curation_id, payload.action, user_id, payload.data)
    return _transition_response(result)


@app.delete("/curation/{curation_id}", dependencies=[Depends(require_admin)])
def curation_delete(
    curation_id: str,
    repos: Repositories = Depends(get_repos),
    settings: Settings = Depends(get_settings),
):
    user_id = curation.resolve_actor(repos, settings)
    return _transition_response(curation.delete_curation(repos, curation_id, user_id))


# -- source registry -----------------------------------------------------------


class SourceIn(BaseModel):
    name: str | None = None
    url: str | None = None
    type: str | None = None
    description: str | None = None
    fetch_frequency: int | None = Field(default=None, ge=60)
    scraping_config: dict[str, Any] | None = None
    is_active: bool = True


class SourceUpdateIn(BaseModel):
    id: Id | None = None
    name: str | None = None
    url: str | None = None
    type: str | None = None
    description: str | None = None
    fetch_frequency: int | None = Field(default=None, ge=60)
    scraping_config: dict[str, Any] | None = None
    is_active: bool | None = None


def _normalize_source_type(raw: str | None) -> str:
    kind = (raw or "").strip().lower()
    if kind not in SOURCE_TYPES:
        raise HTTPException(status_code=400, detail='type must be "rss" or "scraping"')
    return "scraping" if kind == "html" else kind


def _check_url(url: str) -> str:
    url = url.strip()
    if not (url.startswith("http://") or url.startswith("https://")):
        raise HTTPException(status_code=400, detail="url must start with http:// or https://")
    return url


@app.get("/news-sources", dependencies=[Depends(require_admin)])
def list_sources(
    active: bool | None = Query(default=None),
    kind: str | None = Query(default=None, alias="type"),
    repos: Repositories = Depends(get_repos),
):
    return {"success": True, "data": repos.sources.list(active=active, kind=kind)}


@app.post("/news-sources", dependencies=[Depends(require_admin)])
def create_source(
    payload: SourceIn,
    repos: Repositories = Depends(get_repos),
    settings: Settings = Depends(get_settings),
):
    if not payload.name or not payload.url or not payload.type:
        raise HTTPException(status_code=400, detail="name, url and type are required")
    kind = _normalize_source_type(payload.type)
    url = _check_url(payload.url)
    if repos.sources.find_by_url(url):
        raise HTTPException(status_code=409, detail="A source with this URL already exists")

    created = repos.sources.create(
        {
            "name": payload.name.strip(),
            "url": url,
            "type": kind,
            "description": payload.description,
            "fetch_frequency": payload.fetch_frequency or settings.default_fetch_frequency,
            "scraping_config": payload.scraping_config or {},
            "is_active": payload.is_active,
        }
    )
    print(f"SOURCE_CREATED id={created.get('id')} type={kind}")
    return {"success": True, "data": created, "message": "Source created"}


@app.put("/news-sources", dependencies=[Depends(require_admin)])
def update_source(payload: SourceUpdateIn, repos: Repositories = Depends(get_repos)):
    if payload.id is None:
        raise HTTPException(status_code=400, detail="id is required")
    if not repos.sources.get(payload.id):
        raise HTTPException(status_code=404, detail="Source not found")

    fields: dict[str, Any] = {}
    if payload.name:
        fields["name"] = payload.name.strip()
    if payload.url:
        fields["url"] = _check_url(payload.url)
    if payload.type:
        fields["type"] = _normalize_source_type(payload.type)
    if payload.description is not None:
        fields["description"] = payload.description
    if payload.fetch_frequency:
        fields["fetch_frequency"] = payload.fetch_frequency
    if payload.scraping_config is not None:
        fields["scraping_config"] = payload.scraping_config
    if payload.is_active is not None:
        fields["is_active"] = payload.is_active
    if not fields:
        raise HTTPException(status_code=400, detail="Nothing to update")

    updated = repos.sources.update(payload.id, fields)
    return {"success": True, "data": updated, "message": "Source updated"}


@app.delete("/news-sources", dependencies=[Depends(require_admin)])
def delete_source(id: str | None = Query(default=None), repos: Repositories = Depends(get_repos)):
    if not id:
        raise HTTPException(status_code=400, detail="id is required")
    source = repos.sources.get(id)
    if not source:
        raise HTTPException(status_code=404, detail="Source not found")

    if repos.items.count(source_id=source["id"]) > 0:
        repos.sources.update(source["id"], {"is_active": False})
        print(f"SOURCE_DEACTIVATED id={source['id']} reason=has_items")
        return {"success": True, "message": "Source deactivated (it has collected news)"}

    repos.sources.delete(source["id"])
    print(f"SOURCE_DELETED id={source['id']}")
    return {"success": True, "message": "Source removed"}


# -- collected news ------------------------------------------------------------


class ScrapedActionIn(BaseModel):
    action: str | None = None
    news_ids: list[Id] | None = None


@app.get("/scraped", dependencies=[Depends(require_admin)])
def list_scraped(
    after: str | None = None,
    source_id: str | None = None,
    search: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    repos: Repositories = Depends(get_repos),
):
    rows = candidates.list_candidates(repos, after, source_id, search, limit)
    return {"success": True, "data": rows}


@app.post("/scraped", dependencies=[Depends(require_admin)])
def scraped_action(payload: ScrapedActionIn, repos: Repositories = Depends(get_repos)):
    result = candidates.bulk_action(repos, payload.action or "", payload.news_ids or [])
    return {"success": True, "data": result}


# -- automation ----------------------------------------------------------------


class AutomationIn(BaseModel):
    action: str
    options: dict[str, Any] = {}


@app.get("/automation", dependencies=[Depends(require_admin)])
def automation_status(
    action: str | None = None,
    repos: Repositories = Depends(get_repos),
):
    if action == "stats":
        return {"success": True, "data": automation_stats(repos)}
    return {"success": True, "data": {"automation_enabled": False, "mode": "on_demand"}}


@app.post("/automation", dependencies=[Depends(require_admin)])
def automation_run(
    payload: AutomationIn,
    repos: Repositories = Depends(get_repos),
    settings: Settings = Depends(get_settings),
):
    return run_automation(repos, settings, payload.action, payload.options)
