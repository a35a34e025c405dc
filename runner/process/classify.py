import math
import time

from backend.config import Settings
from backend.db import Repositories, utcnow_iso
from backend.errors import NotFound, ValidationFailed
from backend.ollama import clean_text, generate_json

SCAN_PAGE_SIZE = 100
FEEDBACK_TYPES = {"correct", "incorrect", "suggestion"}


def build_prompt(news: dict, categories: list[dict], content_chars: int = 1000) -> str:
    category_list = "\n".join(
        f"{c.get('name')}: {c.get('description') or 'No description'}" for c in categories
    )
    content = clean_text(news.get("content"))[:content_chars]
    return f"""
Classify the following news item into one of the available categories.

NEWS:
Title: {clean_text(news.get('title'))}
Summary: {clean_text(news.get('summary'))}
Content: {content}

AVAILABLE CATEGORIES:
{category_list}

Answer ONLY with JSON in this format:
{{
  "category_name": "category name",
  "confidence": 0.85,
  "reasoning": "short explanation of the choice"
}}

Confidence must be a number between 0 and 1.
""".strip()


def fallback_category(categories: list[dict], markers: list[str]) -> dict:
    for category in categories:
        name = (category.get("name") or "").lower()
        if any(marker.lower() in name for marker in markers):
            return category
    return categories[0]


def clamp_confidence(value) -> float:
    confidence = float(value)
    if math.isnan(confidence):
        raise ValueError("confidence is NaN")
    return min(max(confidence, 0.0), 1.0)


def classify_with_ai(news: dict, categories: list[dict], settings: Settings) -> dict:
    """Ask the model for a category. Never raises: failures fall back."""
    try:
        verdict = generate_json(build_prompt(news, categories, settings.classify_content_chars))
        name = str(verdict.get("category_name") or "").strip()
        if not name:
            raise ValueError("Model answer has no category_name")
        category = next(
            (c for c in categories if (c.get("name") or "").lower() == name.lower()),
            None,
        )
        if category is None:
            raise ValueError(f"Category not found: {name}")
        return {
            "category_id": category["id"],
            "category_name": category["name"],
            "confidence": clamp_confidence(verdict.get("confidence", 0)),
            "reasoning": verdict.get("reasoning") or "No explanation provided",
            "fallback": False,
        }
    except Exception as e:
        print(f"CLASSIFY_FALLBACK news_id={news.get('id')} err={type(e).__name__}: {str(e)[:200]}")
        default = fallback_category(categories, settings.fallback_markers)
        return {
            "category_id": default["id"],
            "category_name": default["name"],
            "confidence": settings.fallback_confidence,
            "reasoning": f"Automatic classification failed: {str(e) or type(e).__name__}",
            "fallback": True,
        }


def record_classification(repos: Repositories, news_id, classification: dict) -> dict:
    fields = {
        "suggested_category_id": classification["category_id"],
        "ai_confidence": classification["confidence"],
        "ai_category_reasoning": classification["reasoning"],
    }
    existing = repos.curation.get_by_candidate(news_id)
    if existing:
        if existing.get("status") != "pending":
            raise ValidationFailed(
                f"News item already curated (status {existing.get('status')})"
            )
        return repos.curation.update(existing["id"], fields) or existing
    return repos.curation.create({"scraped_news_id": news_id, "status": "pending", **fields})


def _needs_classification(curation: dict | None) -> bool:
    if curation is None:
        return True
    return curation.get("status") == "pending" and curation.get("suggested_category_id") is None


def find_unclassified(repos: Repositories, limit: int) -> list[dict]:
    found: list[dict] = []
    offset = 0
    while len(found) < limit:
        page = repos.items.list_page(offset, SCAN_PAGE_SIZE)
        if not page:
            break
        curations = repos.curation.list_for_candidates([n["id"] for n in page])
        by_item = {c.get("scraped_news_id"): c for c in curations}
        for news in page:
            if _needs_classification(by_item.get(news["id"])):
                found.append(news)
                if len(found) >= limit:
                    break
        offset += SCAN_PAGE_SIZE
    return found


def _active_categories(repos: Repositories) -> list[dict]:
    categories = repos.categories.list_active()
    if not categories:
        raise ValidationFailed("No active categories available")
    return categories


def classify_news(repos: Repositories, news_id, settings: Settings) -> dict:
    news = repos.items.get(news_id)
    if not news:
        raise NotFound("News item not found")
    categories = _active_categories(repos)

    classification = classify_with_ai(news, categories, settings)
    record_classification(repos, news["id"], classification)
    return {
        "success": True,
        "data": {
            "news_id": news["id"],
            "suggested_category": classification["category_name"],
            "confidence": classification["confidence"],
            "reasoning": classification["reasoning"],
        },
    }


def classify_batch(repos: Repositories, settings: Settings, batch_size: int | None = None) -> dict:
    batch_size = batch_size or settings.classify_batch_size
    news_list = find_unclassified(repos, batch_size)
    if not news_list:
        return {"success": True, "data": {"processed": 0, "message": "No news to classify"}}
    categories = _active_categories(repos)

    results = []
    success_count = 0
    error_count = 0
    for index, news in enumerate(news_list):
        if index and settings.classify_delay_sec > 0:
            time.sleep(settings.classify_delay_sec)
        classification = classify_with_ai(news, categories, settings)
        try:
            record_classification(repos, news["id"], classification)
            success_count += 1
            results.append(
                {
                    "news_id": news["id"],
                    "success": True,
                    "category": classification["category_name"],
                    "confidence": classification["confidence"],
                }
            )
        except Exception as e:
            error_count += 1
            print(f"CLASSIFY_SAVE_FAIL news_id={news['id']} err={type(e).__name__}: {str(e)[:200]}")
            results.append({"news_id": news["id"], "success": False, "error": str(e)})

    print(f"CLASSIFY_BATCH processed={len(news_list)} ok={success_count} errors={error_count}")
    return {
        "success": error_count == 0,
        "data": {
            "processed": len(news_list),
            "successful": success_count,
            "errors": error_count,
            "results": results,
        },
    }


def classification_status(repos: Repositories) -> dict:
    categories = repos.categories.list_active()
    total_items = repos.items.count()
    curated = repos.curation.count()
    waiting = repos.curation.count(status="pending", unsuggested=True)
    return {
        "unclassified_count": max(0, total_items - curated + waiting),
        "available_categories": len(categories),
        "categories": categories,
    }


def save_feedback(repos: Repositories, curation_id, feedback: dict) -> dict | None:
    if not curation_id:
        raise ValidationFailed("curationId is required")
    kind = (feedback or {}).get("type")
    if kind not in FEEDBACK_TYPES:
        raise ValidationFailed("feedback.type must be correct, incorrect or suggestion")
    if not repos.curation.get(curation_id):
        raise NotFound("Curation record not found")
    return repos.feedback.create(
        {
            "curation_id": curation_id,
            "feedback_type": kind,
            "original_category": feedback.get("original_category"),
            "correct_category": feedback.get("correct_category"),
            "confidence_score": feedback.get("confidence"),
            "notes": feedback.get("notes"),
            "created_at": utcnow_iso(),
        }
    )
