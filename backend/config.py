import os
from dataclasses import dataclass, field
from functools import lru_cache


def get_int(name: str, default: int | None = None) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_float(name: str, default: float | None = None) -> float | None:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def get_list(name: str, default: list[str] | None = None) -> list[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default or [])
    return [s.strip() for s in raw.split(",") if s.strip()]


@dataclass
class Settings:
    """Runtime knobs for the collection and curation pipeline.

    Built once from the environment and handed to the API handlers and jobs,
    so the category fallback rules and the acting curator are not scattered
    across modules as literals.
    """

    admin_user_id: str | None = None
    site_url: str = "http://localhost:3000"
    historical_source_name: str = "Historical Articles"

    collect_max_items: int = 20
    default_fetch_frequency: int = 3600
    scrape_summary_chars: int = 500

    classify_batch_size: int = 10
    classify_delay_sec: float = 1.0
    classify_content_chars: int = 1000
    fallback_confidence: float = 0.1
    fallback_markers: list[str] = field(
        default_factory=lambda: ["geral", "outros", "general", "other"]
    )

    historical_article_results: int = 10
    historical_source_results: int = 15
    automation_step_pause_sec: float = 2.0

    @classmethod
    def from_env(cls) -> "Settings":
        base = cls()
        return cls(
            admin_user_id=os.getenv("CURATION_ADMIN_USER_ID") or None,
            site_url=(os.getenv("SITE_URL") or base.site_url).rstrip("/"),
            historical_source_name=os.getenv("HISTORICAL_SOURCE_NAME")
            or base.historical_source_name,
            collect_max_items=get_int("COLLECT_MAX_ITEMS", base.collect_max_items),
            default_fetch_frequency=get_int(
                "DEFAULT_FETCH_FREQUENCY", base.default_fetch_frequency
            ),
            scrape_summary_chars=get_int(
                "SCRAPE_SUMMARY_CHARS", base.scrape_summary_chars
            ),
            classify_batch_size=get_int(
                "CLASSIFY_BATCH_SIZE", base.classify_batch_size
            ),
            classify_delay_sec=get_float(
                "CLASSIFY_DELAY_SEC", base.classify_delay_sec
            ),
            classify_content_chars=get_int(
                "CLASSIFY_CONTENT_CHARS", base.classify_content_chars
            ),
            fallback_confidence=get_float(
                "CLASSIFY_FALLBACK_CONFIDENCE", base.fallback_confidence
            ),
            fallback_markers=get_list(
                "CLASSIFY_FALLBACK_MARKERS", base.fallback_markers
            ),
            automation_step_pause_sec=get_float(
                "AUTOMATION_STEP_PAUSE_SEC", base.automation_step_pause_sec
            ),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
