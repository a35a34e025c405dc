import time
from datetime import datetime, timedelta, timezone

from backend.config import Settings
from backend.db import Repositories
from backend.errors import ValidationFailed
from runner.ingest.collector import collect_from_all_sources
from runner.process.classify import classify_batch

ACTIONS = {"collect", "classify", "full"}


def automation_stats(repos: Repositories) -> dict:
    since = (datetime.now(timezone.utc) - timedelta(hours=24)).isoformat()
    return {
        "active_sources": len(repos.sources.list(active=True)),
        "pending_curation": repos.curation.count(status="pending"),
        "collected_24h": repos.items.count(since=since),
    }


def run_automation(repos: Repositories, settings: Settings, action: str, options: dict | None = None) -> dict:
    options = options or {}
    if action not in ACTIONS:
        raise ValidationFailed(f"Unknown action: {action}")

    steps = []
    if action in ("collect", "full"):
        print("AUTOMATION_STEP step=collect")
        steps.append(
            {
                "step": "collect",
                "result": collect_from_all_sources(
                    repos, settings, force_refresh=bool(options.get("force"))
                ),
            }
        )
    if action == "full" and settings.automation_step_pause_sec > 0:
        time.sleep(settings.automation_step_pause_sec)
    if action in ("classify", "full"):
        print("AUTOMATION_STEP step=classify")
        steps.append(
            {
                "step": "classify",
                "result": classify_batch(repos, settings, options.get("batchSize")),
            }
        )

    return {
        "success": all(s["result"].get("success", False) for s in steps),
        "action": "full_pipeline" if action == "full" else action,
        "steps": steps,
    }
