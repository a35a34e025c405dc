import argparse
import fcntl

from backend.config import get_settings
from backend.db import get_repositories
from runner.ingest.collector import collect_from_all_sources, collect_from_source


def main() -> int:
    lock_path = "/tmp/newsroom_collect_sources.lock"
    try:
        lock_fd = open(lock_path, "w")
        fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        print("JOB_LOCKED exit=1")
        return 1

    parser = argparse.ArgumentParser()
    parser.add_argument("--source-id", help="Collect a single source")
    parser.add_argument("--force", action="store_true", help="Ignore fetch_frequency")
    args = parser.parse_args()

    repos = get_repositories()
    settings = get_settings()

    if args.source_id:
        result = collect_from_source(repos, args.source_id, settings, force_refresh=args.force)
        if not result.get("success"):
            print(f"COLLECT_DONE source_id={args.source_id} error={result.get('error')}")
            return 1
        data = result["data"]
        print(
            f"COLLECT_DONE source_id={args.source_id} collected={data.get('collected', 0)} "
            f"skipped={bool(data.get('skipped'))}"
        )
        return 0

    result = collect_from_all_sources(repos, settings, force_refresh=args.force)
    data = result["data"]
    print(
        f"COLLECT_DONE sources={data['total_sources']} collected={data['total_collected']} "
        f"errors={data['total_errors']}"
    )
    return 0 if data["total_errors"] < max(data["total_sources"], 1) else 1


if __name__ == "__main__":
    raise SystemExit(main())
