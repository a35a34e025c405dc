import argparse
import fcntl

from backend.config import get_settings
from backend.db import get_repositories
from backend.ollama import is_ollama_healthy
from runner.process.classify import classify_batch


def main() -> int:
    lock_path = "/tmp/newsroom_classify_pending.lock"
    try:
        lock_fd = open(lock_path, "w")
        fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        print("JOB_LOCKED exit=1")
        return 1

    parser = argparse.ArgumentParser()
    parser.add_argument("--batch-size", type=int, default=None)
    args = parser.parse_args()

    if not is_ollama_healthy():
        # items still get the fallback category
        print("CLASSIFY_LLM_DOWN fallback=1")

    result = classify_batch(get_repositories(), get_settings(), args.batch_size)
    data = result["data"]
    print(
        f"CLASSIFY_DONE processed={data.get('processed', 0)} "
        f"ok={data.get('successful', 0)} errors={data.get('errors', 0)}"
    )
    return 0 if result.get("success") else 1


if __name__ == "__main__":
    raise SystemExit(main())
