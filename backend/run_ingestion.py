import argparse
import os
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]


@dataclass
class Job:
    name: str
    module: str
    timeout_env: str
    default_timeout: int
    args: list[str] = field(default_factory=list)

    def timeout(self, env: dict) -> int:
        try:
            return int(env.get(self.timeout_env) or self.default_timeout)
        except ValueError:
            return self.default_timeout


# collection first so the classifier sees the fresh items
JOBS = [
    Job("collect_sources", "runner.jobs.collect_sources", "COLLECT_JOB_TIMEOUT", 600),
    Job("classify_pending", "runner.jobs.classify_pending", "CLASSIFY_JOB_TIMEOUT", 900),
]


def _job_env() -> dict:
    env = os.environ.copy()
    existing = env.get("PYTHONPATH", "")
    env["PYTHONPATH"] = f"{REPO_ROOT}{os.pathsep}{existing}" if existing else str(REPO_ROOT)
    return env


def run_job(job: Job) -> int:
    env = _job_env()
    timeout_sec = job.timeout(env)
    print(f"JOB_START name={job.name} timeout={timeout_sec}s")
    started = time.monotonic()
    try:
        subprocess.run(
            [sys.executable, "-m", job.module, *job.args],
            cwd=REPO_ROOT,
            env=env,
            check=True,
            timeout=timeout_sec,
        )
        rc = 0
    except subprocess.TimeoutExpired:
        print(f"JOB_TIMEOUT name={job.name} after={timeout_sec}s")
        rc = 1
    except subprocess.CalledProcessError as e:
        rc = e.returncode or 1
    elapsed = round(time.monotonic() - started, 1)
    print(f"JOB_END name={job.name} rc={rc} elapsed={elapsed}s")
    return rc


def select_jobs(only: list[str] | None, force: bool = False) -> list[Job]:
    selected = []
    for job in JOBS:
        if only and job.name not in only:
            continue
        if force and job.name == "collect_sources":
            job = Job(job.name, job.module, job.timeout_env, job.default_timeout, ["--force"])
        selected.append(job)
    return selected


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the collection and classification jobs in order")
    parser.add_argument("--only", choices=[j.name for j in JOBS], action="append")
    parser.add_argument("--force", action="store_true", help="Collect even if sources were fetched recently")
    args = parser.parse_args(argv)

    results = {job.name: run_job(job) for job in select_jobs(args.only, args.force)}
    failed = [name for name, rc in results.items() if rc != 0]
    print(f"RUN_SUMMARY jobs={len(results)} failed={','.join(failed) or 'none'}")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
