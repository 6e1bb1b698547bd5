from __future__ import annotations
import os

PROVISION_RETRIES = int(os.environ.get("PLANGATE_PROVISION_RETRIES", "3"))
PROVISION_BACKOFF_SECONDS = float(os.environ.get("PLANGATE_PROVISION_BACKOFF", "5"))
PROVISION_BACKOFF_MAX_SECONDS = float(os.environ.get("PLANGATE_PROVISION_BACKOFF_MAX", "60"))
STEP_TIMEOUT_SECONDS = float(os.environ.get("PLANGATE_STEP_TIMEOUT", "3600"))
OUTPUT_TAIL_LINES = int(os.environ.get("PLANGATE_OUTPUT_TAIL_LINES", "100"))
TERMINATE_GRACE_SECONDS = float(os.environ.get("PLANGATE_TERMINATE_GRACE", "10"))
CONTAINER_ENGINE = os.environ.get("PLANGATE_CONTAINER_ENGINE", "podman")
JOBS_FILE = os.environ.get("PLANGATE_JOBS_FILE", "plangate_jobs.yaml")
MAX_WORKERS = int(os.environ["PLANGATE_MAX_WORKERS"]) if os.environ.get("PLANGATE_MAX_WORKERS") else None
MAX_CONCURRENCY_KEYS = int(os.environ.get("PLANGATE_MAX_CONCURRENCY_KEYS", "4096"))
MAX_RUN_RECORDS = int(os.environ.get("PLANGATE_MAX_RUN_RECORDS", "1000"))
