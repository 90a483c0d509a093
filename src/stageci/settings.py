from __future__ import annotations
import os

STAGECI_HOME = os.environ.get("STAGECI_HOME", ".stageci")
HISTORY_DIR = os.environ.get("STAGECI_HISTORY_DIR", os.path.join(STAGECI_HOME, "history"))
RETENTION_COUNT = int(os.environ.get("STAGECI_RETENTION", "10"))
# unset -> no pipeline-wide budget
TIMEOUT_SECONDS = float(os.environ["STAGECI_TIMEOUT"]) if os.environ.get("STAGECI_TIMEOUT") else None
HOOK_TIMEOUT_SECONDS = float(os.environ.get("STAGECI_HOOK_TIMEOUT", "300"))
OUTPUT_LIMIT = int(os.environ.get("STAGECI_OUTPUT_LIMIT", "4000"))
POLL_INTERVAL = float(os.environ.get("STAGECI_POLL_INTERVAL", "0.1"))
