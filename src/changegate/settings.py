from __future__ import annotations
import os

WORKFLOW_FILE = os.environ.get("CHANGEGATE_WORKFLOW", "changegate_workflow.py")
MAX_WORKERS = int(os.environ["CHANGEGATE_MAX_WORKERS"]) if os.environ.get("CHANGEGATE_MAX_WORKERS") else None
GRACE_SECONDS = float(os.environ.get("CHANGEGATE_GRACE_SECONDS", "10"))
COMPARE_REF = os.environ.get("CHANGEGATE_COMPARE_REF", "origin/main")
OUTPUT_TAIL = int(os.environ.get("CHANGEGATE_OUTPUT_TAIL", "4000"))
