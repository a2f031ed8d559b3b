from __future__ import annotations
import os

WORKFLOW_DIR = os.environ.get("YAMLCI_WORKFLOW_DIR", ".github/workflows")
WORK_ROOT = os.environ.get("YAMLCI_WORK_ROOT", ".yamlci/work")
MAX_WORKERS = int(os.environ["YAMLCI_MAX_WORKERS"]) if os.environ.get("YAMLCI_MAX_WORKERS") else None
SECRET_PREFIX = os.environ.get("YAMLCI_SECRET_PREFIX", "YAMLCI_SECRET_")
DEFAULT_TIMEOUT_MINUTES = float(os.environ.get("YAMLCI_DEFAULT_TIMEOUT_MINUTES", "360"))
OUTPUT_TAIL_CHARS = int(os.environ.get("YAMLCI_OUTPUT_TAIL_CHARS", "4000"))
