from __future__ import annotations
import os

WORKDIR = os.environ.get("CIFORGE_API_WORKDIR", ".")
MAX_CAPACITY = int(os.environ.get("CIFORGE_API_MAX_CAPACITY", "4"))
KEEP_RUNS = int(os.environ.get("CIFORGE_API_KEEP_RUNS", "100"))
