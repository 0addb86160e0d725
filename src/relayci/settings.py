from __future__ import annotations
import os

CACHE_DIR = os.environ.get("RELAYCI_CACHE_DIR", ".relayci/cache")
WORKFLOW = os.environ.get("RELAYCI_WORKFLOW") or None
WORKERS = int(os.environ["RELAYCI_WORKERS"]) if os.environ.get("RELAYCI_WORKERS") else None
STEP_TIMEOUT = float(os.environ["RELAYCI_STEP_TIMEOUT"]) if os.environ.get("RELAYCI_STEP_TIMEOUT") else None
HOST = os.environ.get("RELAYCI_HOST", "127.0.0.1")
PORT = int(os.environ.get("RELAYCI_PORT", "8080"))
OUTPUT_TAIL = int(os.environ.get("RELAYCI_OUTPUT_TAIL", "4000"))
