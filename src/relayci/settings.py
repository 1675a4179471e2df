from __future__ import annotations
import os


def _float_or_none(raw: str) -> float | None:
    return float(raw) if raw.strip() else None


WORKERS = int(os.environ.get("RELAYCI_WORKERS", "0")) or None  # None -> cpu_count - 1
ARTIFACT_DIR = os.environ.get("RELAYCI_ARTIFACT_DIR", "")  # empty -> in-memory
WORKDIR = os.environ.get("RELAYCI_WORKDIR", ".")
LOG_LEVEL = os.environ.get("RELAYCI_LOG_LEVEL", "WARNING")
LOG_FORMAT = os.environ.get("RELAYCI_LOG_FORMAT", "human")  # human | json
DEFAULT_TIMEOUT = _float_or_none(os.environ.get("RELAYCI_DEFAULT_TIMEOUT", ""))
API_HOST = os.environ.get("RELAYCI_API_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("RELAYCI_API_PORT", "8080"))
