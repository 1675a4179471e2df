# artifacts.py
from __future__ import annotations

import hashlib
import io
import json
import logging
import shutil
import tarfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol

from .errors import (
    ArtifactError,
    ArtifactNotFoundError,
    ArtifactNotReadyError,
    DuplicateArtifactError,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Artifacts are handed from a producer job to consumer jobs of the same run:
#
#   producer: put(job_id, name, payload)   -> stored under sha256(payload)
#   run:      mark_succeeded(job_id)       -> names owned by job become readable
#   consumer: get(name)                    -> payload bytes (read-only)
#
# Payload bytes live in an ArtifactTransport, addressed by (run_id, digest).
# The store keeps the name -> record index and the readiness rules, and drops
# everything once the run has an aggregate result.
# ---------------------------------------------------------------------


DEFAULT_PACK_EXCLUDES = [
    ".git/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


@dataclass(frozen=True)
class ArtifactRecord:
    name: str
    job_id: str
    digest: str
    size: int
    stored_at: float


# ---------------------------------------------------------------------
# Transports (where payload bytes physically live)
# ---------------------------------------------------------------------

class ArtifactTransport(Protocol):
    def write(self, run_id: str, digest: str, payload: bytes) -> None: ...

    def read(self, run_id: str, digest: str) -> bytes: ...

    def drop(self, run_id: str) -> None: ...


class MemoryTransport:
    """In-process transport. Default when no artifact directory is configured."""

    def __init__(self) -> None:
        self._blobs: Dict[str, Dict[str, bytes]] = {}
        self._lock = threading.Lock()

    def write(self, run_id: str, digest: str, payload: bytes) -> None:
        with self._lock:
            self._blobs.setdefault(run_id, {})[digest] = bytes(payload)

    def read(self, run_id: str, digest: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[run_id][digest]
            except KeyError:
                raise ArtifactNotFoundError(f"payload {digest[:12]} missing for run {run_id}")

    def drop(self, run_id: str) -> None:
        with self._lock:
            self._blobs.pop(run_id, None)

    def runs(self) -> List[str]:
        with self._lock:
            return sorted(self._blobs)


class FileTransport:
    """
    File-based transport:
      root/
        <run_id>/
          <digest>.blob
          <digest>.manifest.json
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _run_dir(self, run_id: str) -> Path:
        d = self.root / run_id
        d.mkdir(parents=True, exist_ok=True)
        return d

    def blob_path(self, run_id: str, digest: str) -> Path:
        return self._run_dir(run_id) / f"{digest}.blob"

    def write(self, run_id: str, digest: str, payload: bytes) -> None:
        blob = self.blob_path(run_id, digest)
        if blob.exists():
            return  # content-addressed: same digest, same bytes

        tmp = blob.with_suffix(".blob.tmp")
        try:
            tmp.write_bytes(payload)
            tmp.replace(blob)
            manifest = {"digest": digest, "size": len(payload), "stored_at_unix": int(time.time())}
            (blob.parent / f"{digest}.manifest.json").write_text(
                json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8"
            )
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

    def read(self, run_id: str, digest: str) -> bytes:
        blob = self.root / run_id / f"{digest}.blob"
        if not blob.exists():
            raise ArtifactNotFoundError(f"payload {digest[:12]} missing for run {run_id}")
        data = blob.read_bytes()
        if _sha256_bytes(data) != digest:
            raise ArtifactError(f"payload {digest[:12]} is corrupt (digest mismatch)")
        return data

    def drop(self, run_id: str) -> None:
        d = self.root / run_id
        if d.exists():
            shutil.rmtree(d)


# ---------------------------------------------------------------------
# Store (one per run)
# ---------------------------------------------------------------------

class ArtifactStore:
    """
    Named artifacts of a single run.

    `declared` maps each job id to the artifact names it declares as outputs,
    so a consumer asking too early gets ArtifactNotReadyError rather than
    ArtifactNotFoundError.
    """

    def __init__(
        self,
        run_id: str,
        transport: Optional[ArtifactTransport] = None,
        declared: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        self.run_id = run_id
        self.transport: ArtifactTransport = transport if transport is not None else MemoryTransport()
        self._declared: Dict[str, str] = {}
        for job_id, names in (declared or {}).items():
            for name in names:
                self._declared.setdefault(name, job_id)
        self._records: Dict[str, ArtifactRecord] = {}
        self._succeeded: set = set()
        self._discarded = False
        self._lock = threading.Lock()

    def put(self, job_id: str, name: str, payload: bytes) -> ArtifactRecord:
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise ArtifactError(f"artifact '{name}' payload must be bytes", job=job_id)
        data = bytes(payload)
        with self._lock:
            if self._discarded:
                raise ArtifactError(f"run {self.run_id} is finished; cannot store '{name}'", job=job_id)
            existing = self._records.get(name)
            if existing is not None:
                raise DuplicateArtifactError(
                    f"artifact '{name}' already stored by job '{existing.job_id}'",
                    job=job_id,
                )
            digest = _sha256_bytes(data)
            self.transport.write(self.run_id, digest, data)
            record = ArtifactRecord(
                name=name, job_id=job_id, digest=digest, size=len(data), stored_at=time.time()
            )
            self._records[name] = record

        logger.debug("artifact %s stored by %s (%d bytes, %s)", name, job_id, record.size, digest[:12])
        return record

    def mark_succeeded(self, job_id: str) -> None:
        with self._lock:
            self._succeeded.add(job_id)

    def record(self, name: str) -> ArtifactRecord:
        with self._lock:
            return self._lookup(name)

    def _lookup(self, name: str) -> ArtifactRecord:
        record = self._records.get(name)
        if record is None:
            producer = self._declared.get(name)
            if producer is None:
                raise ArtifactNotFoundError(f"no job in run {self.run_id} produces '{name}'")
            if producer in self._succeeded:
                raise ArtifactNotFoundError(
                    f"job '{producer}' succeeded without storing artifact '{name}'", job=producer
                )
            raise ArtifactNotReadyError(f"artifact '{name}' not produced yet by job '{producer}'")
        if record.job_id not in self._succeeded:
            raise ArtifactNotReadyError(
                f"artifact '{name}' not readable until job '{record.job_id}' succeeds"
            )
        return record

    def get(self, name: str) -> bytes:
        with self._lock:
            record = self._lookup(name)
        return self.transport.read(self.run_id, record.digest)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._records)

    def discard(self) -> None:
        with self._lock:
            self._discarded = True
            self._records.clear()
        self.transport.drop(self.run_id)

    def bind(self, job_id: str) -> "BoundArtifacts":
        return BoundArtifacts(self, job_id)


class BoundArtifacts:
    """A job's view of the run store: puts are attributed to that job."""

    def __init__(self, store: ArtifactStore, job_id: str):
        self._store = store
        self.job_id = job_id

    def put(self, name: str, payload: bytes) -> ArtifactRecord:
        return self._store.put(self.job_id, name, payload)

    def get(self, name: str) -> bytes:
        return self._store.get(name)


# ---------------------------------------------------------------------
# Packing files and directories (used by the shell executor)
# ---------------------------------------------------------------------

def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def pack_path(src: str | Path, *, excludes: Optional[List[str]] = None) -> bytes:
    """
    tar.gz a file or directory. Entries are stored relative to the parent of
    `src`, so unpacking into a directory recreates `src` by name.
    """
    src = Path(src).resolve()
    if not src.exists():
        raise ArtifactNotFoundError(f"output path not found: {src}")
    exclude_globs = list(DEFAULT_PACK_EXCLUDES) + list(excludes or [])
    base = src.parent

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        files = [src] if src.is_file() else list(_iter_files_under(src))
        for f in files:
            rel = str(f.relative_to(base)).replace("\\", "/")
            if _matches_any_glob(rel, exclude_globs):
                continue
            tar.add(str(f), arcname=rel, recursive=False)
    return buf.getvalue()


def unpack_payload(payload: bytes, dest: str | Path, *, name: str) -> Path:
    """
    Materialize a payload under `dest`. Packed tarballs are extracted; any
    other payload is written as the file `dest/<name>`.
    """
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    buf = io.BytesIO(payload)
    try:
        tar = tarfile.open(fileobj=buf, mode="r:gz")
    except (tarfile.TarError, OSError):
        target = dest / name
        target.write_bytes(payload)
        return target
    with tar:
        tar.extractall(path=str(dest), filter="data")
    return dest


def transport_for(directory: str | Path | None) -> ArtifactTransport:
    """FileTransport under `directory`, or in-memory when it is empty."""
    if directory:
        return FileTransport(directory)
    return MemoryTransport()
