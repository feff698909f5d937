# artifacts.py
from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote, unquote

from .errors import ArtifactNotFound, DuplicateArtifact
from .model import ArtifactInfo

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------
# Content-addressed, write-once storage:
#
#   root/
#     blobs/<sha256[:2]>/<sha256>            content, shared between keys
#     runs/<run_id>/<stage_id>/<name>.json   one index entry per key
#
# The index entry is what makes a key exist. It is created with a hard link
# from a fully written temp file, which fails if the target exists: that is
# the atomic create-if-absent, and readers never see a half-written entry.
# ---------------------------------------------------------------------

DEFAULT_ARTIFACT_DIR = ".gateci/artifacts"

REPORT_JSON = "report+json"
HTML = "html"
LOG = "log"
JSON = "json"
BINARY = "application/octet-stream"

_EXTENSION_TYPES = {
    ".json": JSON,
    ".sarif": REPORT_JSON,
    ".html": HTML,
    ".htm": HTML,
    ".log": LOG,
    ".txt": LOG,
}


def guess_content_type(name: str) -> str:
    return _EXTENSION_TYPES.get(Path(name).suffix.lower(), BINARY)


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _encode(part: str) -> str:
    # stage ids and artifact names may contain "/" (e.g. "reports/sast.json")
    return quote(part, safe="")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ArtifactStore:
    """
    File-based artifact store keyed by (run id, stage id, name).

    put() is write-once per key; content is deduplicated by digest.
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()
        # put() and evict() both touch blobs: evict's garbage collection must
        # not remove a blob a concurrent put() has written but not yet indexed.
        self._lock = threading.Lock()

    # ---- paths ----

    def _blob_path(self, digest: str) -> Path:
        return self.root / "blobs" / digest[:2] / digest

    def _run_dir(self, run_id: str) -> Path:
        return self.root / "runs" / _encode(run_id)

    def _index_path(self, run_id: str, stage_id: str, name: str) -> Path:
        return self._run_dir(run_id) / _encode(stage_id) / f"{_encode(name)}.json"

    # ---- write ----

    def _write_blob(self, data: bytes, digest: str) -> None:
        blob = self._blob_path(digest)
        if blob.exists():
            return
        blob.parent.mkdir(parents=True, exist_ok=True)
        tmp = blob.with_name(f"{digest}.{uuid.uuid4().hex}.tmp")
        try:
            tmp.write_bytes(data)
            tmp.replace(blob)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

    def put(
        self,
        run_id: str,
        stage_id: str,
        name: str,
        content: bytes,
        content_type: Optional[str] = None,
    ) -> ArtifactInfo:
        """
        Store content under (run_id, stage_id, name).

        Raises DuplicateArtifact if the key already exists; the first
        write's content is left untouched.
        """
        if not isinstance(content, (bytes, bytearray)):
            raise TypeError(f"artifact content must be bytes, got {type(content).__name__}")
        data = bytes(content)
        digest = _sha256_bytes(data)
        info = ArtifactInfo(
            run_id=run_id,
            stage_id=stage_id,
            name=name,
            digest=digest,
            size=len(data),
            content_type=content_type or guess_content_type(name),
            created_at=_now(),
        )

        index = self._index_path(run_id, stage_id, name)
        with self._lock:
            if index.exists():
                raise DuplicateArtifact(
                    f"artifact '{name}' already exists",
                    stage=stage_id,
                    details={"run_id": run_id, "name": name},
                )
            self._write_blob(data, digest)

            index.parent.mkdir(parents=True, exist_ok=True)
            tmp = index.with_name(f".{index.name}.{uuid.uuid4().hex}.tmp")
            try:
                tmp.write_text(json.dumps(info.to_dict(), sort_keys=True, indent=2), encoding="utf-8")
                try:
                    os.link(tmp, index)
                except FileExistsError:
                    raise DuplicateArtifact(
                        f"artifact '{name}' already exists",
                        stage=stage_id,
                        details={"run_id": run_id, "name": name},
                    ) from None
            finally:
                tmp.unlink(missing_ok=True)

        logger.debug("stored artifact %s (%s, %d bytes)", info.key, digest[:12], info.size)
        return info

    # ---- read ----

    def info(self, run_id: str, stage_id: str, name: str) -> ArtifactInfo:
        index = self._index_path(run_id, stage_id, name)
        try:
            raw = json.loads(index.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise ArtifactNotFound(
                f"artifact '{name}' not found",
                stage=stage_id,
                details={"run_id": run_id, "name": name},
            ) from None
        return ArtifactInfo(**raw)

    def exists(self, run_id: str, stage_id: str, name: str) -> bool:
        return self._index_path(run_id, stage_id, name).exists()

    def get(self, run_id: str, stage_id: str, name: str) -> bytes:
        info = self.info(run_id, stage_id, name)
        try:
            return self._blob_path(info.digest).read_bytes()
        except FileNotFoundError:
            raise ArtifactNotFound(
                f"artifact '{name}' content missing",
                stage=stage_id,
                details={"run_id": run_id, "name": name, "digest": info.digest},
            ) from None

    def materialize(self, run_id: str, stage_id: str, name: str, dest: str | Path) -> Path:
        """Copy an artifact's content to dest (parents created)."""
        info = self.info(run_id, stage_id, name)
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self._blob_path(info.digest), dest)
        return dest

    def list(self, run_id: str) -> List[ArtifactInfo]:
        run_dir = self._run_dir(run_id)
        if not run_dir.exists():
            return []
        out: List[ArtifactInfo] = []
        for index in sorted(run_dir.glob("*/*.json")):
            out.append(ArtifactInfo(**json.loads(index.read_text(encoding="utf-8"))))
        return out

    def runs(self) -> List[str]:
        runs_dir = self.root / "runs"
        if not runs_dir.exists():
            return []
        return sorted(unquote(p.name) for p in runs_dir.iterdir() if p.is_dir())

    # ---- retention ----

    def evict(self, run_id: str) -> int:
        """
        Remove every artifact of a run, then drop blobs no other run references.
        Returns the number of artifacts removed.
        """
        with self._lock:
            removed = len(self.list(run_id))
            run_dir = self._run_dir(run_id)
            if run_dir.exists():
                shutil.rmtree(run_dir)
            self._collect_garbage()
        logger.info("evicted %d artifact(s) of run %s", removed, run_id)
        return removed

    def _collect_garbage(self) -> None:
        blobs_dir = self.root / "blobs"
        if not blobs_dir.exists():
            return
        live: Dict[str, bool] = {}
        runs_dir = self.root / "runs"
        if runs_dir.exists():
            for index in runs_dir.glob("*/*/*.json"):
                live[json.loads(index.read_text(encoding="utf-8"))["digest"]] = True
        for blob in blobs_dir.glob("*/*"):
            if blob.is_file() and blob.name not in live:
                blob.unlink(missing_ok=True)
