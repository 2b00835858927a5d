# artifacts.py
from __future__ import annotations

import hashlib
import io
import logging
import shutil
import tarfile
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from .errors import ArtifactNotFoundError, CancellationError, ConfigError
from .model import ArtifactHandle

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Artifacts are the only thing jobs share. A producing step put()s bytes
# under a name; consumers get() by name and never see the producer.
#
# Each name is written exactly once per run. The graph builder rejects
# duplicate upload names before anything runs, so a second put() for the
# same name means the definition slipped past that check.
#
# Directories are packed into a tar.gz payload (packed=True) and unpacked
# again on download.
# ---------------------------------------------------------------------


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _payload_key(name: str) -> str:
    # distinct names never share a file
    return hashlib.sha256(name.encode("utf-8")).hexdigest()


def pack_directory(src: Path) -> bytes:
    """tar.gz a directory's contents with deterministic member order."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for p in sorted(src.rglob("*")):
            tar.add(str(p), arcname=p.relative_to(src).as_posix(), recursive=False)
    return buf.getvalue()


def unpack_directory(data: bytes, dest: Path) -> List[Path]:
    dest.mkdir(parents=True, exist_ok=True)
    root = dest.resolve()
    out: List[Path] = []
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        for member in tar.getmembers():
            target = (root / member.name).resolve()
            if root != target and root not in target.parents:
                raise ValueError(f"refusing to unpack {member.name!r} outside {root}")
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            if not member.isfile():
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            fh = tar.extractfile(member)
            target.write_bytes(fh.read() if fh else b"")
            out.append(target)
    return out


class ArtifactStore:
    """
    In-memory named-slot artifact storage, safe for concurrent producers
    and consumers.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._handles: Dict[str, ArtifactHandle] = {}
        self._payloads: Dict[str, bytes] = {}

    # -- storage backend hooks --

    def _write(self, name: str, data: bytes) -> str | None:
        self._payloads[name] = data
        return None

    def _read(self, handle: ArtifactHandle) -> bytes:
        return self._payloads[handle.name]

    # -- public API --

    def put(self, name: str, data: bytes, *, producer: str | None = None, packed: bool = False) -> ArtifactHandle:
        with self._cond:
            if name in self._handles:
                raise ConfigError(
                    f"artifact {name!r} already uploaded by {self._handles[name].producer}",
                    f"artifacts.{name}",
                )
            path = self._write(name, data)
            handle = ArtifactHandle(
                name=name,
                producer=producer,
                digest=_sha256_bytes(data),
                size=len(data),
                path=path,
                packed=packed,
            )
            self._handles[name] = handle
            self._cond.notify_all()
        logger.info(f"Stored artifact {name} ({handle.size} bytes) from {producer}")
        return handle

    def get(self, name: str) -> bytes:
        with self._cond:
            handle = self._handles.get(name)
            if handle is None:
                raise ArtifactNotFoundError(name)
            return self._read(handle)

    def handle(self, name: str) -> ArtifactHandle:
        with self._cond:
            handle = self._handles.get(name)
            if handle is None:
                raise ArtifactNotFoundError(name)
            return handle

    def exists(self, name: str) -> bool:
        with self._cond:
            return name in self._handles

    def handles(self) -> List[ArtifactHandle]:
        with self._cond:
            return list(self._handles.values())

    def wait(
        self,
        name: str,
        timeout: float,
        cancel_event: Optional[threading.Event] = None,
        poll: float = 0.1,
    ) -> ArtifactHandle:
        """
        Block until `name` is stored. Raises TimeoutError after `timeout`
        seconds and CancellationError if `cancel_event` gets set.
        """
        deadline = time.monotonic() + timeout
        with self._cond:
            while name not in self._handles:
                if cancel_event is not None and cancel_event.is_set():
                    raise CancellationError(f"cancelled while waiting for artifact {name!r}")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError(f"artifact {name!r} not available after {timeout}s")
                self._cond.wait(min(poll, remaining))
            return self._handles[name]

    def close(self) -> None:
        """Drop every artifact. Called once the run is over."""
        with self._cond:
            self._handles.clear()
            self._payloads.clear()


class DirectoryArtifactStore(ArtifactStore):
    """Artifact store that keeps payloads as files under `root/<run_id>/`."""

    def __init__(self, root: str | Path, run_id: str):
        super().__init__()
        self.root = Path(root)
        self.run_dir = self.root / run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)

    def _write(self, name: str, data: bytes) -> str:
        path = self.run_dir / _payload_key(name)
        tmp = path.with_name(path.name + ".tmp")
        try:
            tmp.write_bytes(data)
            tmp.replace(path)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        return str(path)

    def _read(self, handle: ArtifactHandle) -> bytes:
        return Path(handle.path).read_bytes()

    def close(self) -> None:
        super().close()
        if self.run_dir.exists():
            shutil.rmtree(self.run_dir)
        logger.debug(f"Removed artifact directory {self.run_dir}")
