import asyncio
import logging
import os
import re
import shutil
import time
import uuid
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Protocol, Sequence, Tuple

from .errors import ArtifactNotFound, StorageError
from .models import Artifact, ArtifactKind

logger = logging.getLogger(__name__)

ARTIFACT_PREFIX = "/images"

_SUFFIXES = {
    "raw-generated": "raw",
    "watermarked-preview": "watermarked",
    "assembled-pdf": "book",
}
_KINDS = {suffix: kind for kind, suffix in _SUFFIXES.items()}
_NAME_RE = re.compile(r"^(?P<id>[0-9a-f]{32})_(?P<suffix>raw|watermarked|book)\.(?P<ext>jpg|png|webp|pdf)$")


def artifact_name(artifact_id: str, kind: ArtifactKind, ext: str) -> str:
    return f"{artifact_id}_{_SUFFIXES[kind]}.{ext}"


def parse_artifact_name(name: str) -> Tuple[str, ArtifactKind]:
    # Only well-formed names ever reach the backend, so no path traversal.
    m = _NAME_RE.match(name or "")
    if not m:
        raise ArtifactNotFound(name)
    return m.group("id"), _KINDS[m.group("suffix")]


class BlobBackend(Protocol):
    def put(self, name: str, data: bytes, created_at: float) -> None: ...

    def put_file(self, name: str, src: Path, created_at: float) -> None: ...

    def get(self, name: str) -> bytes: ...

    def created_at(self, name: str) -> float: ...

    def delete(self, name: str) -> None: ...

    def list_with_age(self) -> Iterator[Tuple[str, float]]: ...

    def local_path(self, name: str) -> Optional[Path]: ...


class LocalBlobBackend:
    """Blobs as flat files in one directory; a file's mtime is its creation time."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)

    def _dir(self) -> Path:
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"artifact store unavailable: {exc}") from exc
        return self.base_dir

    def _path(self, name: str) -> Path:
        return self._dir() / name

    def put(self, name: str, data: bytes, created_at: float) -> None:
        p = self._path(name)
        try:
            p.write_bytes(data)
            os.utime(p, (created_at, created_at))
        except OSError as exc:
            raise StorageError(f"failed to write {name}: {exc}") from exc

    def put_file(self, name: str, src: Path, created_at: float) -> None:
        p = self._path(name)
        try:
            os.replace(src, p)
            os.utime(p, (created_at, created_at))
        except OSError as exc:
            raise StorageError(f"failed to publish {name}: {exc}") from exc

    def get(self, name: str) -> bytes:
        try:
            return self._path(name).read_bytes()
        except FileNotFoundError:
            raise ArtifactNotFound(name) from None
        except OSError as exc:
            raise StorageError(f"failed to read {name}: {exc}") from exc

    def created_at(self, name: str) -> float:
        try:
            return self._path(name).stat().st_mtime
        except FileNotFoundError:
            raise ArtifactNotFound(name) from None
        except OSError as exc:
            raise StorageError(f"failed to stat {name}: {exc}") from exc

    def delete(self, name: str) -> None:
        try:
            self._path(name).unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StorageError(f"failed to delete {name}: {exc}") from exc

    def list_with_age(self) -> Iterator[Tuple[str, float]]:
        try:
            with os.scandir(self._dir()) as it:
                for entry in it:
                    if not entry.is_file() or entry.name.startswith("."):
                        continue
                    try:
                        yield entry.name, entry.stat().st_mtime
                    except FileNotFoundError:
                        continue
        except OSError as exc:
            raise StorageError(f"failed to list artifact store: {exc}") from exc

    def local_path(self, name: str) -> Optional[Path]:
        return self._path(name)


class ArtifactStore:
    def __init__(
        self,
        backend: BlobBackend,
        retention_sec: float,
        public_base_url: str,
        scratch_dir: Path,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.retention_sec = retention_sec
        self.public_base_url = public_base_url.rstrip("/")
        self.scratch_dir = Path(scratch_dir)
        self.clock = clock

    def put(self, data: bytes, kind: ArtifactKind, ext: str = "jpg") -> Artifact:
        artifact_id = uuid.uuid4().hex
        name = artifact_name(artifact_id, kind, ext)
        now = self.clock()
        self.backend.put(name, data, now)
        logger.info("Stored %s artifact %s (%d bytes)", kind, name, len(data))
        return Artifact(id=artifact_id, kind=kind, path=name, created_at=now)

    def put_file(self, src: Path, kind: ArtifactKind, ext: str) -> Artifact:
        artifact_id = uuid.uuid4().hex
        name = artifact_name(artifact_id, kind, ext)
        now = self.clock()
        self.backend.put_file(name, src, now)
        logger.info("Stored %s artifact %s", kind, name)
        return Artifact(id=artifact_id, kind=kind, path=name, created_at=now)

    def scratch_path(self, suffix: str) -> Path:
        try:
            self.scratch_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"scratch directory unavailable: {exc}") from exc
        return self.scratch_dir / f"{uuid.uuid4().hex}{suffix}"

    def public_url(self, artifact: Artifact) -> str:
        return f"{self.public_base_url}{ARTIFACT_PREFIX}/{artifact.path}"

    def name_from_url(self, url: str) -> Optional[str]:
        prefix = f"{self.public_base_url}{ARTIFACT_PREFIX}/"
        if url.startswith(prefix):
            return url[len(prefix):]
        return None

    def _expired(self, created_at: float, now: float) -> bool:
        return now - created_at > self.retention_sec

    def resolve(self, name: str) -> Artifact:
        artifact_id, kind = parse_artifact_name(name)
        created_at = self.backend.created_at(name)
        # The reaper may not have run yet; age is checked on every access.
        if self._expired(created_at, self.clock()):
            raise ArtifactNotFound(name)
        return Artifact(id=artifact_id, kind=kind, path=name, created_at=created_at)

    def read(self, name: str) -> bytes:
        self.resolve(name)
        return self.backend.get(name)

    def local_path(self, name: str) -> Optional[Path]:
        self.resolve(name)
        return self.backend.local_path(name)

    def sweep(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        doomed: List[str] = [
            name for name, created_at in self.backend.list_with_age() if self._expired(created_at, now)
        ]
        for name in doomed:
            self.backend.delete(name)
        if doomed:
            logger.info("Reaped %d expired artifacts", len(doomed))
        return len(doomed)

    def clear_scratch(self) -> None:
        shutil.rmtree(self.scratch_dir, ignore_errors=True)


class Reaper:
    """Runs each sweep on a fixed interval, off the event loop."""

    def __init__(self, sweeps: Sequence[Callable[[], int]], interval_sec: float):
        self.sweeps = list(sweeps)
        self.interval_sec = interval_sec
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> int:
        removed = 0
        for sweep in self.sweeps:
            try:
                removed += await asyncio.to_thread(sweep)
            except Exception:
                # One failing sweep must not end the loop or skip the others.
                logger.exception("Reaper sweep %r failed", sweep)
        return removed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_sec)
            await self.run_once()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())
            logger.info("Reaper started, interval %ss", self.interval_sec)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
