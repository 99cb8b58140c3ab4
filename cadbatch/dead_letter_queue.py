"""Dead letter queue that records files which failed processing."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from cadbatch.batch_result import _format_timestamp, _parse_timestamp
from cadbatch.errors import BatchError

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FailedFile:
    """A file that failed, with its error, retry count and time of failure."""

    path: Path
    error: BatchError
    retry_count: int
    failed_at: datetime = field(default_factory=_now)

    def __post_init__(self) -> None:
        self.path = Path(self.path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "error": self.error.to_dict(),
            "retry_count": self.retry_count,
            "failed_at": _format_timestamp(self.failed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FailedFile":
        """Parse the mapping produced by :meth:`to_dict`."""
        if not isinstance(data, dict):
            raise ValueError(f"invalid failed file record: {data!r}")
        try:
            return cls(
                path=Path(data["path"]),
                error=BatchError.from_dict(data["error"]),
                retry_count=int(data["retry_count"]),
                failed_at=_parse_timestamp(data["failed_at"]),
            )
        except KeyError as exc:
            raise ValueError(f"failed file record lacks field {exc}") from exc


class DeadLetterQueue:
    """Thread-safe list of failed files, optionally mirrored to a JSON file."""

    def __init__(self, persistence_path: str | os.PathLike[str] | None = None) -> None:
        self.persistence_path = Path(persistence_path) if persistence_path is not None else None
        self._files: list[FailedFile] = []
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()

    def add(self, path: str | os.PathLike[str], error: BatchError, retry_count: int) -> None:
        """Record a failed file and persist the queue if configured."""
        with self._lock:
            self._files.append(FailedFile(Path(path), error, retry_count))
        self._persist_quietly()

    def _persist_quietly(self) -> None:
        if self.persistence_path is None:
            return
        try:
            self.persist(self.persistence_path)
        except OSError as exc:
            logger.warning("Failed to persist dead letter queue: %s - %s", self.persistence_path, exc)

    def persist(self, path: str | os.PathLike[str]) -> None:
        """Write the queue atomically to ``path``; raises ``OSError`` on failure."""
        target = Path(path)
        with self._lock:
            records = [f.to_dict() for f in self._files]
        text = json.dumps(records, indent=2, ensure_ascii=False)
        with self._write_lock:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = target.with_suffix(".tmp")
            with open(tmp_path, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, target)

    def load_from_file(self, path: str | os.PathLike[str]) -> None:
        """Append the records saved in ``path`` to the queue."""
        content = Path(path).read_text(encoding="utf-8")
        data = json.loads(content)
        if not isinstance(data, list):
            raise ValueError("dead letter queue file must hold a list")
        loaded = [FailedFile.from_dict(item) for item in data]
        with self._lock:
            self._files.extend(loaded)

    def get_all(self) -> list[FailedFile]:
        with self._lock:
            return list(self._files)

    def __len__(self) -> int:
        with self._lock:
            return len(self._files)

    def clear(self) -> None:
        """Empty the queue and persist the empty state if configured."""
        with self._lock:
            self._files.clear()
        self._persist_quietly()

    def export_paths(self) -> list[Path]:
        """Paths of all failed files, for a retry run."""
        with self._lock:
            return [f.path for f in self._files]

    def remove(self, path: str | os.PathLike[str]) -> None:
        """Drop every record for ``path``, e.g. after a successful retry."""
        target = Path(path)
        with self._lock:
            self._files = [f for f in self._files if f.path != target]
        self._persist_quietly()