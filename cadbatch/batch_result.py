"""Per-file results of a batch run and their aggregate summary."""

from __future__ import annotations

import enum
import json
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_TIMESTAMP_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<frac>\d+))?"
    r"(?P<tz>Z|[+-]\d{2}:\d{2})?$"
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _format_timestamp(value: datetime) -> str:
    """Render a timestamp as RFC 3339 in UTC with a trailing ``Z``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.astimezone(timezone.utc).isoformat(timespec="microseconds")
    return text.replace("+00:00", "Z")


def _parse_timestamp(text: str) -> datetime:
    """Parse an RFC 3339 timestamp, accepting ``Z`` and nanosecond fractions."""
    match = _TIMESTAMP_RE.match(text.strip())
    if match is None:
        raise ValueError(f"invalid timestamp: {text!r}")
    frac = (match.group("frac") or "")[:6].ljust(6, "0")
    tz = match.group("tz") or "Z"
    if tz == "Z":
        tz = "+00:00"
    parsed = datetime.fromisoformat(f"{match.group('base')}.{frac}{tz}")
    return parsed.astimezone(timezone.utc)


@dataclass
class FileResult:
    """Outcome of processing one file: an answer or an error."""

    file: str
    drawing_type: str
    question: str
    answer: str | None = None
    latency_ms: int | None = None
    error: str | None = None

    @classmethod
    def success(
        cls, file: str, drawing_type: str, question: str, answer: str, latency_ms: int
    ) -> "FileResult":
        return cls(file, drawing_type, question, answer=answer, latency_ms=latency_ms)

    @classmethod
    def failed(cls, file: str, drawing_type: str, question: str, error: str) -> "FileResult":
        return cls(file, drawing_type, question, error=error)

    def is_success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        """Serialise with the status tag flattened into the record."""
        data: dict[str, Any] = {
            "file": self.file,
            "drawing_type": self.drawing_type,
            "question": self.question,
        }
        if self.is_success():
            data["status"] = "success"
            data["answer"] = self.answer if self.answer is not None else ""
            data["latency_ms"] = int(self.latency_ms or 0)
        else:
            data["status"] = "failed"
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileResult":
        """Parse the mapping produced by :meth:`to_dict`."""
        try:
            file = str(data["file"])
            drawing_type = str(data["drawing_type"])
            question = str(data["question"])
            status = data["status"]
        except (KeyError, TypeError) as exc:
            raise ValueError(f"invalid file result: {data!r}") from exc
        if status == "success":
            if "answer" not in data or "latency_ms" not in data:
                raise ValueError(f"success result lacks answer or latency: {data!r}")
            return cls.success(file, drawing_type, question, str(data["answer"]), int(data["latency_ms"]))
        if status == "failed":
            if "error" not in data:
                raise ValueError(f"failed result lacks error: {data!r}")
            return cls.failed(file, drawing_type, question, str(data["error"]))
        raise ValueError(f"unknown status: {status!r}")


@dataclass
class BatchResult:
    """Summary of a batch run; saves itself to a progress file as it grows."""

    batch_id: str
    started_at: datetime
    completed_at: datetime | None = None
    total: int = 0
    success: int = 0
    failed: int = 0
    results: list[FileResult] = field(default_factory=list)
    stats: dict[str, str] = field(default_factory=dict)
    progress_file: Path | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.completed_at is None:
            self.completed_at = self.started_at
        if self.progress_file is not None:
            self.progress_file = Path(self.progress_file)

    @staticmethod
    def generate_id() -> str:
        return str(uuid.uuid4())

    def add_result(self, result: FileResult) -> None:
        """Record one file's outcome and save progress."""
        self.total += 1
        if result.is_success():
            self.success += 1
        else:
            self.failed += 1
        self.results.append(result)
        self.completed_at = _now()
        self._save_progress()

    def _save_progress(self) -> None:
        path = self.progress_file
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            pass
        try:
            path.write_text(self._to_json(), encoding="utf-8")
            logger.debug("Progress saved: %s", path)
        except OSError as exc:
            logger.warning("Failed to save progress: %s - %s", path, exc)

    def finish(self) -> None:
        """Compute summary statistics and remove the progress file."""
        self.completed_at = _now()
        latencies = [r.latency_ms or 0 for r in self.results if r.is_success()]
        if self.success > 0:
            self.stats["avg_latency_ms"] = str(sum(latencies) // self.success)
        if self.total > 0:
            self.stats["success_rate"] = f"{self.success / self.total * 100.0:.2f}"
        self._save_progress()
        if self.progress_file is not None:
            try:
                self.progress_file.unlink()
            except OSError:
                pass
            logger.debug("Progress file removed: %s", self.progress_file)

    def save_to_file(self, path: str | os.PathLike[str]) -> None:
        """Write the result atomically through a temporary file."""
        target = Path(path)
        tmp_path = target.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(self._to_json())
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, target)

    @classmethod
    def load_from_file(cls, path: str | os.PathLike[str]) -> "BatchResult | None":
        """Load a saved result, or ``None`` if it is missing or unreadable."""
        source = Path(path)
        try:
            content = source.read_text(encoding="utf-8")
        except OSError:
            return None
        try:
            result = cls.from_dict(json.loads(content))
        except (ValueError, TypeError, KeyError) as exc:
            logger.warning("Failed to parse progress file: %s - %s", source, exc)
            return None
        result.progress_file = source
        return result

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "batch_id": self.batch_id,
            "started_at": _format_timestamp(self.started_at),
            "completed_at": _format_timestamp(self.completed_at or self.started_at),
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }
        if self.stats:
            data["stats"] = dict(self.stats)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchResult":
        if not isinstance(data, dict):
            raise ValueError(f"invalid batch result: {data!r}")
        try:
            return cls(
                batch_id=str(data["batch_id"]),
                started_at=_parse_timestamp(data["started_at"]),
                completed_at=_parse_timestamp(data["completed_at"]),
                total=int(data["total"]),
                success=int(data["success"]),
                failed=int(data["failed"]),
                results=[FileResult.from_dict(item) for item in data["results"]],
                stats={str(k): str(v) for k, v in (data.get("stats") or {}).items()},
            )
        except KeyError as exc:
            raise ValueError(f"batch result lacks field {exc}") from exc

    def _to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)


class OutputFormat(enum.Enum):
    """File format for the final batch results."""

    JSON = "json"
    CSV = "csv"

    def extension(self) -> str:
        return self.value

    @classmethod
    def parse(cls, text: str) -> "OutputFormat":
        """``csv`` in any case selects CSV; anything else selects JSON."""
        return cls.CSV if text.lower() == "csv" else cls.JSON

    def __str__(self) -> str:
        return self.value