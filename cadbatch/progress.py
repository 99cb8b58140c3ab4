"""Persistent progress of a multi-batch run, for resuming after interruption."""

from __future__ import annotations

import enum
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from cadbatch.batch_result import _format_timestamp, _parse_timestamp

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _opt_time(value: datetime | None) -> str | None:
    return _format_timestamp(value) if value is not None else None


def _parse_opt_time(value: Any) -> datetime | None:
    return _parse_timestamp(value) if value is not None else None


def _opt_path(value: Any) -> Path | None:
    return Path(value) if value is not None else None


class BatchState(enum.Enum):
    """Lifecycle state of a batch."""

    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    SKIPPED = "Skipped"


_DETAIL_FIELDS = {
    BatchState.PENDING: (),
    BatchState.PROCESSING: ("current_pdf",),
    BatchState.COMPLETED: ("result_file",),
    BatchState.FAILED: ("error", "failed_pdf"),
    BatchState.SKIPPED: ("reason",),
}


@dataclass(frozen=True)
class BatchStatus:
    """A batch's state with the details that belong to it."""

    state: BatchState = BatchState.PENDING
    current_pdf: str | None = None
    result_file: Path | None = None
    error: str | None = None
    failed_pdf: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialise as ``{"state": ..., "details": {...}}``."""
        names = _DETAIL_FIELDS[self.state]
        data: dict[str, Any] = {"state": self.state.value}
        if names:
            details = {}
            for name in names:
                value = getattr(self, name)
                details[name] = str(value) if isinstance(value, Path) else value
            data["details"] = details
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchStatus":
        if not isinstance(data, dict) or "state" not in data:
            raise ValueError(f"invalid batch status: {data!r}")
        try:
            state = BatchState(data["state"])
        except ValueError:
            raise ValueError(f"unknown batch state: {data['state']!r}") from None
        names = _DETAIL_FIELDS[state]
        if not names:
            return cls(state)
        details = data.get("details")
        if not isinstance(details, dict) or any(name not in details for name in names):
            raise ValueError(f"batch status lacks details: {data!r}")
        values: dict[str, Any] = {name: details[name] for name in names}
        if "result_file" in values:
            values["result_file"] = Path(values["result_file"])
        return cls(state, **values)


@dataclass
class BatchPlan:
    """One batch of PDFs and how far its processing has got."""

    batch_id: int
    pdfs: list[Path] = field(default_factory=list)
    status: BatchStatus = field(default_factory=BatchStatus)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    results_file: Path | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        self.pdfs = [Path(p) for p in self.pdfs]

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "pdfs": [str(p) for p in self.pdfs],
            "status": self.status.to_dict(),
            "started_at": _opt_time(self.started_at),
            "completed_at": _opt_time(self.completed_at),
            "results_file": str(self.results_file) if self.results_file is not None else None,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchPlan":
        if not isinstance(data, dict):
            raise ValueError(f"invalid batch plan: {data!r}")
        try:
            return cls(
                batch_id=int(data["batch_id"]),
                pdfs=[Path(p) for p in data["pdfs"]],
                status=BatchStatus.from_dict(data["status"]),
                started_at=_parse_opt_time(data.get("started_at")),
                completed_at=_parse_opt_time(data.get("completed_at")),
                results_file=_opt_path(data.get("results_file")),
                error=data.get("error"),
            )
        except KeyError as exc:
            raise ValueError(f"batch plan lacks field {exc}") from exc


@dataclass
class BatchProgress:
    """Progress record of a whole run, saved as JSON."""

    started_at: datetime
    updated_at: datetime
    total_pdfs: int
    total_pages: int
    processed_pdfs: int = 0
    processed_pages: int = 0
    current_batch: int = 0
    batches: list[BatchPlan] = field(default_factory=list)
    output_path: Path | None = None
    version: int = 1

    @classmethod
    def create(cls, total_pdfs: int, total_pages: int, batches: list[BatchPlan]) -> "BatchProgress":
        now = _now()
        return cls(now, now, total_pdfs, total_pages, batches=list(batches))

    @classmethod
    def load_from_file(cls, path: str | os.PathLike[str]) -> "BatchProgress | None":
        """Load saved progress, or ``None`` if missing or unreadable."""
        source = Path(path)
        if not source.exists():
            return None
        try:
            content = source.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("读取进度文件失败 %s: %s", source, exc)
            return None
        try:
            progress = cls.from_dict(json.loads(content))
        except (ValueError, TypeError, KeyError) as exc:
            logger.warning("解析进度文件失败 %s: %s", source, exc)
            return None
        logger.info(
            "成功加载进度文件：%s (已处理 %d/%d PDF)",
            source,
            progress.processed_pdfs,
            progress.total_pdfs,
        )
        return progress

    def save_to_file(self, path: str | os.PathLike[str]) -> None:
        """Write atomically through a temporary file; raises ``OSError`` on failure."""
        target = Path(path)
        tmp_path = target.with_suffix(".tmp")
        text = json.dumps(self.to_dict(), indent=2, ensure_ascii=False)
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, target)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "started_at": _format_timestamp(self.started_at),
            "updated_at": _format_timestamp(self.updated_at),
            "total_pdfs": self.total_pdfs,
            "total_pages": self.total_pages,
            "processed_pdfs": self.processed_pdfs,
            "processed_pages": self.processed_pages,
            "current_batch": self.current_batch,
            "batches": [b.to_dict() for b in self.batches],
            "output_path": str(self.output_path) if self.output_path is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchProgress":
        if not isinstance(data, dict):
            raise ValueError(f"invalid progress record: {data!r}")
        try:
            return cls(
                version=int(data["version"]),
                started_at=_parse_timestamp(data["started_at"]),
                updated_at=_parse_timestamp(data["updated_at"]),
                total_pdfs=int(data["total_pdfs"]),
                total_pages=int(data["total_pages"]),
                processed_pdfs=int(data["processed_pdfs"]),
                processed_pages=int(data["processed_pages"]),
                current_batch=int(data["current_batch"]),
                batches=[BatchPlan.from_dict(b) for b in data["batches"]],
                output_path=_opt_path(data.get("output_path")),
            )
        except KeyError as exc:
            raise ValueError(f"progress record lacks field {exc}") from exc

    def update(self) -> None:
        self.updated_at = _now()

    def _find(self, batch_id: int) -> BatchPlan | None:
        return next((b for b in self.batches if b.batch_id == batch_id), None)

    def mark_batch_started(self, batch_id: int, current_pdf: str) -> None:
        batch = self._find(batch_id)
        if batch is None:
            return
        batch.status = BatchStatus(BatchState.PROCESSING, current_pdf=current_pdf)
        batch.started_at = _now()
        self.current_batch = batch_id
        self.update()

    def mark_batch_completed(
        self,
        batch_id: int,
        result_file: str | os.PathLike[str],
        pdfs_processed: int,
        pages_processed: int,
    ) -> None:
        batch = self._find(batch_id)
        if batch is None:
            return
        result_path = Path(result_file)
        batch.status = BatchStatus(BatchState.COMPLETED, result_file=result_path)
        batch.completed_at = _now()
        batch.results_file = result_path
        self.processed_pdfs += pdfs_processed
        self.processed_pages += pages_processed
        self.update()

    def mark_batch_failed(self, batch_id: int, error: str, failed_pdf: str) -> None:
        batch = self._find(batch_id)
        if batch is None:
            return
        batch.status = BatchStatus(BatchState.FAILED, error=error, failed_pdf=failed_pdf)
        batch.error = error
        self.update()

    def next_pending_batch(self) -> BatchPlan | None:
        return next((b for b in self.batches if b.status.state is BatchState.PENDING), None)

    def next_incomplete_batch(self) -> BatchPlan | None:
        """The first batch still pending or interrupted while processing."""
        wanted = (BatchState.PENDING, BatchState.PROCESSING)
        return next((b for b in self.batches if b.status.state in wanted), None)

    def is_complete(self) -> bool:
        return all(b.status.state is BatchState.COMPLETED for b in self.batches)

    def progress_percent(self) -> float:
        if self.total_pdfs == 0:
            return 0.0
        return self.processed_pdfs / self.total_pdfs * 100.0


class ProgressGuard:
    """Holds progress and saves it to ``path`` when the ``with`` block ends."""

    def __init__(self, progress: BatchProgress, path: str | os.PathLike[str]) -> None:
        self.progress = progress
        self.path = Path(path)

    def save(self) -> None:
        self.progress.save_to_file(self.path)

    def __enter__(self) -> "ProgressGuard":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            self.save()
        except OSError as error:
            logger.error("自动保存进度失败 %s: %s", self.path, error)
        else:
            logger.info("进度已自动保存到 %s", self.path)
        return False