"""Merging per-batch result files into one final result."""

from __future__ import annotations

import json
import logging
import math
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from cadbatch.batch_result import BatchResult, FileResult, _format_timestamp, _parse_timestamp
from cadbatch.errors import InternalError

logger = logging.getLogger(__name__)

_ASSUMED_PAGES_PER_PDF = 5.0


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FinalMetadata:
    """Summary figures of a merged run."""

    generated_at: datetime = field(default_factory=_now)
    total_pdfs: int = 0
    total_pages: int = 0
    processing_time_seconds: float = 0.0
    success_count: int = 0
    failed_count: int = 0
    batch_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at": _format_timestamp(self.generated_at),
            "total_pdfs": self.total_pdfs,
            "total_pages": self.total_pages,
            "processing_time_seconds": float(self.processing_time_seconds),
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "batch_count": self.batch_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FinalMetadata":
        if not isinstance(data, dict):
            raise ValueError(f"invalid metadata: {data!r}")
        try:
            return cls(
                generated_at=_parse_timestamp(data["generated_at"]),
                total_pdfs=int(data["total_pdfs"]),
                total_pages=int(data["total_pages"]),
                processing_time_seconds=float(data["processing_time_seconds"]),
                success_count=int(data["success_count"]),
                failed_count=int(data["failed_count"]),
                batch_count=int(data["batch_count"]),
            )
        except KeyError as exc:
            raise ValueError(f"metadata lacks field {exc}") from exc


@dataclass
class FinalResult:
    """All results of a run together with their metadata."""

    metadata: FinalMetadata = field(default_factory=FinalMetadata)
    results: list[FileResult] = field(default_factory=list)

    @classmethod
    def from_batch_results(
        cls, batch_files: Iterable[str | os.PathLike[str]], started_at: datetime
    ) -> "FinalResult":
        """Merge batch result files, keeping the first result for each file name."""
        final = cls()
        seen: set[str] = set()
        for batch_file in map(Path, batch_files):
            if not batch_file.exists():
                logger.warning("批次结果文件不存在：%s", batch_file)
                continue
            try:
                batch = _load_batch_result(batch_file)
            except InternalError as exc:
                logger.warning("加载批次结果失败 %s: %s", batch_file, exc)
                continue
            for item in batch.results:
                if item.file in seen:
                    logger.info("跳过重复结果：%s", item.file)
                    continue
                seen.add(item.file)
                final.results.append(item)
            final.metadata.batch_count += 1

        meta = final.metadata
        meta.total_pages = len(final.results)
        if started_at.tzinfo is None:
            started_at = started_at.replace(tzinfo=timezone.utc)
        meta.processing_time_seconds = float(int((_now() - started_at).total_seconds()))
        meta.success_count = sum(1 for r in final.results if r.is_success())
        meta.failed_count = meta.total_pages - meta.success_count
        meta.total_pdfs = math.ceil(meta.total_pages / _ASSUMED_PAGES_PER_PDF)
        return final

    def save_to_file(self, path: str | os.PathLike[str]) -> None:
        """Write atomically through a temporary file."""
        target = Path(path)
        tmp_path = target.with_suffix(".tmp")
        try:
            text = json.dumps(self.to_dict(), indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise InternalError(f"JSON 序列化错误：{exc}") from exc
        try:
            with open(tmp_path, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, target)
        except OSError as exc:
            raise InternalError(str(exc)) from exc
        logger.info("最终结果已保存到 %s", target)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": self.metadata.to_dict(),
            "results": [r.to_dict() for r in self.results],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FinalResult":
        if not isinstance(data, dict):
            raise ValueError(f"invalid final result: {data!r}")
        try:
            return cls(
                metadata=FinalMetadata.from_dict(data["metadata"]),
                results=[FileResult.from_dict(item) for item in data["results"]],
            )
        except KeyError as exc:
            raise ValueError(f"final result lacks field {exc}") from exc


def _load_batch_result(path: Path) -> BatchResult:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise InternalError(str(exc)) from exc
    try:
        return BatchResult.from_dict(json.loads(content))
    except (ValueError, TypeError, KeyError) as exc:
        raise InternalError(f"JSON 解析错误：{exc}") from exc


class TempDirGuard:
    """Removes a directory and everything in it when the ``with`` block ends."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)

    def __enter__(self) -> "TempDirGuard":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            shutil.rmtree(self.path)
        except OSError as error:
            logger.warning("清理临时目录失败 %s: %s", self.path, error)
        else:
            logger.info("临时目录已清理：%s", self.path)
        return False


def create_temp_dir(prefix: str) -> Path:
    """Create ``<tmp>/<prefix>_<unix seconds>`` and return its path."""
    stamp = int(_now().timestamp())
    directory = Path(tempfile.gettempdir()) / f"{prefix}_{stamp}"
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise InternalError(str(exc)) from exc
    return directory