"""Scanning PDF directories and splitting the work into batches."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from cadbatch.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass
class PdfInfo:
    """A PDF file and the number of pages to process from it."""

    path: Path
    page_count: int

    def __post_init__(self) -> None:
        self.path = Path(self.path)


@dataclass
class PlannedBatch:
    """A group of PDFs processed together."""

    batch_id: int
    pdfs: list[PdfInfo]
    total_pages: int


@dataclass
class BatchConfig:
    """Settings for planning a batch run; ``max_pages_per_pdf`` 0 means no limit."""

    pdfs_per_batch: int = 5
    max_pages_per_pdf: int = 0
    concurrency: int = 2
    enable_quota_check: bool = True


@dataclass
class ProcessingPlan:
    """Everything known about a run before it starts."""

    total_pdfs: int
    total_pages: int
    estimated_api_calls: int
    required_quota: int
    available_quota: int
    is_feasible: bool
    batches: list[PlannedBatch] = field(default_factory=list)
    pdf_files: list[PdfInfo] = field(default_factory=list)


def create_processing_plan(
    pdf_dir: str | os.PathLike[str], available_quota: int, config: BatchConfig
) -> ProcessingPlan:
    """Scan ``pdf_dir``, count pages and split the PDFs into batches."""
    directory = Path(pdf_dir)
    logger.info("扫描 PDF 目录：%s", directory)
    pdf_files = scan_pdfs(directory, config.max_pages_per_pdf)
    if not pdf_files:
        raise ValidationError(f"目录中没有找到 PDF 文件：{directory}")

    total_pages = sum(p.page_count for p in pdf_files)
    logger.info("找到 %d 个 PDF 文件，总计 %d 页", len(pdf_files), total_pages)

    required_quota = total_pages
    is_feasible = not config.enable_quota_check or required_quota <= available_quota
    if not is_feasible:
        logger.warning("配额不足：需要 %d 次，可用 %d 次", required_quota, available_quota)

    return ProcessingPlan(
        total_pdfs=len(pdf_files),
        total_pages=total_pages,
        estimated_api_calls=total_pages,
        required_quota=required_quota,
        available_quota=available_quota,
        is_feasible=is_feasible,
        batches=create_batch_plan(pdf_files, config.pdfs_per_batch),
        pdf_files=pdf_files,
    )


def scan_pdfs(directory: str | os.PathLike[str], max_pages_per_pdf: int) -> list[PdfInfo]:
    """PDF files directly in ``directory``, sorted by path, with capped page counts."""
    root = Path(directory)
    if not root.exists():
        raise ValidationError(f"目录不存在：{root}")
    try:
        entries = list(root.iterdir())
    except OSError as exc:
        raise ValidationError(f"无法读取目录 {root}: {exc}") from exc

    pdf_files = []
    for path in entries:
        if not (path.is_file() and path.suffix.lower() == ".pdf"):
            continue
        count = count_pages(path)
        if max_pages_per_pdf > 0 and count > max_pages_per_pdf:
            logger.info("PDF %s 有 %d 页，限制为 %d 页", path, count, max_pages_per_pdf)
            count = max_pages_per_pdf
        pdf_files.append(PdfInfo(path, count))

    pdf_files.sort(key=lambda info: info.path)
    return pdf_files


def _run(args: list[str]) -> str | None:
    try:
        completed = subprocess.run(args, capture_output=True)
    except OSError:
        return None
    if completed.returncode != 0:
        return None
    return completed.stdout.decode("utf-8", errors="replace")


def _pages_line(output: str) -> int | None:
    for line in output.splitlines():
        if line.startswith("Pages:"):
            parts = line.split(":")
            try:
                return int(parts[1].strip())
            except (IndexError, ValueError):
                continue
    return None


def count_pages(pdf_path: str | os.PathLike[str]) -> int:
    """Page count from pdfinfo, pdftoppm or qpdf; 1 if none of them can tell."""
    path = str(pdf_path)

    for args in (["pdfinfo", path], ["pdftoppm", "-info", path]):
        output = _run(args)
        if output is not None:
            pages = _pages_line(output)
            if pages is not None:
                return pages

    output = _run(["qpdf", "--show-npages", path])
    if output is not None:
        try:
            return int(output.strip())
        except ValueError:
            pass

    logger.warning(
        "无法读取 PDF %s 的页数，外部工具不可用。请安装 pdfinfo（poppler 工具）或 qpdf", path
    )
    logger.warning("假设 PDF 有 1 页，实际处理时可能会不准确")
    return 1


def create_batch_plan(pdf_files: Sequence[PdfInfo], pdfs_per_batch: int) -> list[PlannedBatch]:
    """Split ``pdf_files`` into consecutive batches numbered from 1."""
    if pdfs_per_batch < 1:
        raise ValueError("pdfs_per_batch must be at least 1")
    batches = [
        PlannedBatch(
            batch_id=number,
            pdfs=list(pdf_files[start : start + pdfs_per_batch]),
            total_pages=sum(p.page_count for p in pdf_files[start : start + pdfs_per_batch]),
        )
        for number, start in enumerate(range(0, len(pdf_files), pdfs_per_batch), start=1)
    ]
    logger.info("生成 %d 个批次计划", len(batches))
    return batches