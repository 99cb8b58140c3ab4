"""Batch-by-batch processing of a PDF directory with progress and dynamic concurrency."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from cadbatch.batch_result import BatchResult, FileResult
from cadbatch.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from cadbatch.concurrency_controller import ConcurrencyController
from cadbatch.dead_letter_queue import DeadLetterQueue
from cadbatch.errors import AppError, InternalError, ValidationError
from cadbatch.merger import FinalResult, TempDirGuard, create_temp_dir
from cadbatch.planner import BatchConfig, PlannedBatch, ProcessingPlan, create_processing_plan
from cadbatch.progress import BatchPlan, BatchProgress, BatchState, ProgressGuard
from cadbatch.session import SessionPool

logger = logging.getLogger(__name__)

_UNLIMITED_QUOTA = 2**32 - 1
_COOLDOWN_SECONDS = 5
_PERMIT_TIMEOUT_SECONDS = 30.0
_RATE_LIMIT_MARKERS = ("请求过于频繁", "RATE_LIMIT", "429")
_PAGE_DRAWING_TYPE = "cad_drawing"
_PAGE_QUESTION = "请分析这张 CAD 图纸"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StreamBatchProcessorConfig:
    """Settings for a :class:`StreamBatchProcessor`."""

    pdfs_per_batch: int = 5
    concurrency: int = 2
    enable_dynamic_concurrency: bool = True
    min_concurrency: int = 1
    max_concurrency: int = 8
    target_latency_ms: int = 3000
    max_pages_per_pdf: int = 0
    enable_quota_check: bool = True
    user_id: str | None = None
    progress_file: Path | None = None
    output_file: Path | None = None


class StreamBatchProcessor:
    """Processes PDFs page by page, one batch at a time, merging results at the end."""

    def __init__(
        self,
        config: StreamBatchProcessorConfig,
        session_pool: SessionPool,
        circuit_breaker_config: CircuitBreakerConfig | None = None,
        dead_letter_queue: DeadLetterQueue | None = None,
    ) -> None:
        self.config = config
        self.session_pool = session_pool
        self.circuit_breaker = CircuitBreaker(circuit_breaker_config or CircuitBreakerConfig())
        self.dead_letter_queue = dead_letter_queue or DeadLetterQueue()
        self._semaphore = asyncio.Semaphore(config.concurrency)
        self._controller = (
            ConcurrencyController(
                config.concurrency,
                config.min_concurrency,
                config.max_concurrency,
                config.target_latency_ms,
                _COOLDOWN_SECONDS,
            )
            if config.enable_dynamic_concurrency
            else None
        )

    def concurrency_controller(self) -> ConcurrencyController | None:
        """The dynamic concurrency controller, or ``None`` when disabled."""
        return self._controller

    async def process_directory(self, pdf_dir: str | os.PathLike[str]) -> FinalResult:
        """Plan, process and merge every PDF in ``pdf_dir``."""
        directory = Path(pdf_dir)
        logger.info("开始流式批处理目录：%s", directory)
        batch_config = BatchConfig(
            pdfs_per_batch=self.config.pdfs_per_batch,
            max_pages_per_pdf=self.config.max_pages_per_pdf,
            concurrency=self.config.concurrency,
            enable_quota_check=self.config.enable_quota_check,
        )
        plan = await asyncio.to_thread(
            create_processing_plan, directory, _UNLIMITED_QUOTA, batch_config
        )
        logger.info(
            "处理计划：%d PDF, %d 页，分为 %d 批",
            plan.total_pdfs,
            plan.total_pages,
            len(plan.batches),
        )

        guard = self._progress_guard(plan)
        temp_dir = create_temp_dir("batch_processor")
        with TempDirGuard(temp_dir):
            logger.info("临时目录：%s", temp_dir)
            if guard is not None:
                with guard:
                    await self._process_all_batches(plan, guard, temp_dir)
            else:
                await self._process_all_batches(plan, None, temp_dir)
            final = self._merge_results(temp_dir)

        if self.config.output_file is not None:
            final.save_to_file(self.config.output_file)
        return final

    def _progress_guard(self, plan: ProcessingPlan) -> ProgressGuard | None:
        path = self.config.progress_file
        if path is None:
            return None
        progress = BatchProgress.load_from_file(path)
        if progress is not None:
            logger.info("恢复现有进度：%d/%d PDF", progress.processed_pdfs, progress.total_pdfs)
        else:
            batches = [
                BatchPlan(batch_id=b.batch_id, pdfs=[p.path for p in b.pdfs])
                for b in plan.batches
            ]
            progress = BatchProgress.create(plan.total_pdfs, plan.total_pages, batches)
        progress.output_path = (
            Path(self.config.output_file) if self.config.output_file is not None else None
        )
        return ProgressGuard(progress, path)

    async def _process_all_batches(
        self, plan: ProcessingPlan, guard: ProgressGuard | None, temp_dir: Path
    ) -> None:
        for planned in plan.batches:
            batch_id = planned.batch_id
            if guard is not None and _is_completed(guard.progress, batch_id):
                logger.info("批次 %d 已完成，跳过", batch_id)
                continue

            logger.info("开始处理批次 %d", batch_id)
            first_pdf = str(planned.pdfs[0].path) if planned.pdfs else None
            if guard is not None and first_pdf is not None:
                guard.progress.mark_batch_started(batch_id, first_pdf)
                _save_quietly(guard)

            try:
                result_file = await self._process_single_batch(planned, temp_dir)
            except AppError as exc:
                logger.error("批次 %d 失败：%s", batch_id, exc)
                if guard is not None and first_pdf is not None:
                    guard.progress.mark_batch_failed(batch_id, str(exc), first_pdf)
                    _save_quietly(guard)
                if isinstance(exc, ValidationError) and "配额" in str(exc):
                    logger.error("配额耗尽，停止处理")
                    raise
                continue

            logger.info("批次 %d 完成，结果：%s", batch_id, result_file)
            if guard is not None:
                guard.progress.mark_batch_completed(
                    batch_id, result_file, len(planned.pdfs), planned.total_pages
                )
                _save_quietly(guard)

    async def _process_single_batch(self, planned: PlannedBatch, temp_dir: Path) -> Path:
        batch_id = planned.batch_id
        result_file = temp_dir / f"batch_{batch_id:03d}_results.json"
        batch_result = BatchResult(f"batch_{batch_id}", _now())
        logger.info(
            "开始处理批次 %d，共 %d 个 PDF，%d 页",
            batch_id,
            len(planned.pdfs),
            planned.total_pages,
        )

        if self._controller is not None:
            stats = self._controller.stats()
            logger.info("动态并发统计：%s", stats)
            current = stats.current
        else:
            current = self.config.concurrency
        for _ in range(current):
            self._semaphore.release()

        for pdf_info in planned.pdfs:
            logger.info("处理 PDF: %s (%d 页)", pdf_info.path, pdf_info.page_count)
            for page_num in range(1, pdf_info.page_count + 1):
                if self._breaker_tripped():
                    await asyncio.sleep(1.0)

                if not await self._acquire_permit():
                    logger.warning("获取处理许可失败，跳过此页")
                    continue
                try:
                    batch_result.add_result(await self._page_result(pdf_info.path, page_num))
                finally:
                    self._semaphore.release()

        try:
            batch_result.save_to_file(result_file)
        except OSError as exc:
            raise InternalError(str(exc)) from exc
        logger.info("批次 %d 完成，结果保存到 %s", batch_id, result_file)
        return result_file

    def _breaker_tripped(self) -> bool:
        name = self.circuit_breaker.state().name.upper().replace("_", "")
        return name in ("OPEN", "HALFOPEN")

    async def _acquire_permit(self) -> bool:
        if self._controller is not None:
            return await self._controller.acquire_with_timeout(
                self._semaphore, _PERMIT_TIMEOUT_SECONDS
            )
        await self._semaphore.acquire()
        return True

    async def _page_result(self, pdf_path: Path, page_num: int) -> FileResult:
        try:
            result = await self._process_pdf_page(pdf_path, page_num)
        except AppError as exc:
            message = str(exc)
            if self._controller is not None and any(m in message for m in _RATE_LIMIT_MARKERS):
                self._controller.record_rate_limit_error()
            logger.warning("处理 PDF 页失败 %s:%d - %s", pdf_path, page_num, message)
            return FileResult.failed(
                f"{pdf_path.name}:{page_num}", _PAGE_DRAWING_TYPE, _PAGE_QUESTION, message
            )
        if self._controller is not None:
            self._controller.record_success()
        return result

    async def _process_pdf_page(self, pdf_path: Path, page_num: int) -> FileResult:
        start = time.monotonic()
        file_id = f"{pdf_path.name}:{page_num}"
        session = self.session_pool.next_session()
        answer = await session.process_with_retry(pdf_path, file_id)
        latency_ms = int((time.monotonic() - start) * 1000)
        if self._controller is not None:
            self._controller.record_latency(latency_ms)
        return FileResult.success(file_id, _PAGE_DRAWING_TYPE, _PAGE_QUESTION, answer, latency_ms)

    def _merge_results(self, temp_dir: Path) -> FinalResult:
        try:
            batch_files = sorted(p for p in temp_dir.iterdir() if p.suffix == ".json")
        except OSError as exc:
            raise InternalError(str(exc)) from exc
        logger.info("合并 %d 个批次结果", len(batch_files))
        return FinalResult.from_batch_results(batch_files, _now())


def _is_completed(progress: BatchProgress, batch_id: int) -> bool:
    return any(
        b.batch_id == batch_id and b.status.state is BatchState.COMPLETED
        for b in progress.batches
    )


def _save_quietly(guard: ProgressGuard) -> None:
    try:
        guard.save()
    except OSError as exc:
        logger.warning("保存进度失败 %s: %s", guard.path, exc)