"""Batch sessions that send drawings to a chat model, with retries."""

from __future__ import annotations

import abc
import asyncio
import base64
import io
import itertools
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Sequence

from PIL import Image, UnidentifiedImageError

from cadbatch.errors import AppError, BatchError, ExternalError, InternalError

logger = logging.getLogger(__name__)

ENCODING_TIMEOUT_SECONDS = 60.0
DEFAULT_SESSION_TIMEOUT_SECONDS = 300.0


class ChatClient(abc.ABC):
    """A model endpoint that answers a prompt about base64-encoded images."""

    name: str = "chat"

    @abc.abstractmethod
    async def chat(self, prompt: str, images: Sequence[str]) -> str:
        """Return the model's answer to ``prompt`` about ``images``."""


def encode_image(data: bytes, max_dimension: int) -> str:
    """Decode an image, shrink it to fit ``max_dimension`` and return base64 JPEG."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            if img.width > max_dimension or img.height > max_dimension:
                img.thumbnail((max_dimension, max_dimension))
            rgb = img.convert("RGB")
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise InternalError(str(exc)) from exc
    buffer = io.BytesIO()
    try:
        rgb.save(buffer, format="JPEG")
    except (OSError, ValueError) as exc:
        raise InternalError(str(exc)) from exc
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def _build_prompt(drawing_type: str, question: str) -> str:
    return f"这是一张{drawing_type}。{question}\n\n请分析图片并回答。"


class BatchSession:
    """One worker's client and settings for analysing drawings."""

    def __init__(
        self,
        client: ChatClient,
        drawing_type: str,
        question: str,
        max_image_dimension: int = 2048,
        max_retries: int = 3,
        base_delay_ms: int = 100,
        *,
        initial_quota: int | None = None,
        timeout: float = DEFAULT_SESSION_TIMEOUT_SECONDS,
    ) -> None:
        self.client = client
        self.session_id = uuid.uuid4()
        self.drawing_type = drawing_type
        self.question = question
        self.max_image_dimension = max_image_dimension
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.timeout = timeout
        self._quota = initial_quota
        self._quota_lock = threading.Lock()

    def remaining_quota(self) -> int | None:
        """Quota left in this session, or ``None`` when unlimited."""
        with self._quota_lock:
            return self._quota

    def consume_quota(self, count: int) -> bool:
        """Take ``count`` from the quota; ``False`` if not enough is left."""
        with self._quota_lock:
            if self._quota is None:
                return True
            if self._quota < count:
                return False
            self._quota -= count
            return True

    async def process_with_retry(self, path: str | os.PathLike[str], file_name: str) -> str:
        """Analyse one file, retrying retryable failures with exponential backoff."""
        last_error: AppError | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return await self._process_single(Path(path))
            except AppError as exc:
                if not BatchError.from_app_error(exc).is_retryable():
                    raise
                if attempt < self.max_retries:
                    delay_ms = self.base_delay_ms * 2**attempt
                    logger.warning(
                        "File %s failed (attempt %d/%d), retrying in %dms: %s",
                        file_name,
                        attempt + 1,
                        self.max_retries + 1,
                        delay_ms,
                        exc,
                    )
                    await asyncio.sleep(delay_ms / 1000.0)
                last_error = exc
        raise last_error or ExternalError("Unknown error")

    async def _process_single(self, path: Path) -> str:
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise InternalError(str(exc)) from exc

        prompt = _build_prompt(self.drawing_type, self.question)

        try:
            image = await asyncio.wait_for(
                asyncio.to_thread(encode_image, data, self.max_image_dimension),
                ENCODING_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            raise InternalError("Image encoding timeout (exceeded 60s)") from None

        try:
            return await self.client.chat(prompt, [image])
        except Exception as exc:
            raise ExternalError(str(exc)) from exc

    def client_name(self) -> str:
        return self.client.name


class SessionPool:
    """A fixed set of sessions handed out in round-robin order."""

    def __init__(
        self,
        base_client: ChatClient,
        pool_size: int,
        drawing_type: str,
        question: str,
        max_image_dimension: int = 2048,
        max_retries: int = 3,
        base_delay_ms: int = 100,
    ) -> None:
        self._sessions = [
            BatchSession(
                base_client,
                drawing_type,
                question,
                max_image_dimension,
                max_retries,
                base_delay_ms,
            )
            for _ in range(pool_size)
        ]
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def next_session(self) -> BatchSession:
        """The next session in rotation."""
        if not self._sessions:
            raise IndexError("session pool is empty")
        with self._lock:
            index = next(self._counter)
        return self._sessions[index % len(self._sessions)]

    def size(self) -> int:
        return len(self._sessions)