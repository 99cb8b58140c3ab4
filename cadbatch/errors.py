"""Application errors and the classification of batch failures."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any


class AppError(Exception):
    """Base class for errors raised while processing drawings."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ValidationError(AppError):
    """Input or quota validation failed."""


class NotFoundError(AppError):
    """A requested resource does not exist."""


class UnauthorizedError(AppError):
    """Authentication or authorisation failed."""


class ExternalError(AppError):
    """A call to an external service failed."""


class InternalError(AppError):
    """An internal failure such as I/O or decoding."""


class BatchErrorKind(enum.Enum):
    """The category of a batch failure."""

    RETRYABLE = "Retryable"
    FATAL = "Fatal"
    IMAGE_CORRUPTED = "ImageCorrupted"
    QUOTA_EXCEEDED = "QuotaExceeded"


_RETRYABLE_INTERNAL_MARKERS = ("timeout", "timed out", "network")


@dataclass(frozen=True)
class BatchError:
    """A classified failure of one file in a batch run."""

    kind: BatchErrorKind
    message: str = ""
    required: int = 0
    remaining: int = 0

    @classmethod
    def retryable(cls, message: str) -> "BatchError":
        return cls(BatchErrorKind.RETRYABLE, message)

    @classmethod
    def fatal(cls, message: str) -> "BatchError":
        return cls(BatchErrorKind.FATAL, message)

    @classmethod
    def image_corrupted(cls, message: str) -> "BatchError":
        return cls(BatchErrorKind.IMAGE_CORRUPTED, message)

    @classmethod
    def quota_exceeded(cls, required: int, remaining: int) -> "BatchError":
        return cls(BatchErrorKind.QUOTA_EXCEEDED, required=required, remaining=remaining)

    def is_retryable(self) -> bool:
        """Whether processing the file again may succeed."""
        return self.kind is BatchErrorKind.RETRYABLE

    @classmethod
    def from_app_error(cls, error: BaseException) -> "BatchError":
        """Classify an exception raised while processing a file."""
        message = str(error)
        if isinstance(error, ValidationError):
            if "配额" in message:
                return cls.quota_exceeded(1, 0)
            return cls.fatal(message)
        if isinstance(error, (NotFoundError, UnauthorizedError)):
            return cls.fatal(message)
        if isinstance(error, ExternalError):
            return cls.retryable(message)
        if any(marker in message for marker in _RETRYABLE_INTERNAL_MARKERS):
            return cls.retryable(message)
        return cls.fatal(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialise as an externally tagged mapping."""
        if self.kind is BatchErrorKind.QUOTA_EXCEEDED:
            return {self.kind.value: {"required": self.required, "remaining": self.remaining}}
        return {self.kind.value: self.message}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchError":
        """Parse the mapping produced by :meth:`to_dict`."""
        if not isinstance(data, dict) or len(data) != 1:
            raise ValueError(f"invalid batch error: {data!r}")
        (tag, value), = data.items()
        try:
            kind = BatchErrorKind(tag)
        except ValueError:
            raise ValueError(f"unknown batch error kind: {tag!r}") from None
        if kind is BatchErrorKind.QUOTA_EXCEEDED:
            if not isinstance(value, dict):
                raise ValueError(f"invalid quota error payload: {value!r}")
            return cls.quota_exceeded(int(value["required"]), int(value["remaining"]))
        if not isinstance(value, str):
            raise ValueError(f"invalid error message: {value!r}")
        return cls(kind, value)

    def __str__(self) -> str:
        if self.kind is BatchErrorKind.RETRYABLE:
            return f"Retryable error: {self.message}"
        if self.kind is BatchErrorKind.FATAL:
            return f"Fatal error: {self.message}"
        if self.kind is BatchErrorKind.IMAGE_CORRUPTED:
            return f"Image corrupted: {self.message}"
        return f"Quota exceeded: required {self.required}, remaining {self.remaining}"