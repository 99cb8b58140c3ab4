"""Writing batch results as JSON or CSV."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from cadbatch.batch_result import BatchResult, OutputFormat
from cadbatch.errors import InternalError

logger = logging.getLogger(__name__)

_CSV_HEADER = "file,drawing_type,question,status,answer,error,latency_ms"
_CSV_SPECIAL = (",", '"', "\n", "\r")


def escape_csv_field(field: str) -> str:
    """Quote a field that holds a comma, quote or line break."""
    if any(ch in field for ch in _CSV_SPECIAL):
        return '"' + field.replace('"', '""') + '"'
    return field


def save_result(
    result: BatchResult, output_path: str | os.PathLike[str], output_format: OutputFormat
) -> None:
    """Write ``result`` to ``output_path`` in the given format."""
    path = Path(output_path)
    if output_format is OutputFormat.CSV:
        _save_csv(result, path)
    else:
        _save_json(result, path)
    logger.info("Results saved to: %s", path)


def _save_json(result: BatchResult, path: Path) -> None:
    try:
        text = json.dumps(result.to_dict(), indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise InternalError(f"JSON 序列化错误：{exc}") from exc
    try:
        path.write_text(text, encoding="utf-8")
    except OSError as exc:
        raise InternalError(str(exc)) from exc


def _csv_row(item) -> str:
    if item.is_success():
        status, answer, error = "success", escape_csv_field(item.answer or ""), ""
        latency = str(item.latency_ms or 0)
    else:
        status, answer, error = "failed", "", escape_csv_field(item.error or "")
        latency = ""
    return ",".join(
        (
            escape_csv_field(item.file),
            escape_csv_field(item.drawing_type),
            escape_csv_field(item.question),
            status,
            answer,
            error,
            latency,
        )
    )


def _save_csv(result: BatchResult, path: Path) -> None:
    try:
        with open(path, "w", encoding="utf-8", newline="") as handle:
            handle.write(_CSV_HEADER + "\n")
            for item in result.results:
                handle.write(_csv_row(item) + "\n")
    except OSError as exc:
        raise InternalError(str(exc)) from exc