import json
from datetime import datetime, timezone

import pytest

from cadbatch.batch_result import BatchResult, FileResult, OutputFormat


def _started():
    return datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_file_result_success_accessors():
    r = FileResult.success("a.png", "plan", "what?", "answer text", 120)
    assert r.is_success()
    assert r.answer == "answer text"
    assert r.error is None
    assert r.latency_ms == 120


def test_file_result_failed_accessors():
    r = FileResult.failed("a.png", "plan", "what?", "boom")
    assert not r.is_success()
    assert r.error == "boom"
    assert r.answer is None


def test_file_result_wire_format_is_flattened():
    data = FileResult.success("a.png", "plan", "q", "ans", 7).to_dict()
    assert data["status"] == "success"
    assert data["answer"] == "ans"
    assert data["latency_ms"] == 7
    failed = FileResult.failed("b.png", "plan", "q", "bad").to_dict()
    assert failed["status"] == "failed"
    assert failed["error"] == "bad"
    assert "answer" not in failed


@pytest.mark.parametrize(
    "result",
    [
        FileResult.success("a.png", "plan", "q", "ans", 9),
        FileResult.failed("b.png", "section", "q2", "oops"),
    ],
)
def test_file_result_round_trip(result):
    assert FileResult.from_dict(result.to_dict()) == result


def test_file_result_unknown_status_raises():
    with pytest.raises(ValueError):
        FileResult.from_dict({"file": "x", "drawing_type": "d", "question": "q", "status": "weird"})


def test_new_batch_result_has_zero_counts():
    br = BatchResult("id-1", _started())
    assert (br.total, br.success, br.failed) == (0, 0, 0)
    assert br.completed_at == br.started_at
    assert br.results == []


def test_add_result_counts():
    br = BatchResult("id", _started())
    br.add_result(FileResult.success("a", "t", "q", "x", 10))
    br.add_result(FileResult.failed("b", "t", "q", "e"))
    br.add_result(FileResult.success("c", "t", "q", "y", 20))
    assert br.total == 3
    assert br.success == 2
    assert br.failed == 1
    assert br.total == br.success + br.failed
    assert [r.file for r in br.results] == ["a", "b", "c"]


def test_finish_computes_stats():
    br = BatchResult("id", _started())
    br.add_result(FileResult.success("a", "t", "q", "x", 100))
    br.add_result(FileResult.success("b", "t", "q", "x", 200))
    br.add_result(FileResult.failed("c", "t", "q", "e"))
    br.add_result(FileResult.failed("d", "t", "q", "e"))
    br.finish()
    assert br.stats["avg_latency_ms"] == "150"
    assert br.stats["success_rate"] == "50.00"


def test_finish_on_empty_has_no_stats():
    br = BatchResult("id", _started())
    br.finish()
    assert br.stats == {}
    assert "stats" not in br.to_dict()


def test_progress_file_written_then_removed(tmp_path):
    progress = tmp_path / "sub" / "progress.json"
    br = BatchResult("id", _started(), progress_file=progress)
    br.add_result(FileResult.success("a", "t", "q", "x", 5))
    assert progress.exists()
    saved = json.loads(progress.read_text(encoding="utf-8"))
    assert saved["total"] == 1
    assert saved["results"][0]["file"] == "a"
    br.finish()
    assert not progress.exists()


def test_save_and_load_round_trip(tmp_path):
    path = tmp_path / "result.json"
    br = BatchResult("batch-xyz", _started())
    br.add_result(FileResult.success("a", "t", "q", "答案", 5))
    br.add_result(FileResult.failed("b", "t", "q", "err"))
    br.finish()
    br.save_to_file(path)
    assert not path.with_suffix(".tmp").exists()
    loaded = BatchResult.load_from_file(path)
    assert loaded is not None
    assert loaded.batch_id == "batch-xyz"
    assert loaded.results == br.results
    assert loaded.stats == br.stats
    assert loaded.started_at == br.started_at
    assert loaded.progress_file == path


def test_load_missing_returns_none(tmp_path):
    assert BatchResult.load_from_file(tmp_path / "missing.json") is None


def test_load_garbage_returns_none(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text("{not json", encoding="utf-8")
    assert BatchResult.load_from_file(path) is None


def test_from_dict_accepts_nanosecond_timestamps():
    data = {
        "batch_id": "b",
        "started_at": "2024-01-01T00:00:00.123456789Z",
        "completed_at": "2024-01-01T00:00:01Z",
        "total": 0,
        "success": 0,
        "failed": 0,
        "results": [],
    }
    br = BatchResult.from_dict(data)
    assert br.started_at.microsecond == 123456
    assert br.started_at.tzinfo is not None
    assert br.stats == {}


def test_generate_id_is_unique():
    ids = {BatchResult.generate_id() for _ in range(20)}
    assert len(ids) == 20


@pytest.mark.parametrize(
    "text,expected",
    [("csv", OutputFormat.CSV), ("CSV", OutputFormat.CSV), ("json", OutputFormat.JSON), ("xml", OutputFormat.JSON)],
)
def test_output_format_parse(text, expected):
    assert OutputFormat.parse(text) is expected


def test_output_format_extension_and_str():
    assert OutputFormat.JSON.extension() == "json"
    assert OutputFormat.CSV.extension() == "csv"
    assert str(OutputFormat.CSV) == "csv"