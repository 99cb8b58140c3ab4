import pytest

from cadbatch.errors import (
    BatchError,
    BatchErrorKind,
    ExternalError,
    InternalError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)


def test_is_retryable():
    assert BatchError.retryable("test").is_retryable()
    assert not BatchError.fatal("test").is_retryable()
    assert not BatchError.quota_exceeded(10, 5).is_retryable()
    assert not BatchError.image_corrupted("bad").is_retryable()


def test_display():
    assert "Retryable error" in str(BatchError.retryable("network error"))
    assert "Fatal error" in str(BatchError.fatal("auth failed"))
    msg = str(BatchError.quota_exceeded(100, 50))
    assert "Quota exceeded" in msg
    assert "100" in msg
    assert "50" in msg
    assert str(BatchError.image_corrupted("x")) == "Image corrupted: x"


def test_from_validation_quota():
    err = BatchError.from_app_error(ValidationError("配额不足"))
    assert err == BatchError.quota_exceeded(1, 0)


def test_from_validation_other_is_fatal():
    err = BatchError.from_app_error(ValidationError("bad input"))
    assert err == BatchError.fatal("bad input")


@pytest.mark.parametrize("exc", [NotFoundError("missing"), UnauthorizedError("missing")])
def test_not_found_and_unauthorized_are_fatal(exc):
    err = BatchError.from_app_error(exc)
    assert err.kind is BatchErrorKind.FATAL
    assert err.message == "missing"


@pytest.mark.parametrize("text", ["429 Too Many", "some failure", "RATE_LIMIT"])
def test_external_is_retryable(text):
    assert BatchError.from_app_error(ExternalError(text)) == BatchError.retryable(text)


@pytest.mark.parametrize(
    "text,retryable",
    [
        ("request timeout", True),
        ("operation timed out", True),
        ("network unreachable", True),
        ("disk broken", False),
    ],
)
def test_internal_classification(text, retryable):
    assert BatchError.from_app_error(InternalError(text)).is_retryable() is retryable


@pytest.mark.parametrize(
    "error",
    [
        BatchError.retryable("a"),
        BatchError.fatal("b"),
        BatchError.image_corrupted("c"),
        BatchError.quota_exceeded(3, 1),
    ],
)
def test_dict_round_trip(error):
    assert BatchError.from_dict(error.to_dict()) == error


def test_dict_shape():
    assert BatchError.retryable("x").to_dict() == {"Retryable": "x"}
    assert BatchError.quota_exceeded(2, 0).to_dict() == {
        "QuotaExceeded": {"required": 2, "remaining": 0}
    }


def test_from_dict_unknown_kind():
    with pytest.raises(ValueError):
        BatchError.from_dict({"Nope": "x"})