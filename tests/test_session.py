import base64
import io

import pytest
from PIL import Image

from cadbatch.errors import ExternalError, InternalError
from cadbatch.session import BatchSession, ChatClient, SessionPool, encode_image


class FakeClient(ChatClient):
    name = "fake"

    def __init__(self, failures=0, answer="answer"):
        self.failures = failures
        self.answer = answer
        self.calls = []

    async def chat(self, prompt, images):
        self.calls.append((prompt, list(images)))
        if len(self.calls) <= self.failures:
            raise RuntimeError("service unavailable")
        return self.answer


def _png_bytes(width, height, mode="RGB"):
    buffer = io.BytesIO()
    Image.new(mode, (width, height)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def image_file(tmp_path):
    path = tmp_path / "drawing.png"
    path.write_bytes(_png_bytes(40, 20))
    return path


def test_encode_image_shrinks_to_max_dimension():
    encoded = encode_image(_png_bytes(300, 100), 100)
    raw = base64.b64decode(encoded)
    assert raw[:2] == b"\xff\xd8"
    with Image.open(io.BytesIO(raw)) as img:
        assert max(img.size) == 100
        assert img.width == 100


def test_encode_image_keeps_small_image_size():
    raw = base64.b64decode(encode_image(_png_bytes(30, 20, "RGBA"), 2048))
    with Image.open(io.BytesIO(raw)) as img:
        assert img.size == (30, 20)
        assert img.format == "JPEG"


def test_encode_image_rejects_garbage():
    with pytest.raises(InternalError):
        encode_image(b"not an image", 100)


@pytest.mark.asyncio
async def test_process_with_retry_returns_answer(image_file):
    client = FakeClient(answer="a culvert")
    session = BatchSession(client, "CAD", "Analyze", 2048, 3, 0)
    answer = await session.process_with_retry(image_file, "drawing.png")
    assert answer == "a culvert"
    prompt, images = client.calls[0]
    assert prompt == "这是一张CAD。Analyze\n\n请分析图片并回答。"
    assert len(images) == 1
    assert base64.b64decode(images[0])[:2] == b"\xff\xd8"


@pytest.mark.asyncio
async def test_process_with_retry_retries_external_failures(image_file):
    client = FakeClient(failures=2)
    session = BatchSession(client, "CAD", "Analyze", 2048, 3, 0)
    assert await session.process_with_retry(image_file, "drawing.png") == "answer"
    assert len(client.calls) == 3


@pytest.mark.asyncio
async def test_process_with_retry_gives_up_after_max_retries(image_file):
    client = FakeClient(failures=100)
    session = BatchSession(client, "CAD", "Analyze", 2048, 2, 0)
    with pytest.raises(ExternalError, match="service unavailable"):
        await session.process_with_retry(image_file, "drawing.png")
    assert len(client.calls) == 3


@pytest.mark.asyncio
async def test_missing_file_is_fatal_without_retry(tmp_path):
    client = FakeClient()
    session = BatchSession(client, "CAD", "Analyze", 2048, 3, 0)
    with pytest.raises(InternalError):
        await session.process_with_retry(tmp_path / "missing.png", "missing.png")
    assert client.calls == []


@pytest.mark.asyncio
async def test_corrupt_image_is_fatal(tmp_path):
    path = tmp_path / "broken.png"
    path.write_bytes(b"garbage")
    client = FakeClient()
    session = BatchSession(client, "CAD", "Analyze", 2048, 3, 0)
    with pytest.raises(InternalError):
        await session.process_with_retry(path, "broken.png")
    assert client.calls == []


def test_quota_consumption():
    session = BatchSession(FakeClient(), "CAD", "Analyze", initial_quota=5)
    assert session.remaining_quota() == 5
    assert session.consume_quota(3) is True
    assert session.remaining_quota() == 2
    assert session.consume_quota(3) is False
    assert session.remaining_quota() == 2


def test_unlimited_quota():
    session = BatchSession(FakeClient(), "CAD", "Analyze")
    assert session.remaining_quota() is None
    assert session.consume_quota(1000) is True


def test_session_defaults_and_name():
    session = BatchSession(FakeClient(), "CAD", "Analyze")
    assert session.client_name() == "fake"
    assert session.timeout == 300.0
    assert session.max_retries == 3


def test_session_pool_creation():
    pool = SessionPool(FakeClient(), 4, "CAD", "Analyze", 2048, 3, 100)
    assert pool.size() == 4
    session1 = pool.next_session()
    session2 = pool.next_session()
    assert session1.drawing_type == "CAD"
    assert session2.drawing_type == "CAD"
    assert session1 is not session2


def test_session_pool_round_robin():
    pool = SessionPool(FakeClient(), 3, "CAD", "Analyze")
    first = [pool.next_session() for _ in range(3)]
    second = [pool.next_session() for _ in range(3)]
    assert [s.session_id for s in first] == [s.session_id for s in second]
    assert len({s.session_id for s in first}) == 3


def test_empty_pool_raises():
    pool = SessionPool(FakeClient(), 0, "CAD", "Analyze")
    assert pool.size() == 0
    with pytest.raises(IndexError):
        pool.next_session()