import asyncio
import hashlib
import io

import pytest

from infrastructure.external.storage import supports_presign
from infrastructure.external.storage.base import Store
from infrastructure.external.storage.context import OperationContext
from infrastructure.external.storage.exceptions import (
    ConfigurationError,
    DeadlineExceededError,
    DeleteFailedError,
    InvalidKeyError,
    NotFoundError,
    OperationCancelledError,
    UploadFailedError,
    ValidationError,
)
from infrastructure.external.storage.models import ListInput, UploadInput
from infrastructure.external.storage.providers.local import LocalStore


async def _put(store: LocalStore, key: str, data: bytes):
    return await store.upload(UploadInput(key=key, body=data))


class FailingStream:
    """Body that yields one chunk and then fails."""

    def __init__(self):
        self.reads = 0

    def read(self, size=-1):
        self.reads += 1
        if self.reads > 1:
            raise OSError("device disconnected")
        return b"x" * 1024


class CancelAfterChecks(OperationContext):
    """Context that cancels itself once ``allowed`` checks have passed."""

    def __init__(self, allowed: int):
        super().__init__()
        self.allowed = allowed
        self.checks = 0

    def check(self, pending=None):
        self.checks += 1
        if self.checks > self.allowed:
            self.cancel()
        super().check(pending)


@pytest.mark.asyncio
async def test_upload_then_download_round_trip(local_store):
    payload = b"\x00\x01binary payload\xff" * 1000
    out = await _put(local_store, "docs/report.bin", payload)

    assert out.etag == hashlib.md5(payload).hexdigest()
    assert out.version_id is None
    assert out.location == str(local_store.base_path / "docs" / "report.bin")

    sink = io.BytesIO()
    written = await local_store.download("docs/report.bin", sink)
    assert written == len(payload)
    assert sink.getvalue() == payload


@pytest.mark.asyncio
async def test_stored_bytes_are_exactly_the_uploaded_bytes(local_store):
    await _put(local_store, "a/b/c.txt", b"plain")
    assert (local_store.base_path / "a" / "b" / "c.txt").read_bytes() == b"plain"


@pytest.mark.asyncio
async def test_upload_accepts_file_objects(local_store):
    await local_store.upload(UploadInput(key="stream.txt", body=io.BytesIO(b"from a stream")))
    handle = await local_store.get_object("stream.txt")
    try:
        assert await handle.read() == b"from a stream"
    finally:
        await handle.close()


@pytest.mark.asyncio
async def test_get_object_supports_async_with(local_store):
    await _put(local_store, "ctx.bin", b"0123456789")

    async with await local_store.get_object("ctx.bin") as stream:
        assert await stream.read(4) == b"0123"
        assert await stream.read() == b"456789"


@pytest.mark.asyncio
async def test_failed_body_stream_leaves_no_partial_file(local_store):
    body = FailingStream()

    with pytest.raises(UploadFailedError) as exc_info:
        await local_store.upload(UploadInput(key="broken/obj", body=body))

    assert isinstance(exc_info.value.__cause__, OSError)
    assert body.reads == 2
    assert list((local_store.base_path / "broken").iterdir()) == []
    assert await local_store.exists("broken/obj") is False


@pytest.mark.asyncio
async def test_failed_body_stream_keeps_previous_object(local_store):
    await _put(local_store, "keep", b"previous")

    with pytest.raises(UploadFailedError):
        await local_store.upload(UploadInput(key="keep", body=FailingStream()))

    sink = io.BytesIO()
    await local_store.download("keep", sink)
    assert sink.getvalue() == b"previous"


@pytest.mark.asyncio
async def test_upload_replaces_previous_content(local_store):
    await _put(local_store, "k", b"first version, longer")
    await _put(local_store, "k", b"second")

    sink = io.BytesIO()
    await local_store.download("k", sink)
    assert sink.getvalue() == b"second"


@pytest.mark.asyncio
async def test_upload_requires_body(local_store):
    with pytest.raises(ValidationError):
        await local_store.upload(UploadInput(key="k"))
    with pytest.raises(ValidationError):
        await local_store.upload(UploadInput(key="k", body=12345))
    assert not (local_store.base_path / "k").exists()


@pytest.mark.asyncio
async def test_head_object_hello(local_store):
    await _put(local_store, "greeting.txt", b"hello")
    info = await local_store.head_object("greeting.txt")

    assert info.key == "greeting.txt"
    assert info.size == 5
    assert info.etag == hashlib.md5(b"hello").hexdigest()
    assert info.content_type == "text/plain"
    assert info.last_modified is not None


@pytest.mark.asyncio
async def test_head_object_missing_or_directory(local_store):
    with pytest.raises(NotFoundError):
        await local_store.head_object("missing")

    await _put(local_store, "dir/file", b"x")
    with pytest.raises(NotFoundError):
        await local_store.head_object("dir")


@pytest.mark.asyncio
async def test_exists(local_store):
    assert await local_store.exists("x/y") is False
    await _put(local_store, "x/y", b"1")
    assert await local_store.exists("x/y") is True
    assert await local_store.exists("x") is False


@pytest.mark.asyncio
async def test_download_and_get_object_missing(local_store):
    with pytest.raises(NotFoundError):
        await local_store.download("nope", io.BytesIO())
    with pytest.raises(NotFoundError):
        await local_store.get_object("nope")


@pytest.mark.asyncio
async def test_delete_is_idempotent(local_store):
    await _put(local_store, "tmp/file", b"data")

    await local_store.delete("tmp/file")
    await local_store.delete("tmp/file")

    assert await local_store.exists("tmp/file") is False


@pytest.mark.asyncio
async def test_delete_multiple_ignores_missing_keys(local_store):
    await _put(local_store, "m/1", b"1")
    await _put(local_store, "m/2", b"2")

    failed = await local_store.delete_multiple(["m/1", "m/missing", "m/2", "m/gone"])

    assert failed == []
    assert await local_store.exists("m/1") is False
    assert await local_store.exists("m/2") is False


@pytest.mark.asyncio
async def test_delete_multiple_reports_failed_keys(local_store):
    await _put(local_store, "d/sub/file", b"1")
    await _put(local_store, "d/ok", b"2")

    # A directory cannot be removed as an object
    with pytest.raises(DeleteFailedError) as exc_info:
        await local_store.delete_multiple(["d/ok", "d/sub"])

    assert exc_info.value.failed_keys == ["d/sub"]
    assert await local_store.exists("d/ok") is False


@pytest.mark.asyncio
async def test_delete_multiple_empty(local_store):
    assert await local_store.delete_multiple([]) == []


@pytest.mark.asyncio
async def test_delete_multiple_cancelled_before_start(local_store):
    await _put(local_store, "c/1", b"1")
    ctx = OperationContext()
    ctx.cancel()

    with pytest.raises(OperationCancelledError) as exc_info:
        await local_store.delete_multiple(["c/1", "c/2"], ctx=ctx)

    assert exc_info.value.failed_keys == ["c/1", "c/2"]
    assert await local_store.exists("c/1") is True


@pytest.mark.asyncio
async def test_expired_deadline_is_reported_as_cancellation(local_store):
    ctx = OperationContext(timeout=0)
    with pytest.raises(DeadlineExceededError):
        await local_store.upload(UploadInput(key="late", body=b"x"), ctx=ctx)
    assert not (local_store.base_path / "late").exists()


@pytest.mark.asyncio
async def test_list_pagination(local_store):
    for i in range(5, 0, -1):
        await _put(local_store, f"a/{i}", str(i).encode())
    await _put(local_store, "b/1", b"other prefix")

    first = await local_store.list(ListInput(prefix="a/", max_keys=2))
    assert [o.key for o in first.objects] == ["a/1", "a/2"]
    assert first.is_truncated is True
    assert first.next_marker == "a/2"

    rest = await local_store.list(ListInput(prefix="a/", start_after=first.next_marker))
    assert [o.key for o in rest.objects] == ["a/3", "a/4", "a/5"]
    assert rest.is_truncated is False
    assert rest.next_marker == "a/5"


@pytest.mark.asyncio
async def test_list_defaults(local_store):
    await _put(local_store, "z.json", b"{}")
    await _put(local_store, "nested/deep/y.png", b"png")

    out = await local_store.list()
    assert [o.key for o in out.objects] == ["nested/deep/y.png", "z.json"]
    assert out.objects[0].content_type == "image/png"
    assert out.objects[1].size == 2

    out = await local_store.list(ListInput(max_keys=0))
    assert out.is_truncated is False

    empty = await local_store.list(ListInput(prefix="nothing/"))
    assert empty.objects == []
    assert empty.next_marker == ""


@pytest.mark.asyncio
async def test_list_skips_in_flight_temp_files(local_store):
    await _put(local_store, "p/real", b"1")
    (local_store.base_path / "p" / ".tmp-123456").write_bytes(b"partial")

    out = await local_store.list(ListInput(prefix="p/"))
    assert [o.key for o in out.objects] == ["p/real"]


@pytest.mark.asyncio
async def test_reserved_temp_prefix_cannot_be_stored(local_store):
    with pytest.raises(InvalidKeyError):
        await _put(local_store, "docs/.tmp-notes", b"hidden")

    await _put(local_store, "docs/notes.tmp-1", b"visible")
    out = await local_store.list(ListInput(prefix="docs/"))
    assert [o.key for o in out.objects] == ["docs/notes.tmp-1"]


@pytest.mark.asyncio
async def test_list_cancelled_between_walked_entries(local_store):
    for i in range(1, 6):
        await _put(local_store, f"w/{i}", b"x")

    # One check before the walk, then one per file
    ctx = CancelAfterChecks(allowed=3)
    with pytest.raises(OperationCancelledError):
        await local_store.list(ListInput(prefix="w/"), ctx=ctx)

    assert ctx.checks == 4


@pytest.mark.asyncio
async def test_list_deadline_expired(local_store):
    await _put(local_store, "w/1", b"x")

    with pytest.raises(DeadlineExceededError):
        await local_store.list(ctx=OperationContext(timeout=0))


@pytest.mark.asyncio
async def test_copy(local_store):
    await _put(local_store, "src/file.txt", b"original")
    await local_store.copy("src/file.txt", "dst/nested/file.txt")
    await _put(local_store, "src/file.txt", b"changed")

    sink = io.BytesIO()
    await local_store.download("dst/nested/file.txt", sink)
    assert sink.getvalue() == b"original"


@pytest.mark.asyncio
async def test_copy_missing_source(local_store):
    with pytest.raises(NotFoundError):
        await local_store.copy("missing", "dst")
    assert not (local_store.base_path / "dst").exists()


@pytest.mark.parametrize("key", ["../secret", "a/../../secret", "/abs/path", ""])
@pytest.mark.asyncio
async def test_invalid_keys_rejected_by_every_operation(local_store, tmp_path, key):
    await _put(local_store, "valid", b"v")
    operations = [
        local_store.upload(UploadInput(key=key, body=b"evil")),
        local_store.download(key, io.BytesIO()),
        local_store.get_object(key),
        local_store.head_object(key),
        local_store.exists(key),
        local_store.delete(key),
        local_store.delete_multiple(["valid", key]),
        local_store.copy(key, "valid"),
        local_store.copy("valid", key),
    ]
    for operation in operations:
        with pytest.raises(InvalidKeyError):
            await operation

    assert not (tmp_path / "secret").exists()
    # delete_multiple validated every key before deleting anything
    assert await local_store.exists("valid") is True


@pytest.mark.asyncio
async def test_symlink_escape_is_rejected(local_store, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    (local_store.base_path / "link").symlink_to(outside, target_is_directory=True)

    with pytest.raises(InvalidKeyError):
        await _put(local_store, "link/file", b"x")
    assert not (outside / "file").exists()


@pytest.mark.asyncio
async def test_concurrent_uploads_to_same_key_keep_one_full_payload(local_store):
    payloads = [bytes([65 + i]) * 300_000 for i in range(8)]

    await asyncio.gather(*(_put(local_store, "race/obj", p) for p in payloads))

    stored = (local_store.base_path / "race" / "obj").read_bytes()
    assert stored in payloads
    leftovers = [p.name for p in (local_store.base_path / "race").iterdir()]
    assert leftovers == ["obj"]


@pytest.mark.asyncio
async def test_local_store_satisfies_contract_without_presign(local_store):
    assert isinstance(local_store, Store)
    assert supports_presign(local_store) is False
    assert await local_store.health_check() is True


def test_base_path_must_exist_when_not_created(tmp_path):
    with pytest.raises(ConfigurationError):
        LocalStore(str(tmp_path / "absent"), create_base_path=False)

    file_path = tmp_path / "a-file"
    file_path.write_bytes(b"")
    with pytest.raises(ConfigurationError):
        LocalStore(str(file_path))

    with pytest.raises(ConfigurationError):
        LocalStore("")
