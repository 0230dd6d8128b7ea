import asyncio
import os

import pytest

from errors import DataError
from storage import MAX_AVATAR_BYTES, LocalBlobStorage, latest_avatar_url, upload_avatar


def test_upload_replaces_previous_avatar(tmp_path) -> None:
    storage = LocalBlobStorage(tmp_path, url_prefix="/avatars/")

    async def scenario():
        first = await upload_avatar(storage, "user-1", "me.PNG", b"one")
        second = await upload_avatar(storage, "user-1", "me.jpg", b"two")
        return first, second, await latest_avatar_url(storage, "user-1")

    first, second, latest = asyncio.run(scenario())

    assert first.startswith("/avatars/user-1/avatar-") and first.endswith(".png")
    assert latest == second
    files = list((tmp_path / "user-1").iterdir())
    assert len(files) == 1
    assert files[0].read_bytes() == b"two"


def test_latest_avatar_uses_modification_time(tmp_path) -> None:
    folder = tmp_path / "user-2"
    folder.mkdir()
    (folder / "b.png").write_bytes(b"old")
    (folder / "a.png").write_bytes(b"new")
    os.utime(folder / "b.png", (1_000_000, 1_000_000))
    os.utime(folder / "a.png", (2_000_000, 2_000_000))
    storage = LocalBlobStorage(tmp_path)

    url = asyncio.run(latest_avatar_url(storage, "user-2"))

    assert url == "/avatars/user-2/a.png"


def test_no_avatar_yet(tmp_path) -> None:
    storage = LocalBlobStorage(tmp_path)

    assert asyncio.run(latest_avatar_url(storage, "nobody")) is None


@pytest.mark.parametrize(
    "filename,data",
    [
        ("notes.txt", b"x"),
        ("noext", b"x"),
        ("empty.png", b""),
        ("huge.png", b"x" * (MAX_AVATAR_BYTES + 1)),
    ],
)
def test_invalid_avatar_uploads_are_rejected(tmp_path, filename, data) -> None:
    storage = LocalBlobStorage(tmp_path)

    with pytest.raises(ValueError):
        asyncio.run(upload_avatar(storage, "user-1", filename, data))

    assert not (tmp_path / "user-1").exists()


def test_paths_cannot_escape_the_bucket(tmp_path) -> None:
    storage = LocalBlobStorage(tmp_path / "bucket")

    with pytest.raises(DataError):
        asyncio.run(storage.upload("../outside.png", b"x"))
    with pytest.raises(DataError):
        storage.get_public_url("user/../../etc/passwd")
