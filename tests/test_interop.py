import io

import aioftp
import pytest
import pytest_asyncio

from ftplink import Basic, FtpClient, Status, Timeout


@pytest_asyncio.fixture
async def reference(tmp_path):
    users = [
        aioftp.User(
            login="u",
            password="p",
            base_path=tmp_path,
            home_path="/",
            permissions=[aioftp.Permission("/", readable=True, writable=True)],
        )
    ]
    server = aioftp.Server(users, path_io_factory=aioftp.PathIO)
    await server.start(host="127.0.0.1", port=0)
    port = server.server.sockets[0].getsockname()[1]
    client = FtpClient(
        "127.0.0.1",
        port,
        auth=Basic("u", "p"),
        timeout=Timeout(connect=5, operation=10),
    )
    yield client, tmp_path
    await client.destroy()
    await server.close()


@pytest.mark.asyncio
async def test_round_trip(reference, payload):
    client, root = reference
    assert await client.connect()

    assert await client.upload(io.BytesIO(payload), "/t.bin")
    assert (root / "t.bin").read_bytes() == payload

    sink = io.BytesIO()
    result = await client.download("/t.bin", sink)
    assert result.value == len(payload)
    assert sink.getvalue() == payload


@pytest.mark.asyncio
async def test_directories_and_listing(reference):
    client, root = reference
    assert await client.connect()

    assert await client.mkdir("/docs")
    assert (root / "docs").is_dir()
    assert await client.upload(io.BytesIO(b"notes"), "/docs/notes.txt")

    listing = await client.list("/docs")
    assert b"notes.txt" in listing.value

    assert await client.rename("/docs/notes.txt", "/docs/renamed.txt")
    assert (root / "docs" / "renamed.txt").read_bytes() == b"notes"

    assert await client.delete("/docs/renamed.txt")
    assert await client.rmdir("/docs")
    assert not (root / "docs").exists()


@pytest.mark.asyncio
async def test_missing_file(reference):
    client, _ = reference
    assert await client.connect()
    result = await client.download("/nope.bin", io.BytesIO())
    assert result.status is Status.NOT_FOUND
    assert client.connected


@pytest.mark.asyncio
async def test_progress_without_size_support(reference, payload):
    client, _ = reference
    calls = []
    client.set_progress_callback(lambda data, direction, now, total: calls.append((now, total)))
    assert await client.connect()
    assert await client.upload(io.BytesIO(payload), "/p.bin")
    calls.clear()

    assert await client.download("/p.bin", io.BytesIO())
    assert calls[-1][0] == len(payload)
