import pytest

from ftplink import SSL, Security, Status, global_cleanup, global_init
from ftplink import runtime
from ftplink.data import Direction
from ftplink.errors import TransferCancelled
from ftplink.tls import create_context
from ftplink.transfer import Progress


@pytest.fixture(autouse=True)
def released():
    while runtime.references():
        global_cleanup()
    yield
    while runtime.references():
        global_cleanup()


class TestRuntime:
    def test_reference_counting(self):
        assert global_init() is Status.OK
        assert global_init() is Status.OK
        shared = runtime.default_context()
        assert runtime.references() == 2

        global_cleanup()
        assert runtime.references() == 1
        assert runtime.default_context() is shared

        global_cleanup()
        assert runtime.references() == 0
        assert runtime.default_context() is not shared

    def test_cleanup_at_zero_is_ignored(self):
        global_cleanup()
        global_cleanup()
        assert runtime.references() == 0
        assert global_init() is Status.OK
        assert runtime.references() == 1

    def test_default_settings_share_the_context(self):
        global_init()
        settings = SSL(Security.ALL)
        assert create_context(settings) is runtime.default_context()


class TestProgress:
    @pytest.mark.asyncio
    async def test_reports_every_interval_and_at_the_end(self):
        calls = []
        progress = Progress(
            Direction.GET,
            lambda data, direction, now, total: calls.append((data, direction, now, total)),
            "token",
            total=250,
            interval=100,
        )
        for _ in range(25):
            assert await progress.update(10)
        assert await progress.done()

        assert [now for _, _, now, _ in calls] == [100, 200, 250]
        assert all(data == "token" and total == 250 for data, _, _, total in calls)
        assert all(direction is Direction.GET for _, direction, _, _ in calls)

    @pytest.mark.asyncio
    async def test_truthy_return_cancels(self):
        progress = Progress(Direction.PUT, lambda *args: args[2] >= 200, interval=100)
        assert await progress.update(100)
        assert not await progress.update(100)

    @pytest.mark.asyncio
    async def test_async_callback(self):
        seen = []

        async def callback(data, direction, now, total):
            seen.append(now)
            return 1

        progress = Progress(Direction.PUT, callback, interval=10)
        assert not await progress.update(10)
        assert seen == [10]

    @pytest.mark.asyncio
    async def test_raising_callback_cancels(self):
        def callback(data, direction, now, total):
            raise KeyError("missing")

        progress = Progress(Direction.GET, callback, interval=10)
        with pytest.raises(TransferCancelled) as info:
            await progress.update(10)
        assert isinstance(info.value.__cause__, KeyError)
        assert info.value.status is Status.CANCELLED

    @pytest.mark.asyncio
    async def test_without_callback(self):
        progress = Progress(Direction.GET, interval=1)
        assert await progress.update(5)
        assert await progress.done()
        assert progress.count == 5
