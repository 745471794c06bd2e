import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from .data import Direction
from .errors import TransferCancelled

# callback(user_data, direction, bytes_so_far, bytes_total_or_None) -> truthy aborts
ProgressCallback = Callable[
    [Any, Direction, int, Optional[int]], Union[Any, Awaitable[Any]]
]


class Progress:
    """
    Progress accounting for one transfer.

    The callback fires at most once per ``interval`` bytes plus once more
    when the transfer completes, so the last report always carries the
    final byte count. A truthy return value (any non-zero code, True, ...)
    asks for the transfer to be cancelled; ``update`` then returns False.
    A callback that raises cancels the transfer as well, with
    ``TransferCancelled`` chained to its exception.

    Attributes:
        direction: Whether bytes are going up or down.
        total: Expected size in bytes, None when unknown.
        count: Bytes moved so far.
    """

    def __init__(
        self,
        direction: Direction,
        callback: Optional[ProgressCallback] = None,
        data: Any = None,
        total: Optional[int] = None,
        interval: int = 65536,
    ) -> None:
        self.direction = direction
        self.callback = callback
        self.data = data
        self.total = total
        self.interval = interval
        self.count = 0
        self.reported = 0

    async def update(self, amount: int) -> bool:
        """Account ``amount`` more bytes and report if the interval passed.

        Returns:
            bool: False if the callback requested cancellation.
        """
        self.count += amount
        if self.count - self.reported >= self.interval:
            return await self.report()
        return True

    async def done(self) -> bool:
        """Final report, always sent when a callback is set."""
        return await self.report()

    async def report(self) -> bool:
        self.reported = self.count
        if self.callback is None:
            return True
        try:
            result = self.callback(self.data, self.direction, self.count, self.total)
            if inspect.isawaitable(result):
                result = await result
        except Exception as error:
            raise TransferCancelled(f"Progress callback failed: {error}") from error
        return not result
