import asyncio


class CancellationToken:
    """Shared stop signal for one turn.

    Calling :meth:`cancel` is the only way to stop a turn's fragment
    stream.  Timeouts, if wanted, are layered on top by calling ``cancel``
    from a timer.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
