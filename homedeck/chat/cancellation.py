"""Cooperative cancellation for in-flight chat requests."""
import asyncio
import logging
from contextlib import suppress
from typing import Any, Awaitable, Optional

logger = logging.getLogger(__name__)


class CancelToken:
    """A cancellation flag checked by the stream reader at every suspension point."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[Any]) -> tuple[bool, Any]:
        """Await `awaitable` unless the token is cancelled first.

        Returns ``(cancelled, result)``. When cancellation wins, the pending
        awaitable is cancelled and ``result`` is None.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            return True, None

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if self.cancelled:
            if task in done:
                # Retrieve the outcome so a failure is not reported as unhandled
                with suppress(Exception):
                    task.result()
            else:
                task.cancel()
                with suppress(asyncio.CancelledError, Exception):
                    await task
            return True, None

        return False, task.result()


class CancelRegistry:
    """Tokens keyed by thread id; starting a new operation supersedes the old one."""

    def __init__(self, name: str = "requests"):
        self.name = name
        self._tokens: dict[str, CancelToken] = {}

    def start(self, key: str) -> CancelToken:
        """Cancel any operation running for `key` and register a fresh token."""
        previous = self._tokens.get(key)
        if previous is not None and not previous.cancelled:
            logger.debug(f"Superseding in-flight {self.name} for {key}")
            previous.cancel()
        token = CancelToken()
        self._tokens[key] = token
        return token

    def cancel(self, key: str) -> bool:
        """Cancel the operation running for `key`. Returns True if one was running."""
        token = self._tokens.pop(key, None)
        if token is None:
            return False
        token.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._tokens):
            self.cancel(key)

    def finish(self, key: str, token: CancelToken) -> None:
        """Forget `token` if it is still the current one for `key`."""
        if self._tokens.get(key) is token:
            del self._tokens[key]

    def get(self, key: str) -> Optional[CancelToken]:
        return self._tokens.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._tokens
