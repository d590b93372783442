import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

T = TypeVar("T")

Probe = Callable[[], Union[Optional[T], Awaitable[Optional[T]]]]


@dataclass
class PollResult(Generic[T]):
    value: Optional[T]
    attempts: int
    elapsed: float

    @property
    def ok(self) -> bool:
        return bool(self.value)

    @property
    def timed_out(self) -> bool:
        return not self.ok


async def _call(probe: Probe) -> Any:
    out = probe()
    if inspect.isawaitable(out):
        out = await out
    return out


async def wait_for(probe: Probe, timeout: float = 2.0, interval: float = 0.2) -> PollResult:
    """
    Poll `probe` until it returns a truthy value or `timeout` elapses.

    The first probe runs immediately; later ones every `interval` seconds. The
    result is definite either way and nothing is left scheduled once it
    returns.
    """
    start = time.monotonic()
    attempts = 0
    while True:
        attempts += 1
        value = await _call(probe)
        elapsed = time.monotonic() - start
        if value:
            return PollResult(value, attempts, elapsed)
        if elapsed >= timeout:
            return PollResult(None, attempts, elapsed)
        await asyncio.sleep(min(interval, max(timeout - elapsed, 0)))
