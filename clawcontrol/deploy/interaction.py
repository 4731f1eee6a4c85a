"""Pending user interactions raised by the orchestrator.

A step that needs a human creates a request, hands it to the hosting
layer's callback and awaits it. The host answers in one of three ways:

- a sync callback returns the value;
- an async callback finishes, and whatever it returned (``None``
  included) is the value;
- the callback returns ``PENDING`` (or, when sync, ``None``) and the host
  calls ``request.resolve(value)`` later.
"""

import asyncio
import inspect
from dataclasses import dataclass, field

# Returned by a callback that will call request.resolve() itself.
PENDING = object()


@dataclass
class PendingInteraction:
    deployment: str
    _future: asyncio.Future = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        self._future = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, value=None) -> None:
        if not self._future.done():
            self._future.set_result(value)

    def reject(self, error: BaseException) -> None:
        if not self._future.done():
            self._future.set_exception(error)

    async def wait(self):
        return await self._future


@dataclass
class ConfirmRequest(PendingInteraction):
    """Yes/no question; resolves to a bool."""

    message: str = ""


@dataclass
class TerminalRequest(PendingInteraction):
    """Run *command* in an interactive terminal; resolves when the user is done.

    ``argv`` is the full local ``ssh -t`` invocation for hosts that spawn a
    terminal emulator.
    """

    command: str = ""
    argv: list[str] = field(default_factory=list)


async def dispatch(callback, request: PendingInteraction):
    """Hand *request* to *callback* and suspend until it is resolved."""
    try:
        result = callback(request)
        if inspect.isawaitable(result):
            result = await result
            if result is None:
                request.resolve(None)
    except Exception as e:
        request.reject(e)
    else:
        if result is not None and result is not PENDING:
            request.resolve(result)
    return await request.wait()
