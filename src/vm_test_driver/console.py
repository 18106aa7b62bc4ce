"""Guest console monitoring.

The VM's merged stdout/stderr is its serial console. One background task per
boot reads it line by line, logs every line under the machine's name, and
fires the boot signal when the guest reports its command listener is up.

End-of-stream is itself an event: when the VM exits (or closes its output)
before printing the sentinel, the monitor still fires the boot signal so that
connect() moves on to the handshake phase and fails there instead of waiting
for a sentinel that will never come.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Literal

from vm_test_driver import constants
from vm_test_driver._logging import get_logger

logger = get_logger(__name__)

BootReason = Literal["ready", "closed"]


class BootSignal:
    """Single-slot boot-completion notification for one Machine.

    Producers (the console monitor) may notify more than once per boot - the
    sentinel and then end-of-stream - but the slot only holds "at least one
    notification happened" plus the first reason. The consumer (connect)
    polls it without blocking so that retry() paces the wait.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: BootReason | None = None

    @property
    def reason(self) -> BootReason | None:
        """Why the signal fired first ("ready" or "closed"), None if pending."""
        return self._reason

    def notify(self, reason: BootReason) -> None:
        if self._reason is None:
            self._reason = reason
        self._event.set()

    def poll(self) -> bool:
        """Non-blocking check; True once the signal has fired this boot."""
        return self._event.is_set()

    async def wait(self) -> BootReason:
        """Block until the signal fires."""
        await self._event.wait()
        assert self._reason is not None
        return self._reason

    def clear(self) -> None:
        """Re-arm for a new boot attempt."""
        self._event.clear()
        self._reason = None


def strip_line_terminator(raw: bytes) -> str:
    """Decode a console line and drop its \\r\\n / \\n terminator."""
    return raw.decode(errors="replace").rstrip("\r\n")


async def _discard_rest_of_line(stream: asyncio.StreamReader) -> None:
    """Drop input up to and including the next newline (or end-of-stream)."""
    while True:
        try:
            await stream.readuntil(b"\n")
            return
        except asyncio.LimitOverrunError as e:
            await stream.readexactly(e.consumed)
        except asyncio.IncompleteReadError:
            return


async def monitor_console(
    stream: asyncio.StreamReader,
    *,
    name: str,
    boot_signal: BootSignal,
    console_lines: deque[str] | None = None,
) -> None:
    """Read the VM console until end-of-stream.

    A line longer than the stream limit is dropped whole, so its tail can
    never be mistaken for the sentinel.

    Args:
        stream: Read end of the VM's stdout/stderr pipe.
        name: Machine name, prefixed to every logged line.
        boot_signal: Fired on the boot sentinel and, unconditionally, on
            end-of-stream.
        console_lines: Optional ring buffer receiving every line (error
            diagnostics).
    """
    try:
        while True:
            try:
                raw = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                raw = e.partial
            except asyncio.LimitOverrunError as e:
                await stream.readexactly(e.consumed)
                await _discard_rest_of_line(stream)
                logger.warning("Console line exceeded buffer limit, dropped", extra={"machine": name})
                continue
            if not raw:
                break

            line = strip_line_terminator(raw)
            logger.info(f"{name}# {line}", extra={"machine": name, "output": line})
            if console_lines is not None:
                console_lines.append(line)

            if line == constants.BOOT_SENTINEL:
                boot_signal.notify("ready")
    finally:
        # If the VM dies, wake up connect().
        boot_signal.notify("closed")
        logger.debug("Console stream closed", extra={"machine": name})


def new_console_buffer() -> deque[str]:
    """Bounded ring buffer for recent console lines."""
    return deque(maxlen=constants.CONSOLE_RING_LINES)
