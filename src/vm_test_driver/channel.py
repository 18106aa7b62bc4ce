"""
Guest command channel.

Line-oriented shell protocol over the Unix socket the emulator exposes in the
machine's state directory (<state_dir>/65535.socket, forwarded to a root
shell inside the guest).

Request (one line):

    ( <command> ); echo '|!=EOF' $?

Response: whatever the command prints, followed by a trailer line ending in
`|!=EOF <status>`. If the command's output does not end with a newline the
trailer shares a line with it; everything before the marker on that line is
still command output ("spillover").

One request is in flight at a time: the next request is only written after
the previous trailer has been read.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
from pathlib import Path

from vm_test_driver import constants
from vm_test_driver._logging import get_logger
from vm_test_driver.exceptions import ConnectionLostError
from vm_test_driver.models import CommandResult

logger = get_logger(__name__)

_TRAILER_RE = re.compile(r"^(.*)" + re.escape(constants.TRAILER_MARKER) + r"\s+(\d+)$", re.DOTALL)


def frame_command(command: str) -> bytes:
    """Wrap a shell command so the guest reports its exit status after its output."""
    return f"( {command} ); echo '{constants.TRAILER_MARKER}' $?\n".encode()


def parse_trailer(line: str) -> tuple[str, int] | None:
    """Split a trailer line into (spillover, exit status).

    Args:
        line: One decoded response line, terminator included or not.

    Returns:
        (text before the marker, exit status), or None if the line is plain output.
    """
    match = _TRAILER_RE.match(line.rstrip("\r\n"))
    if match is None:
        return None
    return match.group(1), int(match.group(2))


class CommandChannel:
    """Open connection to the guest's command shell.

    Created through CommandChannel.open(), verified with handshake(), then
    used for sequential execute() calls. Owned by exactly one Machine.
    """

    def __init__(self, socket_path: Path, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.socket_path = socket_path
        self._reader = reader
        self._writer = writer
        self._lost = False

    @classmethod
    async def open(cls, socket_path: Path) -> CommandChannel:
        """Connect to the guest command socket (single attempt, no retry).

        Raises:
            OSError: Socket missing or refusing connections.
        """
        reader, writer = await asyncio.open_unix_connection(str(socket_path), limit=constants.CHANNEL_STREAM_LIMIT)
        return cls(socket_path, reader, writer)

    @property
    def closed(self) -> bool:
        """True once closed locally or once the guest end has gone away."""
        return self._lost or self._writer.is_closing()

    async def handshake(self, timeout: float = constants.HANDSHAKE_TIMEOUT_SECONDS) -> bool:
        """Round-trip a trivial echo to prove the guest shell is answering.

        The emulator accepts connections on the socket before the guest has
        anything listening behind it, so a successful connect alone means
        nothing. Any I/O failure, timeout or wrong reply counts as "not yet".

        Returns:
            True if the guest answered with exactly "hello".
        """
        try:
            self._writer.write(f"{constants.HANDSHAKE_COMMAND}\n".encode())
            await self._writer.drain()
            async with asyncio.timeout(timeout):
                raw = await self._reader.readline()
        except (OSError, TimeoutError, ValueError) as e:
            logger.debug(
                "Handshake attempt failed",
                extra={"socket_path": str(self.socket_path), "error": str(e), "error_type": type(e).__name__},
            )
            return False
        return raw.decode(errors="replace").rstrip("\r\n") == constants.HANDSHAKE_REPLY

    async def _read_line(self) -> bytes:
        """Read up to and including the next newline, however long the line.

        Returns the partial tail (possibly b"") at end-of-stream.
        """
        parts: list[bytes] = []
        while True:
            try:
                parts.append(await self._reader.readuntil(b"\n"))
                break
            except asyncio.LimitOverrunError as e:
                # Longer than the buffer limit: take what's buffered, keep going
                parts.append(await self._reader.readexactly(e.consumed))
            except asyncio.IncompleteReadError as e:
                parts.append(e.partial)
                break
        return b"".join(parts)

    def _connection_lost(self, command: str, **context: object) -> ConnectionLostError:
        self._lost = True
        return ConnectionLostError(
            "connection to VM lost unexpectedly",
            context={"socket_path": str(self.socket_path), "command": command, **context},
        )

    async def execute(self, command: str) -> CommandResult:
        """Run one shell command in the guest and collect its output.

        Blocks until the trailer line arrives; there is no timeout, a hung
        guest command hangs the caller. Once the connection is lost every
        later call fails straight away.

        Raises:
            ConnectionLostError: The channel closed before the trailer line.
        """
        if self._lost:
            raise self._connection_lost(command)

        try:
            self._writer.write(frame_command(command))
            await self._writer.drain()
        except OSError as e:
            raise self._connection_lost(command, error=str(e)) from e

        chunks: list[str] = []
        while True:
            try:
                raw = await self._read_line()
            except OSError as e:
                raise self._connection_lost(command, error=str(e), partial_output="".join(chunks)) from e
            if not raw:
                raise self._connection_lost(command, partial_output="".join(chunks))

            line = raw.decode(errors="replace")
            trailer = parse_trailer(line)
            if trailer is not None:
                spillover, exit_code = trailer
                chunks.append(spillover)
                return CommandResult(exit_code=exit_code, output="".join(chunks))
            chunks.append(line)

    async def close(self) -> None:
        """Close the connection. Safe to call on an already-dead channel."""
        if self._writer.is_closing():
            return
        self._writer.close()
        with contextlib.suppress(OSError):
            await self._writer.wait_closed()
