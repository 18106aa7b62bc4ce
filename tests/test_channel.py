"""Tests for the guest command channel protocol.

Unit tests run CommandChannel against a scripted Unix socket server that
answers each request line with a canned reply, so framing, spillover and
end-of-stream handling are exercised over a real socket.
"""

import asyncio
import errno
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path

import pytest
from hypothesis import given
from hypothesis.strategies import integers, text

from vm_test_driver.channel import CommandChannel, frame_command, parse_trailer
from vm_test_driver.exceptions import ConnectionLostError
from vm_test_driver.models import CommandResult

# ---------------------------------------------------------------------------
# Scripted guest
# ---------------------------------------------------------------------------

# A reply is written in one piece (bytes), in fragments with a pause between
# them (list of bytes), or not at all: None closes the connection.
Reply = bytes | list[bytes] | None


class _ScriptedGuest:
    """Answers the n-th request line with the n-th scripted reply."""

    def __init__(self, replies: list[Reply], delay: float = 0.0, close_after: bool = False) -> None:
        self.replies = replies
        self.delay = delay
        self.close_after = close_after
        self.requests: list[bytes] = []

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            for reply in self.replies:
                line = await reader.readline()
                if not line:
                    return
                self.requests.append(line)
                if self.delay:
                    await asyncio.sleep(self.delay)
                if reply is None:
                    return
                for fragment in [reply] if isinstance(reply, bytes) else reply:
                    writer.write(fragment)
                    await writer.drain()
                    await asyncio.sleep(0.01)
            if not self.close_after:
                # Hold the connection open until the client leaves
                await reader.read()
        finally:
            writer.close()


@pytest.fixture
async def serve(state_dir: Path) -> AsyncGenerator[Callable[..., Awaitable[tuple[_ScriptedGuest, Path]]]]:
    servers: list[asyncio.Server] = []

    async def start(
        replies: list[Reply], delay: float = 0.0, close_after: bool = False
    ) -> tuple[_ScriptedGuest, Path]:
        guest = _ScriptedGuest(replies, delay, close_after)
        path = state_dir / "65535.socket"
        servers.append(await asyncio.start_unix_server(guest.handle, path=str(path)))
        return guest, path

    yield start

    for server in servers:
        server.close()
        await server.wait_closed()


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------


class TestFrameCommand:
    def test_wire_format(self) -> None:
        assert frame_command("echo ok; exit 0") == b"( echo ok; exit 0 ); echo '|!=EOF' $?\n"

    def test_single_line(self) -> None:
        assert frame_command("true").count(b"\n") == 1


class TestParseTrailer:
    @pytest.mark.parametrize(
        ("line", "expected"),
        [
            ("|!=EOF 0\n", ("", 0)),
            ("|!=EOF 7\n", ("", 7)),
            ("|!=EOF 255", ("", 255)),
            ("partial|!=EOF 1\n", ("partial", 1)),
            ("a|!=EOF b|!=EOF 3\n", ("a|!=EOF b", 3)),
            ("|!=EOF    42\r\n", ("", 42)),
        ],
    )
    def test_trailer_lines(self, line: str, expected: tuple[str, int]) -> None:
        assert parse_trailer(line) == expected

    @pytest.mark.parametrize(
        "line",
        ["hello\n", "", "|!=EOF\n", "|!=EOF x\n", "|!=EOF 1 trailing\n", "!=EOF 0\n", "|!=EOF0\n"],
    )
    def test_plain_output_lines(self, line: str) -> None:
        assert parse_trailer(line) is None

    @given(prefix=text().filter(lambda s: "\n" not in s and "\r" not in s), status=integers(0, 255))
    def test_any_prefix_and_status_round_trip(self, prefix: str, status: int) -> None:
        """Whatever precedes the marker is returned as spillover, digits as status."""
        assert parse_trailer(f"{prefix}|!=EOF {status}\n") == (prefix, status)

    @given(line=text().filter(lambda s: "|!=EOF" not in s))
    def test_no_marker_never_matches(self, line: str) -> None:
        assert parse_trailer(line) is None


# ---------------------------------------------------------------------------
# Execute
# ---------------------------------------------------------------------------


class TestChannelExecute:
    async def test_output_then_trailer(self, serve) -> None:
        guest, path = await serve([b"ok\n|!=EOF 0\n"])
        channel = await CommandChannel.open(path)
        try:
            result = await channel.execute("echo ok; exit 0")
        finally:
            await channel.close()
        assert result == CommandResult(exit_code=0, output="ok\n")
        assert guest.requests == [b"( echo ok; exit 0 ); echo '|!=EOF' $?\n"]

    async def test_nonzero_status_no_output(self, serve) -> None:
        _, path = await serve([b"|!=EOF 7\n"])
        channel = await CommandChannel.open(path)
        status, out = await channel.execute("exit 7")
        await channel.close()
        assert (status, out) == (7, "")

    async def test_spillover_from_unterminated_output(self, serve) -> None:
        _, path = await serve([b"line one\nno newline|!=EOF 0\n"])
        channel = await CommandChannel.open(path)
        result = await channel.execute("printf 'line one\\nno newline'")
        await channel.close()
        assert result.output == "line one\nno newline"

    async def test_trailer_split_across_writes(self, serve) -> None:
        """Buffered reads reassemble lines delivered in fragments."""
        _, path = await serve([[b"o", b"ut\nmo", b"re|!=E", b"OF 3", b"\n"]])
        channel = await CommandChannel.open(path)
        result = await channel.execute("x")
        await channel.close()
        assert (result.exit_code, result.output) == (3, "out\nmore")

    async def test_partial_trailer_keeps_waiting(self, serve) -> None:
        _, path = await serve([b"out\n|!=E"])
        channel = await CommandChannel.open(path)
        task = asyncio.create_task(channel.execute("x"))
        await asyncio.sleep(0.05)
        assert not task.done()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await channel.close()

    async def test_sequential_commands_do_not_interleave(self, serve) -> None:
        guest, path = await serve([b"first\n|!=EOF 0\n", b"second\n|!=EOF 1\n"])
        channel = await CommandChannel.open(path)
        r1 = await channel.execute("c1")
        r2 = await channel.execute("c2")
        await channel.close()
        assert (r1.exit_code, r1.output) == (0, "first\n")
        assert (r2.exit_code, r2.output) == (1, "second\n")
        assert len(guest.requests) == 2

    async def test_long_line_beyond_buffer_limit(self, serve) -> None:
        big = b"x" * (5 * 1024 * 1024)
        _, path = await serve([big + b"\n|!=EOF 0\n"])
        channel = await CommandChannel.open(path)
        result = await channel.execute("yes x | head -c 5M")
        await channel.close()
        assert len(result.output) == len(big) + 1

    async def test_eof_before_trailer_raises_connection_lost(self, serve) -> None:
        _, path = await serve([None])
        channel = await CommandChannel.open(path)
        with pytest.raises(ConnectionLostError):
            await channel.execute("poweroff")
        await channel.close()

    async def test_eof_mid_output_raises_connection_lost(self, serve) -> None:
        """Partial output followed by EOF is an error, never a silent result."""
        _, path = await serve([b"partial output\n"], close_after=True)
        channel = await CommandChannel.open(path)
        with pytest.raises(ConnectionLostError) as exc_info:
            await channel.execute("cat /dev/zero")
        assert "partial output" in exc_info.value.context["partial_output"]
        await channel.close()

    async def test_use_after_close_raises_connection_lost(self, serve) -> None:
        _, path = await serve([None])
        channel = await CommandChannel.open(path)
        with pytest.raises(ConnectionLostError):
            await channel.execute("first")
        with pytest.raises(ConnectionLostError):
            await channel.execute("second")
        await channel.close()

    async def test_socket_error_mid_read_raises_connection_lost(self, serve) -> None:
        """Any socket error while waiting for the trailer is a lost connection."""
        _, path = await serve([b"first line\n"])
        channel = await CommandChannel.open(path)
        task = asyncio.create_task(channel.execute("sleep 60"))
        await asyncio.sleep(0.05)
        channel._reader.set_exception(TimeoutError(errno.ETIMEDOUT, "Connection timed out"))
        with pytest.raises(ConnectionLostError) as exc_info:
            await task
        assert isinstance(exc_info.value.__cause__, OSError)
        assert exc_info.value.context["partial_output"] == "first line\n"
        assert channel.closed
        await channel.close()

    async def test_lost_channel_reports_closed(self, serve) -> None:
        guest, path = await serve([None])
        channel = await CommandChannel.open(path)
        with pytest.raises(ConnectionLostError):
            await channel.execute("poweroff")
        assert channel.closed
        with pytest.raises(ConnectionLostError):
            await channel.execute("echo again")
        assert len(guest.requests) == 1
        await channel.close()


class TestChannelHandshake:
    async def test_hello_reply(self, serve) -> None:
        guest, path = await serve([b"hello\n"])
        channel = await CommandChannel.open(path)
        assert await channel.handshake() is True
        assert guest.requests == [b"echo hello\n"]
        await channel.close()

    async def test_wrong_reply(self, serve) -> None:
        _, path = await serve([b"sh: echo: not found\n"])
        channel = await CommandChannel.open(path)
        assert await channel.handshake() is False
        await channel.close()

    async def test_closed_without_reply(self, serve) -> None:
        _, path = await serve([None])
        channel = await CommandChannel.open(path)
        assert await channel.handshake() is False
        await channel.close()

    async def test_no_reply_times_out(self, serve) -> None:
        _, path = await serve([b"hello\n"], delay=1.0)
        channel = await CommandChannel.open(path)
        assert await channel.handshake(timeout=0.05) is False
        await channel.close()

    async def test_open_missing_socket_raises_oserror(self, state_dir: Path) -> None:
        with pytest.raises(OSError):
            await CommandChannel.open(state_dir / "65535.socket")

    async def test_close_is_idempotent(self, serve) -> None:
        _, path = await serve([b"hello\n"])
        channel = await CommandChannel.open(path)
        await channel.close()
        await channel.close()
        assert channel.closed
