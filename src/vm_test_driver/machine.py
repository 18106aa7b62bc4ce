"""Machine - one supervised VM under test.

A Machine owns the VM process, the console monitor task and the command
channel, and exposes the primitives test scripts are written against.

Example:
    ```python
    async with Machine(MachineConfig(start_command="./result/bin/run-server-vm")) as server:
        await server.wait_for_job("sshd")
        await server.wait_for_open_port(22)
        status, out = await server.execute("uname -a")
        await server.must_fail("test -e /etc/shadow-")
    ```

Lifecycle:
    - start(): spawn the VM, launch the console monitor (returns immediately)
    - connect(): wait for the boot signal, then handshake the command channel
    - execute(): run a shell command (connects lazily)
    - shutdown(): guest poweroff, then reap the VM process
    - kill(): terminate the VM without asking the guest

State invariants:
    connected implies booted and a live channel; not booted implies no
    process and no channel.
"""

from __future__ import annotations

import asyncio
import re
import shlex
from pathlib import Path
from typing import Self

import aiofiles

from vm_test_driver import constants
from vm_test_driver._logging import get_logger
from vm_test_driver.channel import CommandChannel
from vm_test_driver.config import MachineConfig
from vm_test_driver.console import BootSignal, monitor_console, new_console_buffer
from vm_test_driver.exceptions import (
    CommandFailedError,
    ConnectionLostError,
    MachineConfigError,
    RetryTimeoutError,
    UnexpectedSuccessError,
)
from vm_test_driver.models import CommandResult
from vm_test_driver.process import ProcessWrapper, cleanup_process, spawn_vm
from vm_test_driver.retry import Check, retry
from vm_test_driver.settings import Settings

logger = get_logger(__name__)

# xwininfo -root -tree lines look like: 0x1e00003 "xterm": ("xterm" "XTerm") ...
_WINDOW_NAMES_COMMAND = r"""xwininfo -root -tree | sed 's/.*0x[0-9a-f]* \"\([^\"]*\)\".*/\1/; t; d'"""


class Machine:
    """A single VM under test.

    Thread-safety: connect() and execute() are each serialized with an
    asyncio.Lock; the channel never has more than one request in flight.

    Attributes:
        config: Immutable machine configuration.
        boot_signal: Fired by the console monitor (sentinel or console EOF).
        console_lines: Recent console output, attached to boot timeouts.
    """

    def __init__(self, config: MachineConfig, settings: Settings | None = None) -> None:
        self.config = config
        self._settings = settings
        self.boot_signal = BootSignal()
        self.console_lines = new_console_buffer()
        self._process: ProcessWrapper | None = None
        self._channel: CommandChannel | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._booted = False
        self._connected = False
        self._connect_lock = asyncio.Lock()
        self._exec_lock = asyncio.Lock()

        self.config.state_dir.mkdir(mode=0o700, parents=True, exist_ok=True)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state_dir(self) -> Path:
        return self.config.state_dir

    @property
    def socket_path(self) -> Path:
        """Guest command socket inside the state directory."""
        return self.config.state_dir / constants.COMMAND_SOCKET_NAME

    @property
    def booted(self) -> bool:
        return self._booted

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def process(self) -> ProcessWrapper | None:
        return self._process

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = Settings()
        return self._settings

    def __repr__(self) -> str:
        return f"<Machine {self.name!r} booted={self._booted} connected={self._connected}>"

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: object,
    ) -> bool:
        """Shut the guest down cleanly if we can talk to it, otherwise kill it.

        The VM is also killed when the body raised, so the original error
        propagates instead of waiting on a guest that may not answer.
        """
        if exc_type is not None:
            await self.kill()
        elif self._connected:
            await self.shutdown()
        elif self._booted:
            await self.kill()
        return False

    def log(self, msg: str) -> None:
        logger.info(f"{self.name}: {msg}", extra={"machine": self.name})

    async def retry(self, check: Check, description: str = "") -> None:
        """retry() with this machine's polling budget."""
        await retry(
            check,
            max_attempts=self.config.max_attempts,
            interval=self.config.retry_interval,
            description=f"{self.name}: {description}" if description else self.name,
        )

    # -------------------------------------------------------------------------
    # Process lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Launch the VM and its console monitor. No-op if already booted.

        Returns as soon as the process is forked; boot progress is observed
        asynchronously through boot_signal.

        Raises:
            LaunchError: The start command could not be spawned.
        """
        if self._booted:
            return

        self.log("starting vm")
        self.boot_signal.clear()
        self.console_lines.clear()

        proc = await spawn_vm(self.config.start_command, state_dir=self.config.state_dir, name=self.name)
        assert proc.stdout is not None

        self._monitor_task = asyncio.create_task(
            monitor_console(
                proc.stdout,
                name=self.name,
                boot_signal=self.boot_signal,
                console_lines=self.console_lines,
            ),
            name=f"console-{self.name}",
        )

        self.log(f"vm running as pid {proc.pid}")
        self._process = proc
        self._booted = True

    async def wait_for_shutdown(self) -> None:
        """Block until the VM process exits, then reset machine state.

        No-op if not booted.
        """
        if not self._booted or self._process is None:
            return

        exit_code = await self._process.wait()
        if self._monitor_task is not None:
            # Monitor ends on pipe EOF; the VM just exited so this is prompt
            await self._monitor_task
            self._monitor_task = None

        if self._channel is not None:
            await self._channel.close()
            self._channel = None

        logger.debug("VM exited", extra={"machine": self.name, "exit_code": exit_code})
        self._process = None
        self._booted = False
        self._connected = False

    async def kill(self) -> None:
        """Terminate the VM process (SIGTERM, then SIGKILL) and reset state.

        For VMs that never became reachable; prefer shutdown() otherwise.
        """
        if not self._booted:
            return
        self.log("killing vm")
        await cleanup_process(self._process, self.name)
        await self.wait_for_shutdown()

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Boot if needed, wait for the guest, and open the command channel.

        No-op if already connected. The boot wait and the handshake each get
        the full retry budget.

        Raises:
            RetryTimeoutError: No boot signal, or the guest never answered the
                handshake, within the retry budget.
        """
        if self._connected:
            return

        async with self._connect_lock:
            if self._connected:
                return

            await self.start()

            try:
                await self.retry(self.boot_signal.poll, "waiting for the vm to boot")
            except RetryTimeoutError as e:
                e.context["console_log"] = "\n".join(self.console_lines) or "(empty)"
                raise

            if self.boot_signal.reason == "closed":
                logger.warning(
                    f"{self.name}: console closed before {constants.BOOT_SENTINEL}",
                    extra={
                        "machine": self.name,
                        "exit_code": self._process.returncode if self._process else None,
                    },
                )

            try:
                await self.retry(self._try_handshake, "connecting to the vm")
            except RetryTimeoutError as e:
                e.context["console_log"] = "\n".join(self.console_lines) or "(empty)"
                raise

            self.log("connected")
            self._connected = True

    async def _try_handshake(self) -> bool:
        """One handshake attempt on a fresh channel; caches it on success."""
        self.log("trying to connect")
        try:
            channel = await CommandChannel.open(self.socket_path)
        except OSError as e:
            logger.debug(
                "Command socket not accepting connections",
                extra={"machine": self.name, "socket_path": str(self.socket_path), "error": str(e)},
            )
            return False

        if not await channel.handshake():
            await channel.close()
            return False

        self._channel = channel
        return True

    # -------------------------------------------------------------------------
    # Command execution
    # -------------------------------------------------------------------------

    async def execute(self, command: str) -> CommandResult:
        """Run a shell command in the guest.

        Connects first if needed. Never retries and has no timeout.

        Returns:
            CommandResult(exit_code, output); unpacks as (status, output).

        Raises:
            ConnectionLostError: The channel closed before the command finished.
            RetryTimeoutError: Implicit connect() timed out.
        """
        await self.connect()

        async with self._exec_lock:
            if self._channel is None:
                raise ConnectionLostError(
                    "connection to VM lost unexpectedly",
                    context={"machine": self.name, "command": command},
                )
            self.log(f"running command: {command}")
            result = await self._channel.execute(command)
            self.log(f"exit status {result.exit_code}")
            return result

    async def must_succeed(self, *commands: str) -> str:
        """Run commands in order; each must exit 0.

        Returns:
            Concatenated output of all commands.

        Raises:
            CommandFailedError: A command exited nonzero (later ones are not run).
        """
        outputs: list[str] = []
        for command in commands:
            status, out = await self.execute(command)
            if status != 0:
                self.log(f"output: {out}")
                raise CommandFailedError(command, status, out, context={"machine": self.name})
            outputs.append(out)
        return "".join(outputs)

    async def must_fail(self, command: str) -> None:
        """Run a command that must exit nonzero.

        Raises:
            UnexpectedSuccessError: The command exited 0.
        """
        status, out = await self.execute(command)
        if status == 0:
            raise UnexpectedSuccessError(command, out, context={"machine": self.name})

    async def shutdown(self) -> None:
        """Power the guest off and wait for the VM process to exit.

        No-op if not booted. If the command channel is already gone the guest
        can't be asked to power off: the VM is killed and the loss reported.

        Raises:
            ConnectionLostError: The channel was lost before poweroff, or it
                dropped during poweroff and the VM didn't exit within
                POWEROFF_TIMEOUT_SECONDS. The VM is killed in both cases.
        """
        if not self._booted:
            return

        if self._channel is not None and self._channel.closed:
            await self.kill()
            raise ConnectionLostError(
                "cannot power off: connection to VM lost",
                context={"machine": self.name, "command": constants.POWEROFF_COMMAND},
            )

        try:
            await self.execute(constants.POWEROFF_COMMAND)
        except ConnectionLostError:
            # Guest may tear the channel down before echoing the trailer
            if not await self._exited_within(constants.POWEROFF_TIMEOUT_SECONDS):
                await self.kill()
                raise
            logger.debug("Channel closed during poweroff", extra={"machine": self.name})

        await self.wait_for_shutdown()

    async def _exited_within(self, timeout: float) -> bool:
        if self._process is None:
            return True
        try:
            await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    # -------------------------------------------------------------------------
    # Guest helpers
    # -------------------------------------------------------------------------

    async def wait_for_job(self, job_name: str) -> None:
        """Wait for an Upstart job to reach the "running" state."""

        async def check() -> bool:
            _, out = await self.execute(f"initctl status {shlex.quote(job_name)}")
            return "start/running" in out

        await self.retry(check, f"job {job_name} running")

    async def stop_job(self, job_name: str) -> None:
        """Stop an Upstart job and verify it reached "stop/waiting".

        Raises:
            CommandFailedError: The job is still not stopped.
        """
        quoted = shlex.quote(job_name)
        await self.execute(f"initctl stop {quoted}")
        status, out = await self.execute(f"initctl status {quoted}")
        if "stop/waiting" not in out:
            raise CommandFailedError(
                f"initctl stop {quoted}",
                status,
                out,
                context={"machine": self.name},
                message=f"failed to stop {job_name}",
            )

    async def wait_for_file(self, file_name: str) -> None:
        """Wait until the specified file exists in the guest."""

        async def check() -> bool:
            status, _ = await self.execute(f"test -e {shlex.quote(file_name)}")
            return status == 0

        await self.retry(check, f"file {file_name}")

    async def wait_for_open_port(self, port: int) -> None:
        """Wait until the guest is listening on the given TCP port."""

        async def check() -> bool:
            status, _ = await self.execute(f"nc -z localhost {int(port)}")
            return status == 0

        await self.retry(check, f"port {port} open")

    async def wait_for_closed_port(self, port: int) -> None:
        """Wait until the guest is no longer listening on the given TCP port."""

        async def check() -> bool:
            status, _ = await self.execute(f"nc -z localhost {int(port)}")
            return status != 0

        await self.retry(check, f"port {port} closed")

    async def block(self) -> None:
        """Take the inter-VM interface down.

        eth0 stays up so the driver can keep talking to the machine.
        """
        await self.must_succeed(f"ifconfig {constants.VM_NETWORK_INTERFACE} down")

    async def unblock(self) -> None:
        """Bring the inter-VM interface back up."""
        await self.must_succeed(f"ifconfig {constants.VM_NETWORK_INTERFACE} up")

    async def screenshot(self, filename: str) -> Path:
        """Take a screenshot of the X server on :0.0 into the output directory.

        Returns:
            Host path of the PNG (as seen through the guest's host mount).

        Raises:
            MachineConfigError: scrot or the output directory isn't configured.
        """
        settings = self.settings
        if not settings.scrot or settings.out_dir is None:
            raise MachineConfigError(
                "screenshot needs the `scrot` and `out` settings",
                context={"machine": self.name, "scrot": settings.scrot, "out_dir": settings.out_dir},
            )
        target = settings.out_dir / f"{filename}.png"
        guest_path = f"{constants.HOSTFS_MOUNT}/{str(target).lstrip('/')}"
        await self.must_succeed(f"{settings.scrot} {shlex.quote(guest_path)}")
        return target

    async def wait_for_x(self) -> None:
        """Wait until it is possible to connect to the X server.

        Testing for /tmp/.X11-unix/X0 is not enough; the server has to answer.
        """

        async def check() -> bool:
            status, _ = await self.execute("xwininfo -root > /dev/null 2>&1")
            return status == 0

        await self.retry(check, "X server")

    async def get_window_names(self) -> list[str]:
        out = await self.must_succeed(_WINDOW_NAMES_COMMAND)
        return out.splitlines()

    async def wait_for_window(self, regexp: str) -> None:
        """Wait until an X window whose name matches regexp exists."""
        pattern = re.compile(regexp)

        async def check() -> bool:
            return any(pattern.search(n) for n in await self.get_window_names())

        await self.retry(check, f"window matching {regexp!r}")

    async def copy_file_from_host(self, source: Path | str, target: str) -> None:
        """Copy a UTF-8 text file from the host into the guest.

        Content and line endings are kept exactly, no newline is added. The
        command channel is text, so other encodings are not supported.

        Raises:
            UnicodeDecodeError: The source is not valid UTF-8.
        """
        async with aiofiles.open(source, encoding="utf-8", newline="") as f:
            content = await f.read()
        await self.must_succeed(f"printf '%s' {shlex.quote(content)} > {shlex.quote(target)}")
