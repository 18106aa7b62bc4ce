"""VM process supervision.

Spawns the VM start command with controlled I/O, environment and working
directory, wraps the child for PID-reuse safe monitoring, and tears it down.

- build_vm_env: environment handed to the start command
- spawn_vm: fork+exec the start command (stdin=/dev/null, stdout+stderr=pipe)
- ProcessWrapper: asyncio process + psutil handle
- cleanup_process: SIGTERM → SIGKILL teardown that never raises
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Mapping
from pathlib import Path

import psutil

from vm_test_driver import constants
from vm_test_driver._logging import get_logger
from vm_test_driver.exceptions import LaunchError

logger = get_logger(__name__)


def multicast_address(pid: int | None = None) -> str:
    """Multicast address:port for the inter-VM socket network.

    Derived from the driver's PID so that concurrently running drivers on one
    host don't join each other's VM networks.
    """
    if pid is None:
        pid = os.getpid()
    return f"{constants.MCAST_ADDR_PREFIX}{(pid >> 8) & 0xFF}:{constants.MCAST_BASE_PORT + (pid & 0xFF)}"


def build_vm_env(state_dir: Path, base_env: Mapping[str, str] | None = None) -> dict[str, str]:
    """Environment for the VM start command.

    Inherits the host environment and injects:
    - TMPDIR: the machine's state directory (the command socket lands here)
    - QEMU_OPTS: serial console on stdio, no reboot, command port redirect,
      and the inter-VM multicast network on eth1
    - QEMU_KERNEL_PARAMS: tells the guest where the host state dir is
    """
    env = dict(os.environ if base_env is None else base_env)
    env[constants.ENV_TMPDIR] = str(state_dir)
    env[constants.ENV_QEMU_OPTS] = (
        "-nographic -no-reboot -redir tcp:65535::514 "
        f"-net nic,vlan=1 -net socket,vlan=1,mcast={multicast_address()}"
    )
    env[constants.ENV_QEMU_KERNEL_PARAMS] = f"hostTmpDir={state_dir}"
    return env


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process for safer PID monitoring.
    Protects against PID reuse edge cases where OS recycles PIDs.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                # Process already died or inaccessible
                self.psutil_proc = psutil.Process(async_proc.pid)

    async def is_running(self) -> bool:
        """Check if process is still running (PID-reuse safe).

        Runs the blocking psutil call in a worker thread.
        """
        if self.async_proc.returncode is not None:
            return False
        if not self.psutil_proc:
            return True

        try:
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    @property
    def pid(self) -> int | None:
        """Process ID."""
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        """Merged stdout/stderr stream of the VM."""
        return self.async_proc.stdout

    async def wait(self) -> int:
        """Wait for process to complete.

        Returns:
            Process exit code
        """
        return await self.async_proc.wait()

    def _process_tree(self) -> list[psutil.Process]:
        """The start shell plus everything it spawned (the emulator itself)."""
        if self.psutil_proc is None:
            return []
        try:
            children = self.psutil_proc.children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            children = []
        return [*children, self.psutil_proc]

    async def terminate(self) -> None:
        """Terminate process tree (SIGTERM)."""
        if self.psutil_proc and await self.is_running():
            for p in await asyncio.to_thread(self._process_tree):
                with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                    await asyncio.to_thread(p.terminate)
        elif self.async_proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.async_proc.terminate()

    async def kill(self) -> None:
        """Kill process tree (SIGKILL)."""
        if self.psutil_proc and await self.is_running():
            for p in await asyncio.to_thread(self._process_tree):
                with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                    await asyncio.to_thread(p.kill)
        elif self.async_proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.async_proc.kill()


async def spawn_vm(start_command: str, *, state_dir: Path, name: str) -> ProcessWrapper:
    """Launch the VM start command without waiting for it to boot.

    The command runs through the shell (start commands are templates such as
    "qemu-system-x86_64 ... $QEMU_OPTS" or a run-*-vm script). Standard input
    is /dev/null so the VM never blocks on a terminal; stderr is merged into
    stdout so the console monitor sees one ordered stream.

    Raises:
        LaunchError: The process could not be created.
    """
    try:
        proc = await asyncio.create_subprocess_shell(
            start_command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=state_dir,
            env=build_vm_env(state_dir),
            start_new_session=True,  # own process group: Ctrl-C on the driver doesn't hit the VM first
            limit=constants.CONSOLE_STREAM_LIMIT,
        )
    except OSError as e:
        raise LaunchError(
            f"Failed to launch VM: {e}",
            context={"machine": name, "start_command": start_command, "state_dir": str(state_dir)},
        ) from e
    return ProcessWrapper(proc)


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    term_timeout: float = 3.0,
    kill_timeout: float = 2.0,
) -> bool:
    """Force cleanup of the VM process (SIGTERM → SIGKILL).

    Never raises; failures are logged.

    Args:
        proc: ProcessWrapper to stop (None safe - returns immediately)
        name: Machine name for logging
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if the process is gone, False if it survived SIGKILL
    """
    if proc is None or proc.returncode is not None:
        return True

    logger.debug("Sending SIGTERM to VM", extra={"machine": name, "pid": proc.pid})
    await proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=term_timeout)
        return True
    except TimeoutError:
        logger.warning(
            "VM didn't respond to SIGTERM, force killing",
            extra={"machine": name, "pid": proc.pid, "term_timeout": term_timeout},
        )

    await proc.kill()
    try:
        await asyncio.wait_for(proc.wait(), timeout=kill_timeout)
        return True
    except TimeoutError:
        logger.error(
            "VM survived SIGKILL",
            extra={"machine": name, "pid": proc.pid, "kill_timeout": kill_timeout},
        )
        return False
