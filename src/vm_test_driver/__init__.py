"""vm-test-driver: drive a virtual machine under test from Python.

Boots a VM from a start command, watches its serial console for the guest's
ready sentinel, opens the guest's command socket and runs shell commands in
it, returning exit status and output. Test assertions (wait for a job, a
port, a file, a window) are built on those primitives.

Quick Start:
    ```python
    from vm_test_driver import Machine, MachineConfig

    config = MachineConfig(start_command="./result/bin/run-client-vm")
    async with Machine(config) as client:
        await client.wait_for_job("network-interfaces")
        out = await client.must_succeed("ip addr show eth1")
        await client.must_fail("ping -c 1 unreachable.example")
    ```

Boot and connection:
    start() forks the VM and returns immediately. connect() (implicit in
    execute()) waits until the console prints ===UP=== or closes, then
    retries an echo handshake on <state_dir>/65535.socket. Both waits poll
    once per retry_interval for at most max_attempts attempts.

Requirements:
    - Python 3.12+
    - A VM image whose guest prints ===UP=== on its console and serves a
      root shell on the forwarded command port
"""

from vm_test_driver.config import MachineConfig
from vm_test_driver.exceptions import (
    CommandFailedError,
    ConnectionLostError,
    DriverError,
    LaunchError,
    MachineConfigError,
    RetryTimeoutError,
    UnexpectedSuccessError,
)
from vm_test_driver.machine import Machine
from vm_test_driver.models import CommandResult
from vm_test_driver.retry import retry
from vm_test_driver.settings import Settings

__all__ = [
    "CommandFailedError",
    "CommandResult",
    "ConnectionLostError",
    "DriverError",
    "LaunchError",
    "Machine",
    "MachineConfig",
    "MachineConfigError",
    "RetryTimeoutError",
    "Settings",
    "UnexpectedSuccessError",
    "retry",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("vm-test-driver")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
