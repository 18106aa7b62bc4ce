"""Machine configuration for vm-test-driver.

MachineConfig describes one VM under test: how to start it, what it is
called, where its state lives, and the polling budget used for every wait.

Example:
    ```python
    from vm_test_driver import Machine, MachineConfig

    # Name derived from the start script: "webserver"
    config = MachineConfig(start_command="./result/bin/run-webserver-vm")

    # Default QEMU command line around a disk image
    config = MachineConfig(name="client", hda=Path("client.qcow2"))

    async with Machine(config) as machine:
        await machine.must_succeed("systemctl is-system-running --wait")
    ```
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from vm_test_driver import constants
from vm_test_driver.settings import Settings

_RUN_SCRIPT_NAME_RE = re.compile(r"run-(.*)-vm$")


def default_start_command(hda: Path | None = None, cdrom: Path | None = None) -> str:
    """Build the stock QEMU command line used when no start command is given.

    $QEMU_OPTS is left for the shell to expand; the driver fills it in the
    child's environment (see process.build_vm_env).
    """
    parts = [
        constants.DEFAULT_QEMU_BINARY,
        f"-m {constants.DEFAULT_MEMORY_MB}",
        "-no-kvm-irqchip",
        "-net nic,model=virtio",
        "-net user",
        "$QEMU_OPTS",
    ]
    if hda is not None:
        parts.append(f"-drive file={hda.resolve()},if=virtio,boot=on,werror=report")
    if cdrom is not None:
        parts.append(f"-cdrom {cdrom}")
    return " ".join(parts)


def machine_name_from_command(start_command: str) -> str:
    """Derive a machine name from a `run-<name>-vm` start script."""
    match = _RUN_SCRIPT_NAME_RE.search(start_command)
    if match and match.group(1):
        return match.group(1)
    return constants.DEFAULT_MACHINE_NAME


class MachineConfig(BaseModel):
    """Configuration for one Machine.

    Attributes:
        name: Identifies the machine in logs and names its state directory.
            Default: taken from a `run-<name>-vm` start command, else "machine".
        start_command: Shell command that launches the VM. Default: stock
            QEMU command line built from hda/cdrom.
        hda: Disk image for the default command line.
        cdrom: CD-ROM image for the default command line.
        state_dir: Scratch directory for the command socket and guest-visible
            files. Default: <Settings.tmp_dir>/<name>.
        max_attempts: Checks per polling wait (boot, handshake, wait_for_*).
        retry_interval: Seconds between checks in a polling wait.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    name: str = Field(min_length=1, description="Machine name used in logs and state dir")
    start_command: str = Field(min_length=1, description="Shell command that launches the VM")
    hda: Path | None = Field(default=None, description="Disk image for the default command")
    cdrom: Path | None = Field(default=None, description="CD-ROM image for the default command")
    state_dir: Path = Field(description="Per-machine scratch directory")
    max_attempts: int = Field(
        default_factory=lambda: Settings().retry_max_attempts,
        ge=1,
        description="Maximum checks per polling wait",
    )
    retry_interval: float = Field(
        default_factory=lambda: Settings().retry_interval,
        ge=0,
        description="Seconds between checks in a polling wait",
    )

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)

        if not data.get("start_command"):
            hda = Path(data["hda"]) if data.get("hda") is not None else None
            cdrom = Path(data["cdrom"]) if data.get("cdrom") is not None else None
            data["start_command"] = default_start_command(hda, cdrom)

        if not data.get("name"):
            data["name"] = machine_name_from_command(data["start_command"])

        if data.get("state_dir") is None:
            data["state_dir"] = Settings().tmp_dir / data["name"]

        return data
