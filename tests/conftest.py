"""Shared pytest fixtures for vm-test-driver tests."""

import shlex
import shutil
import sys
import tempfile
from collections.abc import AsyncGenerator, Callable, Iterator
from pathlib import Path

import pytest

from vm_test_driver.config import MachineConfig
from vm_test_driver.machine import Machine

FAKE_VM = Path(__file__).parent / "fake_vm.py"

# Unix socket paths are limited to ~108 bytes; pytest's tmp_path (which embeds
# the test name) easily exceeds that once 65535.socket is appended. State
# directories therefore live in a short mkdtemp() directory.


@pytest.fixture
def state_dir() -> Iterator[Path]:
    """Short-path scratch directory for one machine."""
    path = Path(tempfile.mkdtemp(prefix="vmtd-"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


def fake_vm_command(*args: str) -> str:
    """Start command that runs the fake VM with the given flags."""
    return " ".join(shlex.quote(part) for part in (sys.executable, str(FAKE_VM), *args))


@pytest.fixture
def fake_vm() -> Callable[..., str]:
    """fake_vm_command() as a fixture, for tests that build their own config."""
    return fake_vm_command


@pytest.fixture
def make_config(state_dir: Path) -> Callable[..., MachineConfig]:
    """Factory for fake-VM machine configs with a fast polling budget."""

    def factory(*fake_vm_args: str, max_attempts: int = 100, retry_interval: float = 0.1) -> MachineConfig:
        return MachineConfig(
            name="fake",
            start_command=fake_vm_command(*fake_vm_args),
            state_dir=state_dir,
            max_attempts=max_attempts,
            retry_interval=retry_interval,
        )

    return factory


@pytest.fixture
async def machine(make_config: Callable[..., MachineConfig]) -> AsyncGenerator[Machine]:
    """Connected machine backed by the fake VM; powered off after the test."""
    m = Machine(make_config())
    try:
        await m.connect()
        yield m
    finally:
        if m.connected:
            await m.shutdown()
        else:
            await m.kill()
