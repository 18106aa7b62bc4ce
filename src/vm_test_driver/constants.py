"""Constants for vm-test-driver wire formats and limits."""

from typing import Final

# ============================================================================
# Guest Console
# ============================================================================

BOOT_SENTINEL: Final[str] = "===UP==="
"""Console line printed by the guest once its command listener accepts connections."""

CONSOLE_RING_LINES: Final[int] = 200
"""Recent console lines kept in memory for error diagnostics."""

CONSOLE_STREAM_LIMIT: Final[int] = 1024 * 1024
"""StreamReader buffer limit for the VM output pipe (longest console line)."""

# ============================================================================
# Command Channel
# ============================================================================

COMMAND_SOCKET_NAME: Final[str] = "65535.socket"
"""Unix socket created inside the state directory, forwarded to the guest shell."""

TRAILER_MARKER: Final[str] = "|!=EOF"
"""Marker echoed by the guest after each command, followed by the exit status."""

HANDSHAKE_COMMAND: Final[str] = "echo hello"
"""Probe sent on a fresh channel before it is used."""

HANDSHAKE_REPLY: Final[str] = "hello"
"""Exact line expected back from HANDSHAKE_COMMAND."""

HANDSHAKE_TIMEOUT_SECONDS: Final[float] = 5.0
"""Per-attempt read timeout for the handshake reply."""

CHANNEL_STREAM_LIMIT: Final[int] = 4 * 1024 * 1024
"""StreamReader buffer limit for the command channel (longest output line)."""

POWEROFF_COMMAND: Final[str] = "poweroff"
"""Guest command issued by Machine.shutdown()."""

POWEROFF_TIMEOUT_SECONDS: Final[float] = 60.0
"""How long shutdown() waits for the VM to exit when poweroff drops the channel."""

# ============================================================================
# Retry
# ============================================================================

DEFAULT_RETRY_ATTEMPTS: Final[int] = 900
"""Default maximum number of checks per polling wait."""

DEFAULT_RETRY_INTERVAL_SECONDS: Final[float] = 1.0
"""Default sleep between checks in a polling wait."""

# ============================================================================
# Process Environment
# ============================================================================

ENV_TMPDIR: Final[str] = "TMPDIR"
"""Exposes the state directory to the VM start script."""

ENV_QEMU_OPTS: Final[str] = "QEMU_OPTS"
"""Extra QEMU arguments (console mode, command port redirect, VM network)."""

ENV_QEMU_KERNEL_PARAMS: Final[str] = "QEMU_KERNEL_PARAMS"
"""Kernel command line additions; the guest mounts hostTmpDir from it."""

MCAST_ADDR_PREFIX: Final[str] = "232.18.1."
"""Multicast network used for the inter-VM socket network."""

MCAST_BASE_PORT: Final[int] = 64000
"""Base UDP port for the inter-VM socket network."""

DEFAULT_QEMU_BINARY: Final[str] = "qemu-system-x86_64"
"""Emulator used by the default start command."""

DEFAULT_MEMORY_MB: Final[int] = 384
"""Guest memory for the default start command."""

DEFAULT_MACHINE_NAME: Final[str] = "machine"
"""Fallback name when none is given and the start command doesn't encode one."""

# ============================================================================
# Guest Helpers
# ============================================================================

HOSTFS_MOUNT: Final[str] = "/hostfs"
"""Guest mount point of the host filesystem (screenshots are written through it)."""

VM_NETWORK_INTERFACE: Final[str] = "eth1"
"""Guest interface attached to the inter-VM network (block/unblock)."""
