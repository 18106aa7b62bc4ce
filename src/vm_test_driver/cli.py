"""Command-line interface for vm-test-driver.

Usage:
    vmtd ./result/bin/run-server-vm 'uname -a'           # Boot, run, power off
    vmtd ./run-server-vm 'systemctl status sshd' 'id'    # Several commands
    vmtd --json ./run-server-vm 'cat /etc/hostname' | jq .
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import NoReturn

import click

from vm_test_driver import (
    CommandResult,
    DriverError,
    Machine,
    MachineConfig,
    RetryTimeoutError,
    __version__,
)
from vm_test_driver._logging import configure_logging

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_DRIVER_ERROR = 125


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def format_results_json(commands: tuple[str, ...], results: list[CommandResult]) -> str:
    """Format command results as a JSON list."""
    return json.dumps(
        [
            {"command": command, "exit_code": result.exit_code, "output": result.output}
            for command, result in zip(commands, results, strict=True)
        ],
        indent=2,
    )


async def run_commands(
    config: MachineConfig,
    commands: tuple[str, ...],
    json_output: bool,
) -> int:
    """Boot the machine, run commands, power it off.

    Returns:
        Exit code to return from CLI (last command's status)
    """
    results: list[CommandResult] = []
    try:
        async with Machine(config) as machine:
            await machine.connect()
            for command in commands:
                result = await machine.execute(command)
                results.append(result)
                if not json_output:
                    click.echo(result.output, nl=False)

        if json_output:
            click.echo(format_results_json(commands, results))

        return results[-1].exit_code if results else EXIT_SUCCESS

    except RetryTimeoutError as e:
        click.echo(
            format_error(
                "Timed out",
                e.message,
                [
                    "Check the console output above for boot errors",
                    "Make sure the guest prints ===UP=== once its command shell is listening",
                    "Increase --max-attempts or --interval",
                ],
            ),
            err=True,
        )
        return EXIT_TIMEOUT

    except DriverError as e:
        click.echo(
            format_error(
                "Driver error",
                e.message,
                [
                    "Check that the start command runs on its own",
                    "Check the console output above",
                ],
            ),
            err=True,
        )
        return EXIT_DRIVER_ERROR


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("start_command")
@click.argument("commands", nargs=-1)
@click.option("-n", "--name", help="Machine name (default: derived from run-<name>-vm)")
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Scratch directory (default: $TMPDIR/<name>)",
)
@click.option("--max-attempts", type=click.IntRange(min=1), help="Polling attempts per wait")
@click.option("--interval", type=click.FloatRange(min=0), help="Seconds between polling attempts")
@click.option("--json", "json_output", is_flag=True, help="Output results as JSON")
@click.option("-q", "--quiet", is_flag=True, help="Suppress console and driver logs")
@click.version_option(__version__, "-V", "--version", prog_name="vm-test-driver")
def main(
    start_command: str,
    commands: tuple[str, ...],
    name: str | None,
    state_dir: Path | None,
    max_attempts: int | None,
    interval: float | None,
    json_output: bool,
    quiet: bool,
) -> NoReturn:
    """Boot a VM, run shell COMMANDS inside it, and power it off.

    START_COMMAND is run through the shell with $QEMU_OPTS,
    $QEMU_KERNEL_PARAMS and $TMPDIR set for the VM.

    Examples:

    \b
      vmtd ./result/bin/run-server-vm 'uname -a'
      vmtd -n client 'qemu-system-x86_64 -hda c.qcow2 $QEMU_OPTS' 'id'
      vmtd --json ./run-server-vm 'cat /etc/hostname'
    """
    configure_logging(level="INFO", quiet=quiet)

    overrides: dict[str, object] = {"start_command": start_command}
    if name:
        overrides["name"] = name
    if state_dir is not None:
        overrides["state_dir"] = state_dir
    if max_attempts is not None:
        overrides["max_attempts"] = max_attempts
    if interval is not None:
        overrides["retry_interval"] = interval

    try:
        config = MachineConfig.model_validate(overrides)
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc

    exit_code = asyncio.run(run_commands(config, commands, json_output))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
