"""Data models for vm-test-driver."""

from collections.abc import Iterator

from pydantic import BaseModel, ConfigDict, Field


class CommandResult(BaseModel):
    """Result of one shell command run inside the guest.

    Unpacks like the (status, output) pair it replaces:

        status, out = await machine.execute("uname -a")
    """

    model_config = ConfigDict(frozen=True)

    exit_code: int = Field(ge=0, description="Exit status reported by the trailer line")
    output: str = Field(default="", description="Interleaved stdout/stderr, trailer stripped")

    def __iter__(self) -> Iterator[int | str]:  # type: ignore[override]
        yield self.exit_code
        yield self.output
