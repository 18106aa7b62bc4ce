"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from vm_test_driver import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    Driver settings use the VM_TEST_DRIVER_ prefix
    (e.g. VM_TEST_DRIVER_RETRY_INTERVAL=0.5). A few values keep the names the
    surrounding build environment already exports: TMPDIR for the state
    directory root, `scrot` for the screenshot tool and `out` for the
    output directory screenshots land in.
    """

    model_config = SettingsConfigDict(
        env_prefix="VM_TEST_DRIVER_",
        extra="ignore",
        populate_by_name=True,
    )

    # Per-machine state directories are created under this root
    tmp_dir: Path = Field(
        default=Path("/tmp"),
        validation_alias=AliasChoices("VM_TEST_DRIVER_TMP_DIR", "TMPDIR"),
    )

    # Retry budget applied to boot wait, handshake and every wait_for_* helper
    retry_max_attempts: int = Field(default=constants.DEFAULT_RETRY_ATTEMPTS, ge=1)
    retry_interval: float = Field(default=constants.DEFAULT_RETRY_INTERVAL_SECONDS, ge=0)

    # Screenshots
    scrot: str | None = Field(default=None, validation_alias=AliasChoices("VM_TEST_DRIVER_SCROT", "scrot"))
    out_dir: Path | None = Field(default=None, validation_alias=AliasChoices("VM_TEST_DRIVER_OUT_DIR", "out"))
