"""Process-level configuration from environment variables.

This is the only place the harness reads the environment. Everything else
receives explicit values (see InstallOptions.from_settings).
"""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from metal_harness import constants


def _testiso_debug_requested() -> bool:
    # Presence-only toggle: any value (including empty) enables it
    return constants.TESTISO_DEBUG_ENV_VAR in os.environ


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with METAL_HARNESS_ prefix.
    Example: METAL_HARNESS_TMP_ROOT=/srv/scratch
    """

    model_config = SettingsConfigDict(
        env_prefix="METAL_HARNESS_",
        extra="ignore",
    )

    # Scratch space for install runs (needs room for a copied live ISO)
    tmp_root: Path = Path(constants.DEFAULT_TMP_ROOT)

    # Verbose systemd/journald kargs on every install run
    debug_kargs: bool = Field(default_factory=_testiso_debug_requested)
