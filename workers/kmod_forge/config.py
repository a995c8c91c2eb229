"""
Orchestrator configuration
"""
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Orchestrator settings, overridable through ``KMOD_*`` environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="KMOD_",
        env_file=".env",
        extra="ignore",
    )

    # Toolchain executables
    CARGO: str = "cargo"
    LD: str = "ld"
    CC: str = "gcc"

    # Layout
    BUILD_ROOT: str = "build"
    MANIFEST: str = "kmod.json"

    # Defaults
    DEFAULT_TARGET_TRIPLE: str = "x86_64-unknown-none"
    PHASE_TIMEOUT: int = 1800  # seconds

    # Environment variables removed on top of the profile's list
    EXTRA_SCRUB_ENV: List[str] = []


def get_settings() -> Settings:
    """Fresh settings instance (re-reads the environment)."""
    return Settings()
