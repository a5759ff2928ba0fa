from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StructcallSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="STRUCTCALL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    MODE: str = "default"
    MAX_RETRIES: int = Field(default=3, ge=0)
    VALIDATE: bool = False

    # Seconds before an async stream cancels itself; unset means no limit.
    STREAM_TIMEOUT: Optional[float] = None


@lru_cache(maxsize=1)
def get_settings() -> StructcallSettings:
    return StructcallSettings()


def reset_settings_cache() -> None:
    get_settings.cache_clear()
