# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_redact

from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings for the redaction engine.
    Uses environment variables with REDACT_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="REDACT_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    log_level: Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # Masking
    mask_char: str = "█"
    redacted_suffix: str = "_redacted"

    # Matching
    regex_ignore_case: bool = True

    # Rule store access
    store_retry_attempts: int = Field(default=3, ge=1)
    store_retry_backoff_seconds: float = Field(default=0.05, ge=0.0)

    # Artifact cache
    artifact_cache_ttl_seconds: float = Field(default=3600, gt=0)
    artifact_cache_max_size: int = Field(default=256, ge=1)

    # How long a coalesced caller waits on an in-flight redaction. None waits forever.
    redaction_wait_timeout_seconds: Optional[float] = None

    @field_validator("mask_char")
    @classmethod
    def check_mask_char(cls, v: str) -> str:
        if len(v) != 1:
            raise ValueError("mask_char must be exactly one character")
        return v


settings = Settings()
