# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_redact

import pytest
from pydantic import ValidationError

from coreason_redact.config import Settings
from coreason_redact.masking import RedactionExecutor
from coreason_redact.resolver import TemplateResolver
from coreason_redact.store import InMemoryRuleStore


def test_defaults() -> None:
    settings = Settings()
    assert settings.mask_char == "█"
    assert settings.redacted_suffix == "_redacted"
    assert settings.regex_ignore_case is True
    assert settings.store_retry_attempts == 3
    assert settings.redaction_wait_timeout_seconds is None


def test_env_var_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REDACT_MASK_CHAR", "*")
    monkeypatch.setenv("REDACT_STORE_RETRY_ATTEMPTS", "5")
    monkeypatch.setenv("REDACT_REDACTION_WAIT_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("REDACT_LOG_LEVEL", "DEBUG")

    settings = Settings()
    assert settings.mask_char == "*"
    assert settings.store_retry_attempts == 5
    assert settings.redaction_wait_timeout_seconds == 2.5
    assert settings.log_level == "DEBUG"


def test_mask_char_must_be_single_character(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REDACT_MASK_CHAR", "XX")
    with pytest.raises(ValidationError, match="exactly one character"):
        Settings()


def test_retry_attempts_must_be_positive(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REDACT_STORE_RETRY_ATTEMPTS", "0")
    with pytest.raises(ValidationError):
        Settings()


def test_components_read_module_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    from coreason_redact import config

    monkeypatch.setattr(config.settings, "mask_char", "#")
    monkeypatch.setattr(config.settings, "store_retry_attempts", 7)

    assert RedactionExecutor().mask_char == "#"
    assert TemplateResolver(InMemoryRuleStore()).retry_attempts == 7
