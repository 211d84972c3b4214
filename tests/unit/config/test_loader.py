"""
nox-core — unit tests for config loader

File: tests/unit/config/test_loader.py
Last updated: 2026-10-18

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Deterministic env var path mapping and type coercion, including comma-separated lists.
- Redacted effective config dumping.

Functional requirements
- Works without provider keys or network.

Non-functional requirements
- Deterministic output across repeated loads.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from nox_core.config.loader import ConfigLoadError, dump_effective_config, load_config
from nox_core.config.schema import ConfigValidationError


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "nox.toml"
    default_path = tmp_path / "default.toml"
    _write_config(default_path, "")
    _write_config(
        config_path,
        """
[restrictions]
max_files_per_batch = 10
""".strip(),
    )

    default_loaded = load_config(default_path, environ={})
    file_loaded = load_config(config_path, environ={})
    env_loaded = load_config(config_path, environ={"NOX_RESTRICTIONS_MAX_FILES_PER_BATCH": "20"})
    cli_loaded = load_config(
        config_path,
        environ={"NOX_RESTRICTIONS_MAX_FILES_PER_BATCH": "20"},
        cli_overrides={"restrictions.max_files_per_batch": 30},
    )

    assert default_loaded["restrictions"]["max_files_per_batch"] == 50
    assert file_loaded["restrictions"]["max_files_per_batch"] == 10
    assert env_loaded["restrictions"]["max_files_per_batch"] == 20
    assert cli_loaded["restrictions"]["max_files_per_batch"] == 30


def test_env_mapping_covers_lists_nested_providers_and_optional_fields(tmp_path: Path) -> None:
    config_path = tmp_path / "nox.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={
            "NOX_RESTRICTIONS_NEVER_EXECUTE": "rm_rf, sudo_command ,",
            "NOX_PROVIDERS_DEFAULT": "openai",
            "NOX_PROVIDERS_OPENAI_MODEL": "gpt-4o",
            "NOX_PROVIDERS_OPENAI_TEMPERATURE": "0.1",
            "NOX_OBSERVABILITY_JSON_LOGS": "yes",
            "NOX_EXECUTION_ROLLBACK_POINT_LIMIT": "5",
            "NOX_MODES_DEFAULT": "agent",
            "UNRELATED": "ignored",
        },
    )

    assert loaded["restrictions"]["never_execute"] == ["rm_rf", "sudo_command"]
    assert loaded["providers"]["default"] == "openai"
    assert loaded["providers"]["openai"]["model"] == "gpt-4o"
    assert loaded["providers"]["openai"]["temperature"] == 0.1
    assert loaded["observability"]["json_logs"] is True
    assert loaded["execution"]["rollback_point_limit"] == 5
    assert loaded["modes"]["default"] == "agent"


def test_default_config_file_is_discovered_from_cwd(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_config(tmp_path / "nox.toml", '[modes]\ndefault = "autonomous"\n')
    monkeypatch.chdir(tmp_path)

    assert load_config(environ={})["modes"]["default"] == "autonomous"


def test_missing_implicit_file_uses_defaults(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    loaded = load_config(environ={})

    assert loaded["modes"]["default"] == "assistant"
    assert loaded["approval"]["timeout_seconds"] == 30.0


def test_explicit_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_invalid_toml_raises(tmp_path: Path) -> None:
    config_path = tmp_path / "nox.toml"
    _write_config(config_path, "[modes\ndefault = ")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


@pytest.mark.parametrize(
    ("env_name", "raw", "message"),
    [
        ("NOX_RESTRICTIONS_MAX_FILES_PER_BATCH", "many", "must be an integer"),
        ("NOX_APPROVAL_TIMEOUT_SECONDS", "soon", "must be a number"),
        ("NOX_OBSERVABILITY_REDACT_SECRETS", "maybe", "must be a boolean"),
    ],
)
def test_bad_env_values_raise(tmp_path: Path, env_name: str, raw: str, message: str) -> None:
    config_path = tmp_path / "nox.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigLoadError, match=message):
        load_config(config_path, environ={env_name: raw})


def test_invalid_merged_config_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "nox.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigValidationError, match="modes.default"):
        load_config(config_path, environ={"NOX_MODES_DEFAULT": "pilot"})
    with pytest.raises(ConfigValidationError, match="api_key"):
        load_config(config_path, environ={}, cli_overrides={"providers.openai.api_key": "sk-x"})


def test_cli_overrides_accept_nested_mappings(tmp_path: Path) -> None:
    config_path = tmp_path / "nox.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={},
        cli_overrides={"protocol": {"current_version": 2}, "approval.timeout_seconds": 5},
    )

    assert loaded["protocol"] == {"current_version": 2, "min_supported_version": 1}
    assert loaded["approval"]["timeout_seconds"] == 5.0

    with pytest.raises(ConfigLoadError, match="invalid CLI override key"):
        load_config(config_path, environ={}, cli_overrides={"..": 1})


def test_dump_effective_config_is_redacted_and_deterministic(tmp_path: Path) -> None:
    config_path = tmp_path / "nox.toml"
    _write_config(config_path, "")

    first = dump_effective_config(load_config(config_path, environ={}))
    second = dump_effective_config(load_config(config_path, environ={}))

    assert first == second
    payload = json.loads(first)
    assert payload["providers"]["anthropic"]["api_key_env"] == "<redacted>"
    assert payload["providers"]["anthropic"]["model"] == "claude-sonnet-4-5-20250929"
    assert "ANTHROPIC_API_KEY" not in first
