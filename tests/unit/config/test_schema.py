"""
nox-core — unit tests for config schema validation

File: tests/unit/config/test_schema.py
Last updated: 2026-10-18

Purpose
- Validate defaults, structured validation issues, deep merge and redaction.

What this test file should cover
- Built-in defaults validate cleanly.
- Cross-field rules: always/never overlap, protocol version range.
- Embedded secrets are rejected; unknown fields are reported with paths.
- Redaction masks env-reference and secret-shaped keys.
"""

from __future__ import annotations

import pytest

from nox_core.config.schema import (
    DEFAULT_CONFIG,
    ConfigSchemaVersion,
    ConfigValidationError,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)


def _issues(config: object) -> dict[str, str]:
    result = validate_config(config)
    assert not result.is_valid
    return {issue.path: issue.message for issue in result.issues}


def test_default_config_is_valid_and_isolated() -> None:
    config = default_config()
    config["restrictions"]["never_execute"].append("file_create")

    assert DEFAULT_CONFIG["restrictions"]["never_execute"] == [
        "git_force_push",
        "rm_rf",
        "sudo_command",
    ]
    validated = assert_valid_config(default_config())
    assert validated["modes"] == {"default": "assistant"}
    assert validated["meta"]["schema_version"] == ConfigSchemaVersion


def test_always_and_never_lists_cannot_overlap() -> None:
    config = merge_config(
        default_config(), {"restrictions": {"always_approve": ["rm_rf", "git_push"]}}
    )

    assert _issues(config) == {
        "restrictions.never_execute": (
            "capabilities cannot be both always-approved and blocked: ['rm_rf']"
        )
    }


def test_protocol_minimum_cannot_exceed_current() -> None:
    config = merge_config(default_config(), {"protocol": {"min_supported_version": 3}})

    assert _issues(config) == {
        "protocol.min_supported_version": "must be <= protocol.current_version"
    }


@pytest.mark.parametrize("key", ["api_key", "apiKey", "client_secret", "auth_token"])
def test_embedded_secrets_are_rejected(key: str) -> None:
    config = merge_config(default_config(), {"providers": {"anthropic": {key: "sk-ant-x"}}})

    issues = _issues(config)

    assert issues == {
        f"providers.anthropic.{key}": (
            "embedded secret values are forbidden; use an *_env key with an env var name"
        )
    }


def test_unknown_fields_and_type_errors_are_reported_with_paths() -> None:
    config = merge_config(
        default_config(),
        {
            "colour": "blue",
            "restrictions": {"max_files_per_batch": 0, "allowed_paths": "src/"},
            "observability": {"log_level": "TRACE", "json_logs": "yes"},
            "providers": {"openai": {"temperature": 3.5, "api_key_env": "lower-case"}},
        },
    )

    issues = _issues(config)

    assert issues["colour"] == "unknown field"
    assert issues["restrictions.max_files_per_batch"] == "must be >= 1"
    assert issues["restrictions.allowed_paths"] == "expected list of strings, got str"
    assert issues["observability.log_level"].startswith("invalid value 'TRACE'")
    assert issues["observability.json_logs"] == "expected boolean, got str"
    assert issues["providers.openai.temperature"] == "must be <= 2.0"
    assert issues["providers.openai.api_key_env"].startswith("must be an env var name")


def test_non_mapping_config_is_rejected() -> None:
    assert _issues(["not", "a", "mapping"]) == {"<root>": "expected object, got list"}
    with pytest.raises(ConfigValidationError, match="invalid config"):
        assert_valid_config("nope")


def test_schema_version_mismatch_carries_migration_guidance() -> None:
    config = merge_config(default_config(), {"meta": {"schema_version": 2}})

    assert _issues(config) == {"meta.schema_version": migration_guidance(2)}
    assert "upgrade the nox-core runtime" in migration_guidance(ConfigSchemaVersion + 1)
    assert migration_guidance(ConfigSchemaVersion) == "schema version is current"


def test_string_lists_are_trimmed_and_deduplicated() -> None:
    config = merge_config(
        default_config(), {"restrictions": {"blocked_paths": [" dist/ ", "dist/", "tmp/"]}}
    )

    validated = assert_valid_config(config)

    assert validated["restrictions"]["blocked_paths"] == ["dist/", "tmp/"]


def test_merge_config_is_deep_and_does_not_mutate_inputs() -> None:
    base = {"providers": {"openai": {"model": "gpt-4o-mini", "max_tokens": 10}}}
    overlay = {"providers": {"openai": {"model": "gpt-4o"}}}

    merged = merge_config(base, overlay)

    assert merged == {"providers": {"openai": {"model": "gpt-4o", "max_tokens": 10}}}
    assert base["providers"]["openai"]["model"] == "gpt-4o-mini"


def test_redact_config_masks_env_references_and_secret_keys() -> None:
    redacted = redact_config(
        {
            "providers": {"openai": {"api_key_env": "OPENAI_API_KEY", "model": "gpt-4o"}},
            "extra": [{"password": "hunter2"}],
        }
    )

    assert redacted == {
        "extra": [{"password": "<redacted>"}],
        "providers": {"openai": {"api_key_env": "<redacted>", "model": "gpt-4o"}},
    }
    assert redact_config("nope") == {}
