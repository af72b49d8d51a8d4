from __future__ import annotations

from pathlib import Path

import pytest

from mobile_flow.settings import RuntimeSettings


def test_defaults_without_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("MOBILE_FLOW_CHECKPOINT_BACKEND", "MOBILE_FLOW_MAX_BUILD_ATTEMPTS", "MOBILE_FLOW_STATE_STORE_ROOT"):
        monkeypatch.delenv(name, raising=False)

    settings = RuntimeSettings.from_env()

    assert settings.checkpoint_backend == "file"
    assert settings.max_build_attempts == 3
    assert settings.recursion_limit == 200
    assert settings.progress_interval_seconds == 2.0
    assert settings.state_store_path(Path("/repo")) == Path("/repo/state_store")


def test_environment_overrides_are_normalized(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MOBILE_FLOW_CHECKPOINT_BACKEND", " SQLite ")
    monkeypatch.setenv("MOBILE_FLOW_CONFLICT_POLICY", "Reject")
    monkeypatch.setenv("MOBILE_FLOW_MAX_BUILD_ATTEMPTS", "5")
    monkeypatch.setenv("MOBILE_FLOW_GAP_SCORE_THRESHOLD", "0.75")
    monkeypatch.setenv("MOBILE_FLOW_STATE_STORE_ROOT", str(tmp_path))

    settings = RuntimeSettings.from_env()

    assert settings.checkpoint_backend == "sqlite"
    assert settings.conflict_policy == "reject"
    assert settings.max_build_attempts == 5
    assert settings.gap_score_threshold == pytest.approx(0.75)
    assert settings.state_store_path(Path("/elsewhere")) == tmp_path


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("MOBILE_FLOW_MAX_BUILD_ATTEMPTS", "three", "must be an integer"),
        ("MOBILE_FLOW_MAX_BUILD_ATTEMPTS", "0", "must be >= 1"),
        ("MOBILE_FLOW_GAP_SCORE_THRESHOLD", "1.5", "must be <= 1.0"),
        ("MOBILE_FLOW_PROGRESS_INTERVAL_SECONDS", "nan", "must be a number"),
        ("MOBILE_FLOW_CHECKPOINT_BACKEND", "redis", "CHECKPOINT_BACKEND"),
        ("MOBILE_FLOW_CONFLICT_POLICY", "queue", "CONFLICT_POLICY"),
        ("MOBILE_FLOW_MODEL", "  ", "MODEL must be non-empty"),
    ],
)
def test_invalid_environment_fails_fast(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        RuntimeSettings.from_env()


def test_build_timeout_must_cover_command_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MOBILE_FLOW_COMMAND_TIMEOUT_SECONDS", "600")
    monkeypatch.setenv("MOBILE_FLOW_BUILD_TIMEOUT_SECONDS", "300")

    with pytest.raises(ValueError, match="BUILD_TIMEOUT_SECONDS"):
        RuntimeSettings.from_env()
