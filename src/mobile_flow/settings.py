from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

_ENV_PREFIX = "MOBILE_FLOW_"
_CHECKPOINT_BACKENDS = {"file", "sqlite", "memory"}
_CONFLICT_POLICIES = {"wait", "reject"}


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    checkpoint_backend: str = "file"
    checkpoint_db: str = "state_store/checkpoints/workflows.sqlite"
    recursion_limit: int = 200
    max_build_attempts: int = 3
    command_timeout_seconds: int = 60
    build_timeout_seconds: int = 1_800
    progress_interval_seconds: float = 2.0
    conflict_policy: str = "wait"
    gap_score_threshold: float = 0.8
    model: str = "gpt-4o-mini"
    projects_root: str = "projects"
    template_source: str = "https://github.com/forcedotcom/SalesforceMobileSDK-Templates"
    android_min_sdk: int = 26

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv(f"{_ENV_PREFIX}STATE_STORE_ROOT", "state_store"),
            checkpoint_backend=os.getenv(f"{_ENV_PREFIX}CHECKPOINT_BACKEND", "file"),
            checkpoint_db=os.getenv(
                f"{_ENV_PREFIX}CHECKPOINT_DB", "state_store/checkpoints/workflows.sqlite"
            ),
            recursion_limit=_get_env_int(f"{_ENV_PREFIX}RECURSION_LIMIT", default=200, minimum=1),
            max_build_attempts=_get_env_int(
                f"{_ENV_PREFIX}MAX_BUILD_ATTEMPTS", default=3, minimum=1, maximum=20
            ),
            command_timeout_seconds=_get_env_int(
                f"{_ENV_PREFIX}COMMAND_TIMEOUT_SECONDS", default=60, minimum=1
            ),
            build_timeout_seconds=_get_env_int(
                f"{_ENV_PREFIX}BUILD_TIMEOUT_SECONDS", default=1_800, minimum=1
            ),
            progress_interval_seconds=_get_env_float(
                f"{_ENV_PREFIX}PROGRESS_INTERVAL_SECONDS", default=2.0, minimum=0.05, maximum=3_600.0
            ),
            conflict_policy=os.getenv(f"{_ENV_PREFIX}CONFLICT_POLICY", "wait"),
            gap_score_threshold=_get_env_float(
                f"{_ENV_PREFIX}GAP_SCORE_THRESHOLD", default=0.8, minimum=0.0, maximum=1.0
            ),
            model=os.getenv(f"{_ENV_PREFIX}MODEL", "gpt-4o-mini"),
            projects_root=os.getenv(f"{_ENV_PREFIX}PROJECTS_ROOT", "projects"),
            template_source=os.getenv(
                f"{_ENV_PREFIX}TEMPLATE_SOURCE",
                "https://github.com/forcedotcom/SalesforceMobileSDK-Templates",
            ),
            android_min_sdk=_get_env_int(f"{_ENV_PREFIX}ANDROID_MIN_SDK", default=26, minimum=1, maximum=100),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model = self.model.strip()
        if not model:
            raise ValueError(f"{_ENV_PREFIX}MODEL must be non-empty")

        if self.recursion_limit > 100_000:
            raise ValueError(f"{_ENV_PREFIX}RECURSION_LIMIT must be <= 100000, got: {self.recursion_limit}")
        if self.build_timeout_seconds < self.command_timeout_seconds:
            raise ValueError(
                f"{_ENV_PREFIX}BUILD_TIMEOUT_SECONDS must be >= {_ENV_PREFIX}COMMAND_TIMEOUT_SECONDS, "
                f"got: {self.build_timeout_seconds} < {self.command_timeout_seconds}"
            )

        for env_name, value in (
            ("STATE_STORE_ROOT", self.state_store_root),
            ("CHECKPOINT_DB", self.checkpoint_db),
            ("PROJECTS_ROOT", self.projects_root),
            ("TEMPLATE_SOURCE", self.template_source),
        ):
            if not value.strip():
                raise ValueError(f"{_ENV_PREFIX}{env_name} must be non-empty")

        checkpoint_backend = self.checkpoint_backend.strip().lower()
        if checkpoint_backend not in _CHECKPOINT_BACKENDS:
            raise ValueError(f"{_ENV_PREFIX}CHECKPOINT_BACKEND must be one of: file, sqlite, memory")
        conflict_policy = self.conflict_policy.strip().lower()
        if conflict_policy not in _CONFLICT_POLICIES:
            raise ValueError(f"{_ENV_PREFIX}CONFLICT_POLICY must be one of: wait, reject")

        return replace(
            self,
            model=model,
            checkpoint_backend=checkpoint_backend,
            conflict_policy=conflict_policy,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path

    def checkpoint_path(self, repo_root: Path) -> Path:
        path = Path(self.checkpoint_db)
        return path if path.is_absolute() else repo_root / path

    def projects_path(self, repo_root: Path) -> Path:
        path = Path(self.projects_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    """Float counterpart of ``_get_env_int``; rejects NaN and out-of-range values."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed != parsed:
        raise ValueError(f"{name} must be a number, got: {raw!r}")
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
