"""Runtime configuration for the graph scheduler and its CLI."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from taskgraph.graph.models import ExecutionPolicy

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class RuntimeSettings:
    """Driver loop and storage settings."""

    max_conflict_retries: int = 3
    conflict_retry_delay_seconds: float = 0.05
    poll_interval_seconds: float = 2.0
    sqlite_busy_timeout_ms: int = 5_000
    recover_on_start: bool = True


@dataclass(slots=True)
class PolicyDefaults:
    """Policy applied to imported graphs that omit their own."""

    max_concurrent: int = 3
    node_timeout_seconds: int = 1_800
    graph_timeout_seconds: int = 86_400

    def to_policy(self) -> ExecutionPolicy:
        return ExecutionPolicy(
            max_concurrent=self.max_concurrent,
            node_timeout_seconds=self.node_timeout_seconds,
            graph_timeout_seconds=self.graph_timeout_seconds,
        )


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".taskgraph.db")
    log_level: str = "WARNING"
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)
    policy_defaults: PolicyDefaults = field(default_factory=PolicyDefaults)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASKGRAPH_DB_PATH", ".taskgraph.db")),
            log_level=os.getenv("TASKGRAPH_LOG_LEVEL", "WARNING").strip().upper(),
            runtime=RuntimeSettings(
                max_conflict_retries=_env_int("TASKGRAPH_MAX_CONFLICT_RETRIES", 3),
                conflict_retry_delay_seconds=_env_float(
                    "TASKGRAPH_CONFLICT_RETRY_DELAY_SECONDS",
                    0.05,
                ),
                poll_interval_seconds=_env_float("TASKGRAPH_POLL_INTERVAL_SECONDS", 2.0),
                sqlite_busy_timeout_ms=_env_int("TASKGRAPH_BUSY_TIMEOUT_MS", 5_000),
                recover_on_start=_env_bool("TASKGRAPH_RECOVER_ON_START", default=True),
            ),
            policy_defaults=PolicyDefaults(
                max_concurrent=_env_int("TASKGRAPH_DEFAULT_MAX_CONCURRENT", 3),
                node_timeout_seconds=_env_int("TASKGRAPH_DEFAULT_NODE_TIMEOUT_SECONDS", 1_800),
                graph_timeout_seconds=_env_int(
                    "TASKGRAPH_DEFAULT_GRAPH_TIMEOUT_SECONDS",
                    86_400,
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"TASKGRAPH_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, "
                f"got {self.log_level!r}.",
            )
        if self.runtime.max_conflict_retries < 0:
            raise ValueError("TASKGRAPH_MAX_CONFLICT_RETRIES must be >= 0.")
        if self.runtime.conflict_retry_delay_seconds < 0:
            raise ValueError("TASKGRAPH_CONFLICT_RETRY_DELAY_SECONDS must be >= 0.")
        if self.runtime.poll_interval_seconds < 0:
            raise ValueError("TASKGRAPH_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.runtime.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TASKGRAPH_BUSY_TIMEOUT_MS must be > 0.")
        if self.policy_defaults.max_concurrent < 1:
            raise ValueError("TASKGRAPH_DEFAULT_MAX_CONCURRENT must be a positive integer.")
        if self.policy_defaults.node_timeout_seconds <= 0:
            raise ValueError("TASKGRAPH_DEFAULT_NODE_TIMEOUT_SECONDS must be > 0.")
        if self.policy_defaults.graph_timeout_seconds <= 0:
            raise ValueError("TASKGRAPH_DEFAULT_GRAPH_TIMEOUT_SECONDS must be > 0.")

    @property
    def log_level_value(self) -> int:
        return getattr(logging, self.log_level, logging.WARNING)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
