"""Runtime configuration for the orchestration worker."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

ENV_PREFIX = "PERSONA_ORCHESTRATOR_"

DEFAULT_COMMAND_TEMPLATE = (
    "claude -p {prompt} --model {model} --allowedTools {allowed_tools} --output-format text"
)


@dataclass(slots=True)
class ExecutionSettings:
    """Execution service and per-class timeout settings."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    default_model: str = "sonnet"
    working_dir: Path | None = None
    development_timeout_seconds: int = 320
    research_timeout_seconds: int = 600
    review_timeout_seconds: int = 180
    transient_exit_codes: tuple[int, ...] = (137, 143)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".persona_orchestrator.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        working_dir = os.getenv(f"{ENV_PREFIX}WORKING_DIR", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv(f"{ENV_PREFIX}DB_PATH", ".persona_orchestrator.db")),
            sqlite_busy_timeout_ms=_env_int("SQLITE_BUSY_TIMEOUT_MS", 5_000),
            log_level=os.getenv(f"{ENV_PREFIX}LOG_LEVEL", "INFO").strip().upper(),
            execution=ExecutionSettings(
                command_template=os.getenv(
                    f"{ENV_PREFIX}COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                default_model=os.getenv(f"{ENV_PREFIX}DEFAULT_MODEL", "sonnet"),
                working_dir=Path(working_dir) if working_dir else None,
                development_timeout_seconds=_env_int("DEVELOPMENT_TIMEOUT_SECONDS", 320),
                research_timeout_seconds=_env_int("RESEARCH_TIMEOUT_SECONDS", 600),
                review_timeout_seconds=_env_int("REVIEW_TIMEOUT_SECONDS", 180),
                transient_exit_codes=_env_int_tuple("TRANSIENT_EXIT_CODES", (137, 143)),
            ),
        )

    def validate(self) -> None:
        """Raise ``ValueError`` naming the first invalid setting."""

        for name, value in (
            ("DEVELOPMENT_TIMEOUT_SECONDS", self.execution.development_timeout_seconds),
            ("RESEARCH_TIMEOUT_SECONDS", self.execution.research_timeout_seconds),
            ("REVIEW_TIMEOUT_SECONDS", self.execution.review_timeout_seconds),
            ("SQLITE_BUSY_TIMEOUT_MS", self.sqlite_busy_timeout_ms),
        ):
            if value <= 0:
                raise ValueError(f"{ENV_PREFIX}{name} must be > 0.")
        template = self.execution.command_template.strip()
        if "{prompt}" not in template and "{prompt_file}" not in template:
            raise ValueError(
                f"{ENV_PREFIX}COMMAND_TEMPLATE must include {{prompt}} or {{prompt_file}}.",
            )
        if self.execution.working_dir is not None and not self.execution.working_dir.is_dir():
            raise ValueError(
                f"{ENV_PREFIX}WORKING_DIR is not a directory: {self.execution.working_dir}",
            )
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Invalid {ENV_PREFIX}LOG_LEVEL: {self.log_level!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {ENV_PREFIX}{name}: {raw!r}") from error


def _env_int_tuple(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None:
        return default
    values: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            values.append(int(token))
        except ValueError as error:
            raise ValueError(
                f"Invalid {ENV_PREFIX}{name} entry: {token!r}. Expected comma-separated integers.",
            ) from error
    return tuple(values)

