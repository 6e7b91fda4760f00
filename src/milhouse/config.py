from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

CONFIG_FILE_NAME = "milhouse.toml"

LegacyPlansMode = Literal["auto", "symlink", "copy"]


@dataclass(slots=True)
class StateConfig:
    dir: str = ".milhouse"
    lock_timeout_seconds: float = 3.0


@dataclass(slots=True)
class ExecutionConfig:
    max_concurrency: int = 4
    fail_fast: bool = False
    max_retries: int = 0
    retry_backoff_seconds: float = 0.5


@dataclass(slots=True)
class ViewsConfig:
    legacy_plans: LegacyPlansMode = "auto"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    file: bool = True


@dataclass(slots=True)
class MilhouseConfig:
    state: StateConfig = field(default_factory=StateConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    views: ViewsConfig = field(default_factory=ViewsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> MilhouseConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> MilhouseConfig:
        return cls(
            state=StateConfig(**data.get("state", {})),
            execution=ExecutionConfig(**data.get("execution", {})),
            views=ViewsConfig(**data.get("views", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "state": {
                "dir": self.state.dir,
                "lock_timeout_seconds": self.state.lock_timeout_seconds,
            },
            "execution": {
                "max_concurrency": self.execution.max_concurrency,
                "fail_fast": self.execution.fail_fast,
                "max_retries": self.execution.max_retries,
                "retry_backoff_seconds": self.execution.retry_backoff_seconds,
            },
            "views": {
                "legacy_plans": self.views.legacy_plans,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: MilhouseConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("state", "execution", "views", "logging"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> MilhouseConfig:
    if not path.exists():
        return MilhouseConfig.default()
    return MilhouseConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: MilhouseConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
