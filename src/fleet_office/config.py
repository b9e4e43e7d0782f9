"""Runtime configuration and logging setup for the fleet office backend."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from fleet_office.db import DEFAULT_MIGRATIONS_DIR

ENV_PREFIX = "FLEET_OFFICE_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG"

VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@dataclass(frozen=True)
class Settings:
    database_path: str = "fleet_office.db"
    migrations_dir: str = str(DEFAULT_MIGRATIONS_DIR)
    upload_dir: str = "uploads"
    receipt_base_url: str = "/uploads"
    excel_mapping_path: str = "backend/config/excel_mapping.yaml"
    export_dir: str = "exports"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        level = str(self.log_level).upper()
        if level not in VALID_LEVELS:
            raise ValueError(
                f"Invalid log level: {self.log_level}. Must be one of {', '.join(sorted(VALID_LEVELS))}"
            )
        object.__setattr__(self, "log_level", level)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "Settings":
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown settings: {sorted(unknown)}")
        return cls(**{key: str(value) for key, value in values.items()})

    @classmethod
    def from_yaml(cls, path: Path | str) -> "Settings":
        with Path(path).open("r", encoding="utf-8") as config_file:
            loaded = yaml.safe_load(config_file) or {}

        if not isinstance(loaded, dict):
            msg = f"Settings file must contain a dictionary at root: {path}"
            raise ValueError(msg)

        return cls.from_mapping(loaded)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Load the optional YAML file named by ``FLEET_OFFICE_CONFIG`` and apply env overrides."""
        environ = os.environ if environ is None else environ
        config_path = environ.get(CONFIG_ENV_VAR)
        settings = cls.from_yaml(config_path) if config_path else cls()

        overrides = {}
        for f in fields(cls):
            value = environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if value is not None:
                overrides[f.name] = value
        return replace(settings, **overrides) if overrides else settings


def configure_logging(level: str = "INFO", fmt: str = LOG_FORMAT) -> None:
    level = level.upper()
    if level not in VALID_LEVELS:
        raise ValueError(f"Invalid log level: {level}")

    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt))
        root.addHandler(handler)
    root.setLevel(level)
