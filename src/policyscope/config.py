from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from policyscope.errors import SnapshotError

LOG_LEVEL_ENV = "POLICYSCOPE_LOG_LEVEL"

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class AuditConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_workers: int = Field(4, ge=1, description="Concurrent adapter fetches")
    adapter_timeout_s: float = Field(30.0, gt=0, description="Per-adapter fetch timeout")
    max_scan_pages: int = Field(50, ge=1, description="Page ceiling for paginated scans")
    page_size: int = Field(100, ge=1, description="Device statuses per page (snapshot backend)")
    sources: list[str] | None = Field(
        None, description="Enabled compliance source ids; all sources when omitted"
    )
    log_level: LogLevel = "INFO"
    log_format: Literal["text", "json"] = "text"

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value


def load_config(raw_yaml: str) -> AuditConfig:
    data = yaml.safe_load(raw_yaml)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise SnapshotError("Config YAML must be a mapping")
    return AuditConfig.model_validate(_apply_env(data))


def load_config_from_file(path: Path | None) -> AuditConfig:
    if path is None:
        return AuditConfig.model_validate(_apply_env({}))
    return load_config(path.read_text(encoding="utf-8"))


def _apply_env(data: dict[str, Any]) -> dict[str, Any]:
    level = os.getenv(LOG_LEVEL_ENV, "").strip()
    if level:
        return {**data, "log_level": level}
    return data


def config_json_schema() -> dict[str, Any]:
    return AuditConfig.model_json_schema()
