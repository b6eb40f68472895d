from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_TOPOLOGY: dict[str, Any] = {
    "endpoints": [
        {"name": "droid", "path_prefix": "/claude/droid"},
        {"name": "aws", "path_prefix": "/claude/aws"},
        {"name": "ultra", "path_prefix": "/claude/ultra"},
        {"name": "super", "path_prefix": "/claude/super"},
        {"name": "claude", "path_prefix": "/claude"},
    ],
    "sources": [
        {"name": "primary", "base_url": "https://code.newcli.com"},
        {"name": "secondary", "base_url": "https://dm-fox.rjj.cc"},
    ],
    "catalog_models": [
        "claude-sonnet-4-5-20250929",
        "claude-haiku-4-5-20251001",
        "claude-opus-4-5-20251101",
    ],
}


class EndpointConfig(BaseModel):
    name: str
    path_prefix: str

    @field_validator("path_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        normalized = value.strip().rstrip("/")
        if not normalized.startswith("/"):
            raise ValueError(f"Endpoint path prefix must start with '/': {value!r}")
        return normalized


class SourceConfig(BaseModel):
    name: str
    base_url: str

    @field_validator("base_url")
    @classmethod
    def _normalize_base_url(cls, value: str) -> str:
        normalized = value.strip().rstrip("/")
        if not normalized.startswith(("http://", "https://")):
            raise ValueError(f"Source base URL must be http(s): {value!r}")
        return normalized


class RouterTopology(BaseModel):
    """Endpoint price tiers and the network sources each of them is reachable through.

    Endpoints are listed cheapest first; list order is the routing priority.
    """

    endpoints: list[EndpointConfig] = Field(min_length=1)
    sources: list[SourceConfig] = Field(min_length=1)
    catalog_models: list[str] = Field(default_factory=list)

    @field_validator("catalog_models", mode="before")
    @classmethod
    def _coerce_catalog_models(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            raise ValueError("catalog_models must be a list of model ids.")
        cleaned: list[str] = []
        for item in value:
            normalized = str(item).strip()
            if normalized and normalized not in cleaned:
                cleaned.append(normalized)
        return cleaned

    @model_validator(mode="after")
    def _reject_duplicate_prefixes(self) -> RouterTopology:
        seen: set[str] = set()
        for endpoint in self.endpoints:
            if endpoint.path_prefix in seen:
                raise ValueError(
                    f"Duplicate endpoint path prefix: {endpoint.path_prefix!r}"
                )
            seen.add(endpoint.path_prefix)
        return self

    @property
    def endpoint_prefixes(self) -> list[str]:
        return [endpoint.path_prefix for endpoint in self.endpoints]


def default_topology() -> RouterTopology:
    return RouterTopology.model_validate(DEFAULT_TOPOLOGY)


def load_topology(config_path: str | None) -> RouterTopology:
    if not config_path:
        return default_topology()

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Topology config not found at '{config_path}'. "
            "Create it or unset TOPOLOGY_CONFIG_PATH."
        )

    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML object in '{config_path}'.")

    merged = {**DEFAULT_TOPOLOGY, **raw}
    return RouterTopology.model_validate(merged)
