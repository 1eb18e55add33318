"""Configuration loading and Pydantic models for Stowage."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

MIB = 1024 * 1024


class ServerConfig(BaseModel):
    """Broker binding and runtime configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"
    log_format: str = "text"
    shutdown_timeout: int = 30


class AuthConfig(BaseModel):
    """Admin bearer tokens accepted by the bucket-management routes."""

    admin_tokens: list[str] = Field(default_factory=list)


class VaultConfig(BaseModel):
    """Key material for the credential vault.

    ``master_key`` is a base64-encoded 256-bit key used for secret
    encryption. ``signing_key`` signs capability tokens.
    """

    master_key: str = ""
    signing_key: str = ""
    capability_ttl_seconds: int = Field(default=300, gt=0)


class RegistryConfig(BaseModel):
    """Bucket registry store configuration."""

    engine: str = "sqlite"
    sqlite_path: str = "./data/registry.db"


class UploadConfig(BaseModel):
    """Upload protocol tuning shared by the broker and the orchestrator.

    Most S3-compatible providers reject multipart parts smaller than 5 MiB
    (except the last one), so ``chunk_size_bytes`` should not go below that
    outside of tests.
    """

    multipart_threshold_bytes: int = Field(default=50 * MIB, gt=0)
    chunk_size_bytes: int = Field(default=5 * MIB, gt=0)
    presign_expires_seconds: int = Field(default=900, gt=0)
    part_concurrency: int = Field(default=1, ge=1)
    request_timeout: float = Field(default=30.0, gt=0)
    part_timeout: float = Field(default=300.0, gt=0)
    signing_retries: int = Field(default=2, ge=0)
    abort_on_failure: bool = False
    key_prefix: str = "uploads"


class CapacityConfig(BaseModel):
    """Capacity accounting configuration."""

    default_capacity_gb: float = Field(default=25.0, gt=0)
    refresh_interval_seconds: int = Field(default=0, ge=0)


class ObservabilityConfig(BaseModel):
    """Metrics and health check toggles."""

    metrics: bool = True
    health_check: bool = True


class StowageConfig(BaseModel):
    """Top-level Stowage configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    vault: VaultConfig = Field(default_factory=VaultConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    upload: UploadConfig = Field(default_factory=UploadConfig)
    capacity: CapacityConfig = Field(default_factory=CapacityConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def _parse_server(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the server section from YAML data into a dict for Pydantic."""
    if data is None:
        return {}
    return {
        "host": data.get("host", "0.0.0.0"),
        "port": data.get("port", 8080),
        "log_level": data.get("log_level", "INFO"),
        "log_format": data.get("log_format", "text"),
        "shutdown_timeout": data.get("shutdown_timeout", 30),
    }


def _parse_auth(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the auth section from YAML data."""
    if data is None:
        return {}
    tokens = data.get("admin_tokens") or []
    if isinstance(tokens, str):
        tokens = [tokens]
    return {"admin_tokens": [str(t) for t in tokens if t]}


def _parse_vault(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the vault section, letting the environment supply key material.

    ``STOWAGE_MASTER_KEY`` and ``STOWAGE_SIGNING_KEY`` take precedence over
    values in the file so keys need not be committed alongside config.
    """
    data = data or {}
    result: dict[str, Any] = {
        "master_key": os.getenv("STOWAGE_MASTER_KEY") or data.get("master_key", ""),
        "signing_key": os.getenv("STOWAGE_SIGNING_KEY") or data.get("signing_key", ""),
    }
    if "capability_ttl_seconds" in data:
        result["capability_ttl_seconds"] = data["capability_ttl_seconds"]
    return result


def _parse_registry(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the registry section from YAML data.

    Handles nested structure: registry.sqlite.path -> sqlite_path
    """
    if data is None:
        return {}
    result: dict[str, Any] = {"engine": data.get("engine", "sqlite")}
    sqlite_section = data.get("sqlite")
    if isinstance(sqlite_section, dict):
        result["sqlite_path"] = sqlite_section.get("path", "./data/registry.db")
    return result


def _parse_upload(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the upload section from YAML data.

    Sizes may be given in bytes (``multipart_threshold_bytes``) or in MiB
    (``multipart_threshold_mb``); the byte form wins when both are present.
    """
    if data is None:
        return {}
    result: dict[str, Any] = {}
    for name in ("multipart_threshold", "chunk_size"):
        if f"{name}_bytes" in data:
            result[f"{name}_bytes"] = int(data[f"{name}_bytes"])
        elif f"{name}_mb" in data:
            result[f"{name}_bytes"] = int(float(data[f"{name}_mb"]) * MIB)
    for name in (
        "presign_expires_seconds",
        "part_concurrency",
        "request_timeout",
        "part_timeout",
        "signing_retries",
        "abort_on_failure",
        "key_prefix",
    ):
        if name in data:
            result[name] = data[name]
    return result


def _parse_capacity(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the capacity section from YAML data."""
    if data is None:
        return {}
    return {
        "default_capacity_gb": data.get("default_capacity_gb", 25.0),
        "refresh_interval_seconds": data.get("refresh_interval_seconds", 0),
    }


def _parse_observability(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the observability section from YAML data."""
    if data is None:
        return {}
    return {
        "metrics": data.get("metrics", True),
        "health_check": data.get("health_check", True),
    }


def load_config(path: Path) -> StowageConfig:
    """Load a StowageConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated StowageConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    return StowageConfig(
        server=ServerConfig(**_parse_server(raw.get("server"))),
        auth=AuthConfig(**_parse_auth(raw.get("auth"))),
        vault=VaultConfig(**_parse_vault(raw.get("vault"))),
        registry=RegistryConfig(**_parse_registry(raw.get("registry"))),
        upload=UploadConfig(**_parse_upload(raw.get("upload"))),
        capacity=CapacityConfig(**_parse_capacity(raw.get("capacity"))),
        observability=ObservabilityConfig(**_parse_observability(raw.get("observability"))),
    )
