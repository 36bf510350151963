"""
Configuration management for marginalia stores.

The configuration is stored as a TOML file in the store directory.
It sets the cache capacity and eviction policy, the metadata service,
and how annotations are marked up.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import tomli_w

from .bounded_store import DEFAULT_CAPACITY, DEFAULT_LOW_WATER, DEFAULT_PROTECTION_SECONDS
from .metadata_client import DEFAULT_RETRIES, DEFAULT_TIMEOUT
from .rendered import MARKER_CLASS, MARKER_TAG


CONFIG_FILENAME = "marginalia.toml"
CONFIG_VERSION = 1

STORE_PATH_ENV = "MARGINALIA_STORE_PATH"
METADATA_URL_ENV = "MARGINALIA_METADATA_URL"
API_KEY_ENV = "MARGINALIA_API_KEY"


@dataclass
class CacheConfig:
    """Bounded store capacity and eviction policy."""
    capacity: int = DEFAULT_CAPACITY
    protection_seconds: float = DEFAULT_PROTECTION_SECONDS
    low_water: float = DEFAULT_LOW_WATER


@dataclass
class MetadataConfig:
    """Metadata service endpoint. Empty api_url disables lookups."""
    api_url: str = ""
    api_key: str = ""
    timeout: float = DEFAULT_TIMEOUT
    retries: int = DEFAULT_RETRIES


@dataclass
class AnnotationConfig:
    """Marker markup and persistence-failure policy."""
    marker_tag: str = MARKER_TAG
    marker_class: str = MARKER_CLASS
    failure_threshold: int = 3


@dataclass
class EngineConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    cache: CacheConfig = field(default_factory=CacheConfig)
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    annotations: AnnotationConfig = field(default_factory=AnnotationConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def cache_path(self) -> Path:
        """Path to the bounded store database."""
        return self.path / "cache.db"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """Store directory from MARGINALIA_STORE_PATH, else ~/.marginalia."""
    env = os.environ.get(STORE_PATH_ENV)
    if env:
        return Path(env).expanduser()
    return Path.home() / ".marginalia"


def _apply_env(config: EngineConfig) -> EngineConfig:
    """Environment variables override the metadata section."""
    url = os.environ.get(METADATA_URL_ENV)
    if url:
        config.metadata.api_url = url
    key = os.environ.get(API_KEY_ENV)
    if key:
        config.metadata.api_key = key
    return config


def _section(data: dict, name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ValueError(f"Config section [{name}] must be a table")
    return section


def load_config(store_path: Path) -> EngineConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    # Validate version
    store = _section(data, "store")
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    cache = _section(data, "cache")
    metadata = _section(data, "metadata")
    annotations = _section(data, "annotations")

    try:
        config = EngineConfig(
            path=store_path,
            version=version,
            created=store.get("created", ""),
            cache=CacheConfig(
                capacity=int(cache.get("capacity", DEFAULT_CAPACITY)),
                protection_seconds=float(cache.get("protection_seconds", DEFAULT_PROTECTION_SECONDS)),
                low_water=float(cache.get("low_water", DEFAULT_LOW_WATER)),
            ),
            metadata=MetadataConfig(
                api_url=str(metadata.get("api_url", "")),
                api_key=str(metadata.get("api_key", "")),
                timeout=float(metadata.get("timeout", DEFAULT_TIMEOUT)),
                retries=int(metadata.get("retries", DEFAULT_RETRIES)),
            ),
            annotations=AnnotationConfig(
                marker_tag=str(annotations.get("marker_tag", MARKER_TAG)),
                marker_class=str(annotations.get("marker_class", MARKER_CLASS)),
                failure_threshold=int(annotations.get("failure_threshold", 3)),
            ),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid config {config_path}: {e}") from e

    if config.cache.capacity <= 0:
        raise ValueError(f"Invalid config {config_path}: cache.capacity must be positive")
    return _apply_env(config)


def save_config(config: EngineConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist. Environment overrides
    are not written back.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "cache": {
            "capacity": config.cache.capacity,
            "protection_seconds": config.cache.protection_seconds,
            "low_water": config.cache.low_water,
        },
        "metadata": {
            "api_url": config.metadata.api_url,
            "timeout": config.metadata.timeout,
            "retries": config.metadata.retries,
        },
        "annotations": {
            "marker_tag": config.annotations.marker_tag,
            "marker_class": config.annotations.marker_class,
            "failure_threshold": config.annotations.failure_threshold,
        },
    }
    # Keys in the environment stay out of the file
    if config.metadata.api_key and config.metadata.api_key != os.environ.get(API_KEY_ENV):
        data["metadata"]["api_key"] = config.metadata.api_key

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> EngineConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = EngineConfig(path=store_path)
    save_config(config)
    return _apply_env(config)
