"""
Gateway configuration.

Defaults live in ``config/defaults.yaml`` beside this module and pull their
values from the environment through ``${oc.env:...}`` interpolation. A ``.env``
file is loaded before resolving, and a YAML file named by
``FACTORY_GATEWAY_CONFIG`` is merged over the defaults. The resolved result is
a frozen ``Settings`` object that the app factory and the recovery script
receive explicitly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import find_dotenv, load_dotenv
from omegaconf import DictConfig, OmegaConf

from .retry import RetryPolicy

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "defaults.yaml"
OVERRIDE_ENV_VAR = "FACTORY_GATEWAY_CONFIG"

_TRUE_VALUES = {"1", "true", "yes", "on"}

# Without an explicit driver, SQLAlchemy 2.0 loads psycopg2 for these schemes
_POSTGRES_SCHEMES = ("postgresql://", "postgres://")
POSTGRES_DRIVER_SCHEME = "postgresql+psycopg://"


def _blank_to_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def normalize_database_url(url: Optional[str]) -> Optional[str]:
    """
    Pin bare PostgreSQL URLs to the psycopg driver.

    Example:
        >>> normalize_database_url("postgres://factory:secret@db/factory")
        "postgresql+psycopg://factory:secret@db/factory"
    """
    if not url:
        return url
    for scheme in _POSTGRES_SCHEMES:
        if url.startswith(scheme):
            return POSTGRES_DRIVER_SCHEME + url[len(scheme):]
    return url


@dataclass(frozen=True)
class StorageSettings:
    endpoint: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    bucket: Optional[str] = None
    public_endpoint: Optional[str] = None
    region: str = "us-east-1"
    presign_expires: int = 3600

    @property
    def configured(self) -> bool:
        return bool(self.endpoint and self.access_key and self.secret_key and self.bucket)


@dataclass(frozen=True)
class Settings:
    webhook_url: Optional[str] = None
    webhook_paths: Dict[str, str] = field(default_factory=dict)
    retry_policies: Dict[str, RetryPolicy] = field(default_factory=dict)
    database_url: Optional[str] = None
    storage: StorageSettings = field(default_factory=StorageSettings)
    api_key: Optional[str] = None
    log_level: str = "INFO"
    log_format: str = "text"
    startup_recovery: bool = True
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    def retry_policy(self, name: str) -> RetryPolicy:
        return self.retry_policies.get(name) or self.retry_policies.get("default") or RetryPolicy()


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def load_config(
    override_path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> DictConfig:
    """
    Build the merged (unresolved) configuration.

    Args:
        override_path: YAML file merged over the defaults; falls back to the
            path in ``FACTORY_GATEWAY_CONFIG`` when not given
        overrides: Nested mapping merged last, mostly for tests

    Returns:
        A DictConfig whose ``${oc.env:...}`` entries resolve on access
    """
    load_dotenv(find_dotenv(usecwd=True))

    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    layers = [base]

    path = override_path or _blank_to_none(os.environ.get(OVERRIDE_ENV_VAR))
    if path:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config override not found at {path}")
        layers.append(OmegaConf.load(path))
    if overrides:
        layers.append(OmegaConf.create(dict(overrides)))

    return OmegaConf.merge(*layers)  # type: ignore[return-value]


def _build_retry_policies(retry: Mapping[str, Any]) -> Dict[str, RetryPolicy]:
    default_values = dict(retry.get("default") or {})
    policies = {"default": RetryPolicy.from_mapping(default_values)}
    for name, values in retry.items():
        if name == "default":
            continue
        policies[name] = RetryPolicy.from_mapping({**default_values, **(values or {})})
    return policies


def build_settings(config: DictConfig) -> Settings:
    container: Dict[str, Any] = OmegaConf.to_container(config, resolve=True)  # type: ignore[assignment]

    webhook = container.get("webhook") or {}
    storage = container.get("storage") or {}
    logging_section = container.get("logging") or {}

    return Settings(
        webhook_url=_blank_to_none(webhook.get("base_url")),
        webhook_paths={key: str(value) for key, value in (webhook.get("paths") or {}).items()},
        retry_policies=_build_retry_policies(container.get("retry") or {}),
        database_url=normalize_database_url(_blank_to_none((container.get("database") or {}).get("url"))),
        storage=StorageSettings(
            endpoint=_blank_to_none(storage.get("endpoint")),
            access_key=_blank_to_none(storage.get("access_key")),
            secret_key=_blank_to_none(storage.get("secret_key")),
            bucket=_blank_to_none(storage.get("bucket")),
            public_endpoint=_blank_to_none(storage.get("public_endpoint")),
            region=_blank_to_none(storage.get("region")) or "us-east-1",
            presign_expires=int(storage.get("presign_expires") or 3600),
        ),
        api_key=_blank_to_none((container.get("auth") or {}).get("api_key")),
        log_level=str(logging_section.get("level") or "INFO").upper(),
        log_format=str(logging_section.get("format") or "text").lower(),
        startup_recovery=_as_bool((container.get("recovery") or {}).get("on_startup"), default=True),
        cors_origins=list((container.get("cors") or {}).get("allow_origins") or ["*"]),
    )


def load_settings(
    override_path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> Settings:
    return build_settings(load_config(override_path, overrides))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
