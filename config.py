"""Configuration management for the Claude proxy service."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from logger import DEFAULT_LOG_PATH
from providers import PROVIDER_SPECS, ProviderKind, ProviderSettings

log = logging.getLogger("claude_proxy")

MAPPING_PASS = "pass"
DEFAULT_UPSTREAM_BASE_URL = "https://api.anthropic.com"
DEFAULT_AUDIT_LOG_DIR = "~/.claude/proxy/log"

# Optional prefix of keys in the JSON settings file (mirrors the editor settings namespace).
SETTINGS_PREFIX = "claudeProxy."

_TRUE = {"1", "true", "yes", "y", "on"}


def _lookup(env: Mapping[str, str], settings: Mapping[str, Any], key: str, env_name: str) -> Any:
    """Settings-file value first, then environment; None when neither is set."""
    if key in settings and settings[key] is not None:
        return settings[key]
    v = env.get(env_name)
    if v is None or v == "":
        return None
    return v


def _as_bool(v: Any, default: bool, key: str) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in _TRUE
    log.warning("Config %s: expected boolean, got %r; using %r", key, v, default)
    return default


def _as_int(v: Any, default: int, key: str) -> int:
    if v is None:
        return default
    if isinstance(v, bool):
        log.warning("Config %s: expected integer, got %r; using %r", key, v, default)
        return default
    try:
        return int(str(v).strip())
    except ValueError:
        log.warning("Config %s: expected integer, got %r; using %r", key, v, default)
        return default


def _as_float(v: Any, default: float, key: str) -> float:
    if v is None:
        return default
    try:
        return float(v)
    except (TypeError, ValueError):
        log.warning("Config %s: expected number, got %r; using %r", key, v, default)
        return default


def _as_str(v: Any, default: str, key: str) -> str:
    if v is None:
        return default
    if isinstance(v, (dict, list, bool)):
        log.warning("Config %s: expected string, got %r; using %r", key, v, default)
        return default
    return str(v)


def _as_list(v: Any, key: str) -> Tuple[str, ...]:
    """Ordered list of strings from a JSON array or a comma-separated string."""
    if v is None:
        return ()
    if isinstance(v, str):
        return tuple(x.strip() for x in v.split(",") if x.strip())
    if isinstance(v, (list, tuple)):
        return tuple(str(x) for x in v if str(x).strip())
    log.warning("Config %s: expected list of strings, got %r; ignoring", key, v)
    return ()


def _provider_settings(
    kind: ProviderKind, env: Mapping[str, str], settings: Mapping[str, Any]
) -> ProviderSettings:
    spec = PROVIDER_SPECS[kind]
    prefix = f"providers.{kind.value}."
    env_prefix = kind.value.upper()

    def get(name: str, env_suffix: str) -> Any:
        return _lookup(env, settings, prefix + name, f"{env_prefix}_{env_suffix}")

    base_url = ""
    if kind is ProviderKind.CUSTOM:
        base_url = _as_str(get("baseUrl", "BASE_URL"), spec.endpoint, prefix + "baseUrl")

    return ProviderSettings(
        enabled=_as_bool(get("enabled", "ENABLED"), False, prefix + "enabled"),
        api_key=_as_str(get("apiKey", "API_KEY"), "", prefix + "apiKey").strip(),
        models=_as_list(get("models", "MODELS"), prefix + "models"),
        base_url=base_url,
        bin_path=_as_str(get("binPath", "BIN_PATH"), spec.default_bin_path, prefix + "binPath"),
        port=_as_int(get("port", "PORT"), spec.default_port, prefix + "port"),
        config_path=_as_str(
            get("configPath", "CONFIG_PATH"), spec.default_config_path, prefix + "configPath"
        ),
    )


def read_settings_file(path: str | None) -> Dict[str, Any]:
    """
    Read the optional JSON settings file.

    Keys are dotted paths like ``claudeProxy.mappings.main``; the
    ``claudeProxy.`` prefix is optional. A missing or broken file yields {}.
    """
    if not path:
        return {}
    p = Path(path).expanduser()
    if not p.exists():
        log.warning("Settings file not found: %s", p)
        return {}
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        log.warning("Failed to read settings file %s: %s", p, e)
        return {}
    if not isinstance(data, dict):
        log.warning("Settings file %s must contain a JSON object", p)
        return {}
    out: Dict[str, Any] = {}
    for k, v in data.items():
        key = str(k)
        if key.startswith(SETTINGS_PREFIX):
            key = key[len(SETTINGS_PREFIX):]
        out[key] = v
    return out


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Server settings
    host: str
    port: int

    # Routing
    upstream_base_url: str
    mapping_haiku: str
    mapping_main: str
    providers: Dict[ProviderKind, ProviderSettings]

    # Audit log (one JSON file per request)
    json_logging: bool
    audit_log_dir: str

    # Outbound transport. No read timeout: streams may pause for a long time.
    connect_timeout_s: float
    retry_settle_s: float

    # Service log
    log_level: str
    log_path: str

    settings_file: str = ""

    @classmethod
    def from_sources(
        cls, env: Mapping[str, str], settings: Optional[Mapping[str, Any]] = None
    ) -> AppConfig:
        """Build configuration from environment values overlaid by settings-file values."""
        settings = settings or {}

        def get(key: str, env_name: str) -> Any:
            return _lookup(env, settings, key, env_name)

        return cls(
            host=_as_str(get("host", "HOST"), "127.0.0.1", "host"),
            port=_as_int(get("port", "PORT"), 4001, "port"),
            upstream_base_url=_as_str(
                get("upstreamBaseUrl", "UPSTREAM_BASE_URL"), DEFAULT_UPSTREAM_BASE_URL, "upstreamBaseUrl"
            ),
            mapping_haiku=_as_str(get("mappings.haiku", "MAPPING_HAIKU"), MAPPING_PASS, "mappings.haiku").strip(),
            mapping_main=_as_str(get("mappings.main", "MAPPING_MAIN"), MAPPING_PASS, "mappings.main").strip(),
            providers={kind: _provider_settings(kind, env, settings) for kind in ProviderKind},
            json_logging=_as_bool(get("enableJsonLogging", "JSON_LOGGING"), False, "enableJsonLogging"),
            audit_log_dir=_as_str(get("auditLogDir", "AUDIT_LOG_DIR"), DEFAULT_AUDIT_LOG_DIR, "auditLogDir"),
            connect_timeout_s=_as_float(get("connectTimeoutS", "CONNECT_TIMEOUT_S"), 30.0, "connectTimeoutS"),
            retry_settle_s=_as_float(get("retrySettleS", "RETRY_SETTLE_S"), 2.0, "retrySettleS"),
            log_level=_as_str(env.get("LOG_LEVEL"), "INFO", "LOG_LEVEL").upper().strip(),
            log_path=_as_str(env.get("LOG_PATH") or None, DEFAULT_LOG_PATH, "LOG_PATH"),
            settings_file=env.get("PROXY_SETTINGS_FILE", "") or "",
        )

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables only."""
        return cls.from_sources(os.environ)

    def provider(self, kind: ProviderKind) -> ProviderSettings:
        return self.providers.get(kind) or ProviderSettings()

    def mapping_for(self, model_class: str) -> str:
        """Mapping string for a model class value (``haiku`` / ``main``)."""
        if model_class == "haiku":
            return self.mapping_haiku or MAPPING_PASS
        return self.mapping_main or MAPPING_PASS

    def validate(self) -> None:
        """Validate configuration."""
        if not 0 < self.port < 65536:
            raise ValueError("PORT must be in 1..65535")
        if not self.upstream_base_url:
            raise ValueError("UPSTREAM_BASE_URL must be non-empty")
        if self.connect_timeout_s <= 0:
            raise ValueError("CONNECT_TIMEOUT_S must be > 0")
        if self.retry_settle_s < 0:
            raise ValueError("RETRY_SETTLE_S must be >= 0")
        if not self.audit_log_dir:
            raise ValueError("AUDIT_LOG_DIR must be non-empty")
        for kind, ps in self.providers.items():
            if PROVIDER_SPECS[kind].supervised and not 0 < ps.port < 65536:
                raise ValueError(f"{kind.value.upper()}_PORT must be in 1..65535")


def load_config() -> AppConfig:
    """Load configuration from the environment and the optional settings file."""
    settings = read_settings_file(os.getenv("PROXY_SETTINGS_FILE"))
    return AppConfig.from_sources(os.environ, settings)
