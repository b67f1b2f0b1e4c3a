"""Utility functions for the Claude proxy service."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from config import AppConfig
from logger import mask_secret
from mapping import available_targets, describe_mapping
from providers import PROVIDER_SPECS, ProviderKind, endpoint_for

log = logging.getLogger("claude_proxy")


def load_env_files() -> None:
    """Load .env files from program and current directory."""
    this_dir = Path(__file__).resolve().parent
    p1 = this_dir / ".env"
    p2 = Path.cwd() / ".env"

    loaded_any = False
    if p1.exists():
        loaded_any = load_dotenv(dotenv_path=str(p1), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p1))
    else:
        log.info("No .env in program directory: %s", str(p1))

    if p2.exists() and p2 != p1:
        loaded_any = load_dotenv(dotenv_path=str(p2), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p2))
    elif p2 != p1:
        log.info("No .env in current directory: %s", str(p2))

    if not loaded_any:
        log.info(".env not loaded (not found or no variables applied).")


def dump_config(config: AppConfig) -> None:
    """Log effective configuration at startup."""
    log.info("=== Claude proxy startup config ===")
    log.info("LISTEN=%s:%s", config.host, config.port)
    log.info("UPSTREAM_BASE_URL=%s", config.upstream_base_url)
    log.info("MAPPING_HAIKU=%s (%s)", config.mapping_haiku, describe_mapping(config.mapping_haiku))
    log.info("MAPPING_MAIN=%s (%s)", config.mapping_main, describe_mapping(config.mapping_main))
    for kind in ProviderKind:
        ps = config.provider(kind)
        if not ps.enabled:
            continue
        log.info(
            "PROVIDER %s endpoint=%s api_key_set=%s value=%s models=%s",
            kind.value,
            endpoint_for(kind, ps),
            bool(ps.api_key),
            mask_secret(ps.api_key),
            list(ps.models),
        )
        if PROVIDER_SPECS[kind].supervised:
            log.info("  bin=%s config=%s port=%s", ps.bin_path, ps.config_path, ps.port)
    log.info("TARGETS=%s", available_targets(config))
    log.info("JSON_LOGGING=%s AUDIT_LOG_DIR=%s", config.json_logging, config.audit_log_dir)
    log.info("CONNECT_TIMEOUT_S=%s RETRY_SETTLE_S=%s", config.connect_timeout_s, config.retry_settle_s)
    log.info("PROXY_SETTINGS_FILE=%s", config.settings_file or None)
    log.info("LOG_LEVEL=%s LOG_PATH=%s", config.log_level, config.log_path)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("===================================")
