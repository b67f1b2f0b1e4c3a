"""Provider registry: static knowledge of every backend the proxy can route to."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


class AuthMethod(str, enum.Enum):
    """How a provider expects its credential."""

    X_API_KEY = "x-api-key"
    BEARER = "bearer"
    NONE = "none"


class ProviderKind(str, enum.Enum):
    """Closed set of known providers."""

    ANTHROPIC = "anthropic"
    GLM = "glm"
    KIMI = "kimi"
    MINIMAX = "minimax"
    DEEPSEEK = "deepseek"
    CUSTOM = "custom"
    LITELLM = "litellm"
    CLIPROXYAPI = "cliproxyapi"

    @classmethod
    def from_name(cls, name: str) -> Optional[ProviderKind]:
        """Return the kind for a provider name, or None when unknown."""
        try:
            return cls((name or "").strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of a provider kind."""

    endpoint: str
    auth: AuthMethod
    supervised: bool = False
    # Provider streams spurious empty content blocks that must be filtered out.
    filter_events: bool = False
    default_port: int = 0
    default_bin_path: str = ""
    default_config_path: str = ""


PROVIDER_SPECS: Dict[ProviderKind, ProviderSpec] = {
    ProviderKind.ANTHROPIC: ProviderSpec("https://api.anthropic.com", AuthMethod.X_API_KEY),
    ProviderKind.GLM: ProviderSpec("https://open.bigmodel.cn/api/anthropic", AuthMethod.X_API_KEY),
    ProviderKind.KIMI: ProviderSpec("https://api.moonshot.cn/anthropic", AuthMethod.X_API_KEY),
    ProviderKind.MINIMAX: ProviderSpec("https://api.minimaxi.com/anthropic", AuthMethod.X_API_KEY),
    ProviderKind.DEEPSEEK: ProviderSpec("https://api.deepseek.com/anthropic", AuthMethod.X_API_KEY),
    # Endpoint is only the default; the configured base_url wins.
    ProviderKind.CUSTOM: ProviderSpec("https://api.siliconflow.cn", AuthMethod.X_API_KEY),
    ProviderKind.LITELLM: ProviderSpec(
        "http://127.0.0.1:{port}",
        AuthMethod.BEARER,
        supervised=True,
        filter_events=True,
        default_port=4100,
        default_bin_path="~/.local/bin/litellm",
        default_config_path="~/.claude/proxy/litellm.yaml",
    ),
    ProviderKind.CLIPROXYAPI: ProviderSpec(
        "http://127.0.0.1:{port}",
        AuthMethod.BEARER,
        supervised=True,
        default_port=4200,
        default_bin_path="~/cliproxyapi/cli-proxy-api",
        default_config_path="~/.claude/proxy/cliproxyapi.yaml",
    ),
}

SUPERVISED_KINDS: Tuple[ProviderKind, ...] = tuple(
    kind for kind, spec in PROVIDER_SPECS.items() if spec.supervised
)


@dataclass(frozen=True)
class ProviderSettings:
    """User configuration of one provider."""

    enabled: bool = False
    api_key: str = ""
    models: Tuple[str, ...] = ()
    base_url: str = ""
    bin_path: str = ""
    port: int = 0
    config_path: str = ""


@dataclass(frozen=True)
class ProviderDescriptor:
    """A provider kind combined with its current settings."""

    kind: ProviderKind
    endpoint: str
    auth: AuthMethod
    enabled: bool
    credential: Optional[str] = None
    models: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def spec(self) -> ProviderSpec:
        return PROVIDER_SPECS[self.kind]


def is_supervised(kind: Optional[ProviderKind]) -> bool:
    return kind is not None and PROVIDER_SPECS[kind].supervised


def needs_event_filter(kind: Optional[ProviderKind]) -> bool:
    return kind is not None and PROVIDER_SPECS[kind].filter_events


def endpoint_for(kind: ProviderKind, settings: ProviderSettings) -> str:
    """
    Base URL for a provider.

    Supervised providers listen on loopback at their configured port; the custom
    provider uses its configured base URL; everything else is a fixed endpoint.
    """
    spec = PROVIDER_SPECS[kind]
    if spec.supervised:
        return spec.endpoint.format(port=settings.port or spec.default_port)
    if kind is ProviderKind.CUSTOM and settings.base_url:
        return settings.base_url
    return spec.endpoint


def describe(kind: ProviderKind, settings: ProviderSettings) -> ProviderDescriptor:
    """Build the descriptor for a provider from its settings."""
    spec = PROVIDER_SPECS[kind]
    return ProviderDescriptor(
        kind=kind,
        endpoint=endpoint_for(kind, settings),
        auth=spec.auth,
        enabled=settings.enabled,
        credential=settings.api_key or None,
        models=tuple(settings.models),
    )
