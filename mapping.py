"""Mapping resolution: model class + configuration -> provider target or pass-through."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from config import MAPPING_PASS, AppConfig
from providers import AuthMethod, ProviderKind, describe

log = logging.getLogger("claude_proxy")


class ModelClass(str, enum.Enum):
    HAIKU = "haiku"
    MAIN = "main"


def classify_model(model: str) -> ModelClass:
    """Haiku models route through the haiku mapping; sonnet, opus and everything else through main."""
    if "haiku" in (model or "").lower():
        return ModelClass.HAIKU
    return ModelClass.MAIN


@dataclass(frozen=True)
class ResolvedTarget:
    """Where one request goes and how it authenticates."""

    provider: ProviderKind
    endpoint: str
    model: Optional[str] = None
    credential: Optional[str] = None
    auth_method: AuthMethod = AuthMethod.NONE


@dataclass(frozen=True)
class MappingInfo:
    """Mapping decision recorded in the audit log."""

    original_model: str
    target_model: Optional[str]
    endpoint: str
    model_class: ModelClass
    provider: ProviderKind

    def to_dict(self) -> Dict[str, Any]:
        return {
            "originalModel": self.original_model,
            "targetModel": self.target_model,
            "endpoint": self.endpoint,
            "modelType": self.model_class.value,
            "provider": self.provider.value,
        }


def parse_mapping(mapping: str) -> Optional[Tuple[str, str]]:
    """
    Split a mapping string into (provider, model).

    Only the first ':' separates; the model part may contain more colons.
    Returns None for "pass" and for malformed mappings.
    """
    mapping = (mapping or "").strip()
    if not mapping or mapping == MAPPING_PASS:
        return None
    provider, sep, model = mapping.partition(":")
    provider = provider.strip()
    if not sep or not provider:
        log.warning("Malformed mapping %r (expected 'pass' or '<provider>:<model>'); using pass-through", mapping)
        return None
    return provider, model.strip()


def resolve(model_class: ModelClass, config: AppConfig) -> Optional[ResolvedTarget]:
    """Resolve the mapping of a model class. None means pass-through."""
    parsed = parse_mapping(config.mapping_for(model_class.value))
    if parsed is None:
        return None
    provider_name, target_model = parsed

    kind = ProviderKind.from_name(provider_name)
    if kind is None:
        log.warning("Unknown provider: %s", provider_name)
        return None

    descriptor = describe(kind, config.provider(kind))
    if not descriptor.enabled:
        log.warning("Provider %s not enabled", kind.value)
        return None

    credential = descriptor.credential
    auth_method = descriptor.auth
    if auth_method is AuthMethod.NONE:
        credential = None
    elif credential is None and auth_method is AuthMethod.BEARER:
        # Local processes may run without auth.
        auth_method = AuthMethod.NONE

    return ResolvedTarget(
        provider=kind,
        endpoint=descriptor.endpoint,
        model=target_model or None,
        credential=credential,
        auth_method=auth_method,
    )


def resolve_request(
    body: Any, config: AppConfig
) -> Tuple[Optional[ResolvedTarget], Optional[MappingInfo]]:
    """Resolve a parsed request body. Bodies without a usable model are passed through."""
    if not isinstance(body, dict):
        return None, None
    original_model = body.get("model")
    if not isinstance(original_model, str) or not original_model:
        return None, None

    model_class = classify_model(original_model)
    log.info("Original model: %s, class: %s", original_model, model_class.value)

    target = resolve(model_class, config)
    if target is None:
        log.info("Using pass-through")
        return None, None

    log.info("Mapped to: %s, model: %s", target.endpoint, target.model)
    info = MappingInfo(
        original_model=original_model,
        target_model=target.model,
        endpoint=target.endpoint,
        model_class=model_class,
        provider=target.provider,
    )
    return target, info


def available_targets(config: AppConfig) -> List[str]:
    """All mapping values selectable with the current configuration."""
    targets = [MAPPING_PASS]
    for kind in ProviderKind:
        settings = config.provider(kind)
        if not settings.enabled:
            continue
        targets.extend(f"{kind.value}:{m}" for m in settings.models)
    return targets


def describe_mapping(mapping: str) -> str:
    """Short label for a mapping: "pass-through" or the target model name."""
    mapping = (mapping or "").strip()
    if not mapping or mapping == MAPPING_PASS:
        return "pass-through"
    _, sep, model = mapping.partition(":")
    return model if sep and model else mapping
