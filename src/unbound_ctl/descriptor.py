"""Load, validate and persist upstream configuration documents."""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Mapping

import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator, model_validator

from .atomic import atomic_write
from .exporter import configuration_to_json
from .models import (
    DescriptorError,
    HttpsProxy,
    Provider,
    ProviderKind,
    ResolverMode,
    UpstreamConfiguration,
    WriteResult,
)

LOG = logging.getLogger("unbound_ctl.descriptor")

PROVIDER_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")
HOST_PATTERN = re.compile(r"^[A-Za-z0-9:.-]+$")
SNI_PATTERN = re.compile(r"^[A-Za-z0-9.-]+$")


class ProviderSpec(BaseModel):
    """Schema for one upstream provider."""

    id: str
    kind: ProviderKind | None = None
    address: str
    port: int | None = Field(default=None, ge=1, le=65535)
    server_name_indication: str | None = Field(
        default=None,
        validation_alias=AliasChoices("server_name_indication", "sni"),
    )
    display_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("display_name", "name"),
    )
    enabled: bool = True
    priority: int | None = None

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        """Restrict identifiers to a filesystem and log friendly alphabet."""
        if not PROVIDER_ID_PATTERN.match(value):
            raise ValueError(f"invalid provider id {value!r}")
        return value

    @field_validator("address", "server_name_indication", "display_name")
    @classmethod
    def _strip_text(cls, value: str | None) -> str | None:
        """Reject control characters and surrounding whitespace."""
        if value is None:
            return None
        cleaned = value.strip()
        if any(ord(char) < 32 or ord(char) == 127 for char in cleaned):
            raise ValueError("control characters are not allowed")
        return cleaned


class HttpsProxySpec(BaseModel):
    """Schema for the local DNS-over-HTTPS proxy."""

    implementation: str = Field(validation_alias=AliasChoices("implementation", "type"))
    local_port: int = Field(default=5053, ge=1, le=65535)

    @field_validator("implementation")
    @classmethod
    def _known_implementation(cls, value: str) -> str:
        """Only proxies the appliance knows how to run are accepted."""
        if value not in {"cloudflared", "dnscrypt-proxy"}:
            raise ValueError(f"unsupported https proxy {value!r}")
        return value


class UpstreamSpec(BaseModel):
    """Schema for an upstream configuration document."""

    mode: ResolverMode = ResolverMode.RECURSIVE
    tls_providers: list[ProviderSpec] = Field(
        default_factory=list,
        validation_alias=AliasChoices("tls_providers", "dot_providers"),
    )
    https_providers: list[ProviderSpec] = Field(
        default_factory=list,
        validation_alias=AliasChoices("https_providers", "doh_providers"),
    )
    https_proxy: HttpsProxySpec | None = Field(
        default=None,
        validation_alias=AliasChoices("https_proxy", "doh_proxy"),
    )

    @model_validator(mode="after")
    def _check_consistency(self) -> "UpstreamSpec":
        """Enforce per-list invariants and mode requirements."""
        _check_provider_list(self.tls_providers, ProviderKind.DOT)
        _check_provider_list(self.https_providers, ProviderKind.DOH)
        if self.mode is ResolverMode.DOT and not any(p.enabled for p in self.tls_providers):
            raise ValueError("dot mode requires at least one enabled TLS provider")
        if self.mode is ResolverMode.DOH and self.https_proxy is None:
            raise ValueError("doh mode requires an https_proxy")
        return self


def _check_provider_list(providers: list[ProviderSpec], kind: ProviderKind) -> None:
    """Validate identifiers, kinds and addresses of one provider set."""
    seen: set[str] = set()
    for provider in providers:
        if provider.id in seen:
            raise ValueError(f"duplicate provider id {provider.id!r}")
        seen.add(provider.id)
        if provider.kind is not None and provider.kind is not kind:
            raise ValueError(f"provider {provider.id!r} is {provider.kind.value}, expected {kind.value}")
        if kind is ProviderKind.DOT:
            if not HOST_PATTERN.match(provider.address):
                raise ValueError(f"provider {provider.id!r} address must be a host or IP")
            sni = provider.server_name_indication
            if sni and not SNI_PATTERN.match(sni):
                raise ValueError(f"provider {provider.id!r} has an invalid SNI")
        else:
            if not provider.address.startswith("https://") or " " in provider.address:
                raise ValueError(f"provider {provider.id!r} address must be an https URL")
            if provider.server_name_indication:
                raise ValueError(f"provider {provider.id!r}: SNI only applies to TLS providers")


def _to_provider(spec: ProviderSpec, kind: ProviderKind) -> Provider:
    """Convert a validated provider document into the domain model."""
    return Provider(
        id=spec.id,
        kind=kind,
        address=spec.address,
        port=spec.port,
        server_name_indication=spec.server_name_indication or None,
        display_name=spec.display_name or None,
        enabled=spec.enabled,
        priority=spec.priority,
    )


def parse_upstream(data: Mapping[str, Any]) -> UpstreamConfiguration:
    """Validate a decoded document and build an :class:`UpstreamConfiguration`."""
    try:
        spec = UpstreamSpec.model_validate(dict(data))
    except ValidationError as exc:
        raise DescriptorError(f"Upstream validation error: {exc}") from exc
    proxy = None
    if spec.https_proxy is not None:
        proxy = HttpsProxy(
            implementation=spec.https_proxy.implementation,
            local_port=spec.https_proxy.local_port,
        )
    return UpstreamConfiguration(
        mode=spec.mode,
        tls_providers=[_to_provider(p, ProviderKind.DOT) for p in spec.tls_providers],
        https_providers=[_to_provider(p, ProviderKind.DOH) for p in spec.https_providers],
        https_proxy=proxy,
    )


def _render_document(path: Path, extra_context: dict[str, Any] | None = None) -> str:
    """Render a YAML/JSON document through Jinja2."""
    env = Environment(
        loader=FileSystemLoader(str(path.parent)),
        undefined=StrictUndefined,
        autoescape=False,
        keep_trailing_newline=True,
    )
    template = env.get_template(path.name)
    context: dict[str, Any] = {"env": os.environ}
    if extra_context:
        context.update(extra_context)
    return template.render(**context)


def load_desired_configuration(
    path: Path,
    template_vars: dict[str, Any] | None = None,
) -> UpstreamConfiguration:
    """Load a desired-state YAML (or JSON) document."""
    rendered = _render_document(path, template_vars)
    try:
        data = yaml.safe_load(rendered) or {}
    except yaml.YAMLError as exc:
        raise DescriptorError(f"Failed to parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise DescriptorError(f"{path} must contain a mapping at the top level.")
    return parse_upstream(data)


class DescriptorRepository:
    """Owns the persisted last-applied configuration.

    The parsed descriptor is cached until :meth:`invalidate` is called; the
    orchestrator invalidates after every write or restore.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._cached: UpstreamConfiguration | None = None

    def load(self) -> UpstreamConfiguration:
        """Return the current configuration, defaulting to recursive."""
        cached = self._cached
        if cached is not None:
            return cached
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            LOG.debug("No descriptor at %s; using defaults", self.path)
            configuration = UpstreamConfiguration()
        except OSError as exc:
            raise DescriptorError(f"Cannot read {self.path}: {exc}") from exc
        else:
            try:
                data = json.loads(raw)
            except ValueError as exc:
                raise DescriptorError(f"Descriptor {self.path} is not valid JSON: {exc}") from exc
            configuration = parse_upstream(data)
        self._cached = configuration
        return configuration

    def invalidate(self) -> None:
        """Forget the cached configuration."""
        self._cached = None

    def reload(self) -> UpstreamConfiguration:
        """Re-read the descriptor from disk."""
        self.invalidate()
        return self.load()

    def save(self, configuration: UpstreamConfiguration) -> WriteResult:
        """Persist ``configuration`` atomically."""
        result = atomic_write(self.path, configuration_to_json(configuration), mode=0o640)
        self.invalidate()
        return result
