"""Render the managed Unbound configuration via Jinja2 templates."""

from __future__ import annotations

from pathlib import Path

from jinja2 import ChoiceLoader, DictLoader, Environment, FileSystemLoader, StrictUndefined

from .models import DescriptorError, Provider, ResolverMode, UpstreamConfiguration

TEMPLATE_NAME = "managed.conf.j2"

MANAGED_CONF_TEMPLATE = """\
# unbound-ctl managed configuration
# DO NOT EDIT MANUALLY - changes will be overwritten
# mode: {{ mode }}

{% if mode == "recursive" %}
# recursive resolution from the root servers
# no upstream forwarding is configured
{% elif mode == "dot" %}
forward-zone:
    name: "."
    forward-tls-upstream: yes
{% for target in targets %}
    forward-addr: {{ target }}
{% endfor %}
{% else %}
# https proxy: {{ proxy.implementation | oneline }} on 127.0.0.1:{{ proxy.local_port }}
{% for provider in providers %}
# doh upstream: {{ provider.label | oneline }} {{ provider.address | oneline }}
{% endfor %}
forward-zone:
    name: "."
    forward-addr: 127.0.0.1@{{ proxy.local_port }}
{% endif %}
"""


def _oneline(value: object) -> str:
    """Collapse a value onto one line so it cannot escape a comment."""
    return " ".join(str(value).split())


def forward_target(provider: Provider) -> str:
    """Return the ``address@port#sni`` form of a TLS provider."""
    target = f"{provider.address}@{provider.effective_port()}"
    if provider.server_name_indication:
        target = f"{target}#{provider.server_name_indication}"
    return target


def _build_environment(templates_dir: Path | None) -> Environment:
    """Create the template environment, preferring an operator override."""
    builtin = DictLoader({TEMPLATE_NAME: MANAGED_CONF_TEMPLATE})
    loader = builtin
    if templates_dir is not None:
        loader = ChoiceLoader([FileSystemLoader(str(templates_dir)), builtin])
    env = Environment(
        loader=loader,
        undefined=StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["oneline"] = _oneline
    return env


def render_managed_config(
    configuration: UpstreamConfiguration,
    templates_dir: Path | None = None,
) -> str:
    """Render resolver-native configuration text for an upstream configuration.

    Identical input always produces identical output. Only enabled providers
    of the active mode are rendered, in priority order.
    """
    mode = configuration.mode
    providers = configuration.active_providers()
    context: dict[str, object] = {"mode": mode.value, "providers": [], "targets": [], "proxy": None}
    if mode is ResolverMode.DOT:
        if not providers:
            raise DescriptorError("DoT mode requires at least one enabled TLS provider.")
        context["targets"] = [forward_target(provider) for provider in providers]
    elif mode is ResolverMode.DOH:
        if configuration.https_proxy is None:
            raise DescriptorError("DoH mode requires an https proxy definition.")
        context["proxy"] = configuration.https_proxy
        context["providers"] = [
            {"label": provider.label(), "address": provider.address} for provider in providers
        ]

    template = _build_environment(templates_dir).get_template(TEMPLATE_NAME)
    text = template.render(**context)
    return text.strip() + "\n"
