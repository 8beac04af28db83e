"""Live checks used to gate an apply: local resolution and upstream reachability."""

from __future__ import annotations

import logging
import socket
import ssl
import time
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

import dns.exception
import dns.resolver

from .config import AppConfig
from .models import HttpsProxy, Provider, ResolverMode, UpstreamConfiguration
from .renderer import forward_target

LOG = logging.getLogger("unbound_ctl.selftest")

RESOLUTION = "resolution"
TLS_HANDSHAKE = "tls_handshake"
PROXY = "proxy"

PROXY_HOST = "127.0.0.1"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one check.

    ``target`` is the queried domain for resolution checks, the
    ``address@port#sni`` form for TLS handshakes, and ``host:port`` for the
    local HTTPS proxy.
    """

    target: str
    success: bool
    answers: tuple[str, ...] = ()
    latency_ms: float = 0.0
    error: str | None = None
    check: str = RESOLUTION


@dataclass(frozen=True)
class SelfTestReport:
    """All results of one self-test run.

    Resolution and proxy checks must all pass. TLS handshakes only fail the
    report when every provider is unreachable; a partial outage is a warning.
    """

    probes: tuple[ProbeResult, ...]

    def _handshakes(self) -> list[ProbeResult]:
        return [probe for probe in self.probes if probe.check == TLS_HANDSHAKE]

    def _upstream_reachable(self) -> bool:
        handshakes = self._handshakes()
        return not handshakes or any(probe.success for probe in handshakes)

    @property
    def passed(self) -> bool:
        """Return True when at least one check ran and none failed the report."""
        return bool(self.probes) and not self.failures()

    def failures(self) -> list[ProbeResult]:
        """Return the checks that fail the report."""
        failed = [probe for probe in self.probes if not probe.success and probe.check != TLS_HANDSHAKE]
        if not self._upstream_reachable():
            failed.extend(self._handshakes())
        return failed

    def warnings(self) -> list[ProbeResult]:
        """Return failed TLS handshakes while another provider is reachable."""
        if not self._upstream_reachable():
            return []
        return [probe for probe in self._handshakes() if not probe.success]

    def summary(self) -> str:
        """Return a one-line description of failed checks."""
        failed = self.failures()
        if not failed:
            return "all checks passed"
        return "; ".join(f"{probe.check} {probe.target}: {probe.error}" for probe in failed)


class Prober(Protocol):
    """Anything that can run the post-reload self-test."""

    def run(self, configuration: UpstreamConfiguration | None = None) -> SelfTestReport:
        """Check the resolver and, given a configuration, its upstreams."""
        ...


def _default_resolver(server: str, port: int) -> dns.resolver.Resolver:
    """Build a resolver pinned to a single nameserver."""
    resolver = dns.resolver.Resolver(configure=False)
    resolver.nameservers = [server]
    resolver.port = port
    return resolver


def _default_tls_connector(host: str, port: int, server_name: str, timeout: float) -> str:
    """Complete a verified TLS handshake and return the negotiated version."""
    context = ssl.create_default_context()
    with socket.create_connection((host, port), timeout=timeout) as sock:
        with context.wrap_socket(sock, server_hostname=server_name) as tls:
            return tls.version() or "unknown"


def _default_tcp_connector(host: str, port: int, timeout: float) -> None:
    """Open and close a TCP connection."""
    with socket.create_connection((host, port), timeout=timeout):
        pass


class ResolutionProber:
    """Resolves known-good domains through the local resolver."""

    def __init__(
        self,
        server: str,
        port: int,
        domains: Sequence[str],
        timeout: float,
        resolver_factory: Callable[[str, int], dns.resolver.Resolver] = _default_resolver,
        tls_connector: Callable[[str, int, str, float], str] = _default_tls_connector,
        tcp_connector: Callable[[str, int, float], None] = _default_tcp_connector,
    ):
        self.server = server
        self.port = port
        self.domains = tuple(domains)
        self.timeout = timeout
        self._resolver_factory = resolver_factory
        self._tls_connector = tls_connector
        self._tcp_connector = tcp_connector

    @classmethod
    def from_config(cls, config: AppConfig) -> "ResolutionProber":
        """Create a prober from application settings."""
        return cls(
            server=config.probe_server,
            port=config.probe_port,
            domains=config.probe_domains,
            timeout=config.probe_timeout,
        )

    def probe(self, domain: str) -> ProbeResult:
        """Resolve ``domain`` to A records through the local resolver."""
        return self._resolve(domain, self.server, self.port, RESOLUTION)

    def _resolve(self, domain: str, server: str, port: int, check: str) -> ProbeResult:
        resolver = self._resolver_factory(server, port)
        started = time.monotonic()
        try:
            answer = resolver.resolve(domain, "A", lifetime=self.timeout)
        except dns.exception.DNSException as exc:
            latency = (time.monotonic() - started) * 1000
            LOG.warning("Resolving %s via %s:%s failed: %s", domain, server, port, exc)
            return ProbeResult(
                target=domain,
                success=False,
                latency_ms=latency,
                error=str(exc) or type(exc).__name__,
                check=check,
            )
        latency = (time.monotonic() - started) * 1000
        answers = tuple(sorted(rdata.to_text() for rdata in answer))
        if not answers:
            return ProbeResult(target=domain, success=False, latency_ms=latency, error="empty answer", check=check)
        LOG.info("Resolved %s via %s:%s in %.1f ms", domain, server, port, latency)
        return ProbeResult(target=domain, success=True, answers=answers, latency_ms=latency, check=check)

    def check_tls(self, provider: Provider) -> ProbeResult:
        """Handshake with a DoT provider, sending its SNI when one is set."""
        target = forward_target(provider)
        server_name = provider.server_name_indication or provider.address
        started = time.monotonic()
        try:
            version = self._tls_connector(provider.address, provider.effective_port(), server_name, self.timeout)
        except OSError as exc:
            latency = (time.monotonic() - started) * 1000
            LOG.warning("TLS handshake with %s failed: %s", target, exc)
            return ProbeResult(
                target=target,
                success=False,
                latency_ms=latency,
                error=str(exc) or type(exc).__name__,
                check=TLS_HANDSHAKE,
            )
        latency = (time.monotonic() - started) * 1000
        LOG.info("TLS handshake with %s (%s) in %.1f ms", target, version, latency)
        return ProbeResult(target=target, success=True, answers=(version,), latency_ms=latency, check=TLS_HANDSHAKE)

    def check_proxy(self, proxy: HttpsProxy) -> list[ProbeResult]:
        """Connect to the local HTTPS proxy, then resolve through it."""
        target = f"{PROXY_HOST}:{proxy.local_port}"
        started = time.monotonic()
        try:
            self._tcp_connector(PROXY_HOST, proxy.local_port, self.timeout)
        except OSError as exc:
            LOG.warning("HTTPS proxy %s is not listening: %s", target, exc)
            return [
                ProbeResult(
                    target=target,
                    success=False,
                    latency_ms=(time.monotonic() - started) * 1000,
                    error=str(exc) or type(exc).__name__,
                    check=PROXY,
                )
            ]
        results = [ProbeResult(target=target, success=True, latency_ms=(time.monotonic() - started) * 1000, check=PROXY)]
        if self.domains:
            results.append(self._resolve(self.domains[0], PROXY_HOST, proxy.local_port, PROXY))
        return results

    def upstream_checks(self, configuration: UpstreamConfiguration) -> list[ProbeResult]:
        """Check reachability of the upstreams ``configuration`` forwards to."""
        if configuration.mode is ResolverMode.DOT:
            return [self.check_tls(provider) for provider in configuration.active_providers()]
        if configuration.mode is ResolverMode.DOH and configuration.https_proxy is not None:
            return self.check_proxy(configuration.https_proxy)
        return []

    def run(self, configuration: UpstreamConfiguration | None = None) -> SelfTestReport:
        """Check upstreams first, then resolve every configured domain in order."""
        results = self.upstream_checks(configuration) if configuration is not None else []
        results.extend(self.probe(domain) for domain in self.domains)
        return SelfTestReport(probes=tuple(results))
