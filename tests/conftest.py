from __future__ import annotations

import os
import sys
from collections import defaultdict
from pathlib import Path
from typing import Callable, Mapping

import pytest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
SRC_PATH = os.path.join(PROJECT_ROOT, "src")

if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

from unbound_ctl.config import AppConfig  # noqa: E402
from unbound_ctl.controller import (  # noqa: E402
    MANAGED_CONFIG,
    UPSTREAM_DESCRIPTOR,
    UpstreamController,
)
from unbound_ctl.descriptor import DescriptorRepository  # noqa: E402
from unbound_ctl.gateway import CommandId  # noqa: E402
from unbound_ctl.models import (  # noqa: E402
    CommandOutput,
    HttpsProxy,
    Provider,
    ProviderKind,
    ResolverMode,
    UpstreamConfiguration,
)
from unbound_ctl.selftest import ProbeResult, SelfTestReport  # noqa: E402
from unbound_ctl.snapshots import SnapshotStore  # noqa: E402
from unbound_ctl.unbound import ResolverService  # noqa: E402


class FakeRunner:
    """Scriptable stand-in for the process gateway."""

    def __init__(self) -> None:
        self.calls: list[tuple[CommandId, dict[str, str]]] = []
        self.outcomes: dict[CommandId, list[CommandOutput | Exception]] = defaultdict(list)
        self.hooks: dict[CommandId, Callable[[], None]] = {}

    def script(self, command_id: CommandId, *outcomes: CommandOutput | Exception) -> None:
        self.outcomes[command_id].extend(outcomes)

    def run(self, command_id: CommandId, params: Mapping[str, str] | None = None) -> CommandOutput:
        command_id = CommandId(command_id)
        self.calls.append((command_id, dict(params or {})))
        hook = self.hooks.get(command_id)
        if hook is not None:
            hook()
        queue = self.outcomes.get(command_id)
        outcome = queue.pop(0) if queue else CommandOutput(stdout="", stderr="", exit_code=0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def count(self, command_id: CommandId) -> int:
        return sum(1 for called, _ in self.calls if called is command_id)


class FakeProber:
    """Returns scripted pass/fail self-test reports."""

    def __init__(self, *outcomes: bool) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0
        self.configurations = []

    def run(self, configuration=None) -> SelfTestReport:
        self.calls += 1
        self.configurations.append(configuration)
        passed = self.outcomes.pop(0) if self.outcomes else True
        probe = ProbeResult(
            target="example.com",
            success=passed,
            answers=("93.184.216.34",) if passed else (),
            error=None if passed else "SERVFAIL",
        )
        return SelfTestReport(probes=(probe,))


def failed(stderr: str = "error", exit_code: int = 1) -> CommandOutput:
    return CommandOutput(stdout="", stderr=stderr, exit_code=exit_code)


def dot_configuration(*addresses: str) -> UpstreamConfiguration:
    providers = [
        Provider(
            id=f"p{index}",
            kind=ProviderKind.DOT,
            address=address,
            server_name_indication=f"dns{index}.example",
            priority=index,
        )
        for index, address in enumerate(addresses, start=1)
    ]
    return UpstreamConfiguration(mode=ResolverMode.DOT, tls_providers=providers)


def doh_configuration(local_port: int = 5053) -> UpstreamConfiguration:
    return UpstreamConfiguration(
        mode=ResolverMode.DOH,
        https_providers=[
            Provider(
                id="cf",
                kind=ProviderKind.DOH,
                address="https://cloudflare-dns.com/dns-query",
                display_name="Cloudflare",
            ),
        ],
        https_proxy=HttpsProxy(implementation="cloudflared", local_port=local_port),
    )


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    state_dir = tmp_path / "state"
    return AppConfig(
        main_config_path=tmp_path / "etc" / "unbound.conf",
        managed_config_path=tmp_path / "etc" / "unbound-ctl-managed.conf",
        descriptor_path=state_dir / "upstream.json",
        snapshot_dir=state_dir / "snapshots",
        state_dir=state_dir,
        snapshot_retention=10,
        checkconf_bin="unbound-checkconf",
        control_bin="unbound-control",
        systemctl_bin="systemctl",
        resolver_service="unbound",
        probe_server="127.0.0.1",
        probe_port=53,
        probe_domains=("example.com",),
        probe_timeout=1.0,
        flush_cache_after_apply=False,
        templates_dir=None,
        log_level="DEBUG",
    )


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


def make_controller(config: AppConfig, runner: FakeRunner, prober: FakeProber) -> UpstreamController:
    snapshots = SnapshotStore(
        config.snapshot_dir,
        {
            MANAGED_CONFIG: config.managed_config_path,
            UPSTREAM_DESCRIPTOR: config.descriptor_path,
        },
    )
    return UpstreamController(
        config=config,
        resolver=ResolverService(runner, config),
        snapshots=snapshots,
        descriptors=DescriptorRepository(config.descriptor_path),
        prober=prober,
    )


@pytest.fixture
def controller(app_config: AppConfig, runner: FakeRunner, prober: FakeProber) -> UpstreamController:
    return make_controller(app_config, runner, prober)
