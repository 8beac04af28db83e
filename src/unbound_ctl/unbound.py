"""Wrapper around unbound-control, unbound-checkconf and systemctl."""

from __future__ import annotations

import re
from dataclasses import dataclass

from .config import AppConfig
from .gateway import CommandId, CommandRunner
from .models import CommandError, CommandOutput, UnboundCtlError

UPTIME_PATTERN = re.compile(r"uptime:?\s+(\d+)\s*seconds")
VERSION_PATTERN = re.compile(r"version:?\s+(\S+)")
PID_PATTERN = re.compile(r"pid\s+(\d+)")


@dataclass(frozen=True)
class ResolverStatus:
    """Running state reported by the resolver."""

    running: bool
    uptime: int = 0
    version: str = "unknown"
    pid: int | None = None


@dataclass(frozen=True)
class ResolverStats:
    """Counters parsed from ``unbound-control stats_noreset``."""

    total_queries: float = 0
    cache_hits: float = 0
    cache_misses: float = 0
    servfail: float = 0
    nxdomain: float = 0
    avg_recursion_ms: float = 0

    @property
    def cache_hit_ratio(self) -> float:
        """Return cache hits as a percentage of all queries."""
        if not self.total_queries:
            return 0.0
        return self.cache_hits / self.total_queries * 100


STAT_FIELDS = {
    "total.num.queries": "total_queries",
    "total.num.cachehits": "cache_hits",
    "total.num.cachemiss": "cache_misses",
    "num.answer.rcode.SERVFAIL": "servfail",
    "num.answer.rcode.NXDOMAIN": "nxdomain",
}


def parse_stats(output: str) -> ResolverStats:
    """Parse ``key=value`` statistics lines."""
    values: dict[str, float] = {}
    for line in output.splitlines():
        key, sep, raw = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        try:
            number = float(raw.strip())
        except ValueError:
            continue
        if key in STAT_FIELDS:
            values[STAT_FIELDS[key]] = number
        elif key == "total.recursion.time.avg":
            values["avg_recursion_ms"] = number * 1000
    return ResolverStats(**values)


def parse_status(output: str) -> ResolverStatus:
    """Parse ``unbound-control status`` output."""
    uptime = UPTIME_PATTERN.search(output)
    version = VERSION_PATTERN.search(output)
    pid = PID_PATTERN.search(output)
    return ResolverStatus(
        running=True,
        uptime=int(uptime.group(1)) if uptime else 0,
        version=version.group(1) if version else "unknown",
        pid=int(pid.group(1)) if pid else None,
    )


def require_ok(output: CommandOutput, action: str) -> CommandOutput:
    """Raise when a command exited non-zero."""
    if not output.ok:
        detail = output.stderr.strip() or output.stdout.strip() or f"exit code {output.exit_code}"
        raise UnboundCtlError(f"{action} failed: {detail}")
    return output


class ResolverService:
    """Resolver operations expressed through the allow-listed gateway."""

    def __init__(self, runner: CommandRunner, config: AppConfig):
        self.runner = runner
        self.config = config

    def validate(self) -> CommandOutput:
        """Check the resolver configuration, including the managed include."""
        return self.runner.run(
            CommandId.VALIDATE_CONFIG,
            {"config_file": str(self.config.main_config_path)},
        )

    def reload(self) -> CommandOutput:
        """Ask the running resolver to re-read its configuration."""
        return self.runner.run(CommandId.RELOAD_SERVICE)

    def restart(self) -> CommandOutput:
        """Restart the resolver unit."""
        return self.runner.run(CommandId.RESTART_SERVICE, {"service": self.config.resolver_service})

    def flush_cache(self) -> CommandOutput:
        """Drop every cached answer."""
        return self.runner.run(CommandId.FLUSH_CACHE)

    def flush_zone(self, zone: str) -> CommandOutput:
        """Drop cached answers at or below ``zone``."""
        return self.runner.run(CommandId.FLUSH_ZONE, {"zone": zone})

    def is_running(self) -> bool:
        """Return True when systemd reports the unit as active."""
        try:
            output = self.runner.run(CommandId.SERVICE_ACTIVE, {"service": self.config.resolver_service})
        except CommandError:
            return False
        return output.stdout.strip() == "active"

    def status(self) -> ResolverStatus:
        """Return the resolver's running state."""
        if not self.is_running():
            return ResolverStatus(running=False)
        output = self.runner.run(CommandId.RESOLVER_STATUS)
        if not output.ok:
            return ResolverStatus(running=True)
        return parse_status(output.stdout)

    def stats(self) -> ResolverStats:
        """Return resolver counters without resetting them."""
        output = require_ok(self.runner.run(CommandId.RESOLVER_STATS), "Reading statistics")
        return parse_stats(output.stdout)
