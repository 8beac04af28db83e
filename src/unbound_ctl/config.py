"""Environment-driven configuration loader."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


@dataclass(frozen=True)
class AppConfig:
    """Application-wide configuration values."""

    main_config_path: Path
    managed_config_path: Path
    descriptor_path: Path
    snapshot_dir: Path
    state_dir: Path
    snapshot_retention: int
    checkconf_bin: str
    control_bin: str
    systemctl_bin: str
    resolver_service: str
    probe_server: str
    probe_port: int
    probe_domains: tuple[str, ...]
    probe_timeout: float
    flush_cache_after_apply: bool
    templates_dir: Path | None
    log_level: str

    @property
    def recovery_marker_path(self) -> Path:
        """Return the file that latches a fatal apply."""
        return self.state_dir / "recovery-required.json"


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Return a boolean parsed from a string."""
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_domains(value: str) -> tuple[str, ...]:
    """Split a comma separated domain list."""
    domains = tuple(item.strip() for item in value.split(",") if item.strip())
    if not domains:
        raise ValueError("PROBE_DOMAINS must name at least one domain.")
    return domains


def _parse_port(name: str, value: str) -> int:
    """Parse and range-check a TCP/UDP port."""
    port = int(value)
    if not 1 <= port <= 65535:
        raise ValueError(f"{name} must be between 1 and 65535.")
    return port


def load_config() -> AppConfig:
    """Load configuration values from the environment (and .env)."""
    load_dotenv()
    state_dir = Path(os.getenv("STATE_DIR", "/var/lib/unbound-ctl"))
    retention = int(os.getenv("SNAPSHOT_RETENTION", "10"))
    if retention < 0:
        raise ValueError("SNAPSHOT_RETENTION must be zero (keep all) or positive.")
    templates_dir = os.getenv("TEMPLATES_DIR")

    return AppConfig(
        main_config_path=Path(os.getenv("UNBOUND_MAIN_CONF", "/etc/unbound/unbound.conf")),
        managed_config_path=Path(
            os.getenv("UNBOUND_MANAGED_CONF", "/etc/unbound/unbound-ctl-managed.conf"),
        ),
        descriptor_path=Path(os.getenv("UPSTREAM_DESCRIPTOR", str(state_dir / "upstream.json"))),
        snapshot_dir=Path(os.getenv("SNAPSHOT_DIR", str(state_dir / "snapshots"))),
        state_dir=state_dir,
        snapshot_retention=retention,
        checkconf_bin=os.getenv("UNBOUND_CHECKCONF_BIN", "unbound-checkconf"),
        control_bin=os.getenv("UNBOUND_CONTROL_BIN", "unbound-control"),
        systemctl_bin=os.getenv("SYSTEMCTL_BIN", "systemctl"),
        resolver_service=os.getenv("RESOLVER_SERVICE", "unbound"),
        probe_server=os.getenv("PROBE_SERVER", "127.0.0.1"),
        probe_port=_parse_port("PROBE_PORT", os.getenv("PROBE_PORT", "53")),
        probe_domains=_parse_domains(os.getenv("PROBE_DOMAINS", "example.com,cloudflare.com")),
        probe_timeout=float(os.getenv("PROBE_TIMEOUT", "5")),
        flush_cache_after_apply=_parse_bool(os.getenv("FLUSH_CACHE_AFTER_APPLY"), default=False),
        templates_dir=Path(templates_dir).resolve() if templates_dir else None,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
