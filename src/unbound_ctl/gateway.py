"""Allow-listed process execution for resolver tooling."""

from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping, Protocol

from .config import AppConfig
from .models import CommandError, CommandOutput, ParameterError

LOG = logging.getLogger("unbound_ctl.gateway")

ALLOWED_SERVICES = frozenset({"unbound", "cloudflared", "dnscrypt-proxy"})
ZONE_PATTERN = re.compile(
    r"^(\.|[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*\.?)$"
)
CONFIG_FILE_PATTERN = re.compile(r"^/[A-Za-z0-9._/-]+\.conf$")


class CommandId(str, Enum):
    """Commands the gateway is allowed to run."""

    VALIDATE_CONFIG = "validate-config"
    RELOAD_SERVICE = "reload-service"
    RESTART_SERVICE = "restart-service"
    SERVICE_ACTIVE = "service-active"
    RESOLVER_STATUS = "resolver-status"
    RESOLVER_STATS = "resolver-stats"
    FLUSH_CACHE = "flush-cache"
    FLUSH_ZONE = "flush-zone"


def _check_config_file(value: str) -> None:
    """Allow only absolute .conf paths without traversal."""
    if not CONFIG_FILE_PATTERN.match(value) or ".." in value or "//" in value:
        raise ParameterError(f"Invalid or disallowed config path: {value}")


def _check_service(value: str) -> None:
    """Allow only the known resolver service units."""
    if value not in ALLOWED_SERVICES:
        allowed = ", ".join(sorted(ALLOWED_SERVICES))
        raise ParameterError(f"Service not allowed: {value}. Allowed: {allowed}")


def _check_zone(value: str) -> None:
    """Allow only syntactically valid DNS names."""
    if len(value) > 253 or not ZONE_PATTERN.match(value):
        raise ParameterError(f"Invalid zone name: {value}")


PLACEHOLDER_VALIDATORS: dict[str, Callable[[str], None]] = {
    "config_file": _check_config_file,
    "service": _check_service,
    "zone": _check_zone,
}


@dataclass(frozen=True)
class CommandTemplate:
    """Argument template for one allow-listed command.

    ``tool`` names the executable role resolved through :class:`AppConfig`;
    arguments wrapped in braces are placeholders and must be declared in
    ``placeholders``.
    """

    tool: str
    args: tuple[str, ...]
    placeholders: frozenset[str] = field(default_factory=frozenset)
    timeout: float = 10.0


COMMAND_TABLE: dict[CommandId, CommandTemplate] = {
    CommandId.VALIDATE_CONFIG: CommandTemplate(
        "checkconf", ("{config_file}",), frozenset({"config_file"}), timeout=10.0
    ),
    CommandId.RELOAD_SERVICE: CommandTemplate("control", ("reload",), timeout=15.0),
    CommandId.RESTART_SERVICE: CommandTemplate(
        "systemctl", ("restart", "{service}"), frozenset({"service"}), timeout=30.0
    ),
    CommandId.SERVICE_ACTIVE: CommandTemplate(
        "systemctl", ("is-active", "{service}"), frozenset({"service"}), timeout=5.0
    ),
    CommandId.RESOLVER_STATUS: CommandTemplate("control", ("status",), timeout=5.0),
    CommandId.RESOLVER_STATS: CommandTemplate("control", ("stats_noreset",), timeout=5.0),
    CommandId.FLUSH_CACHE: CommandTemplate("control", ("flush_zone", "."), timeout=5.0),
    CommandId.FLUSH_ZONE: CommandTemplate(
        "control", ("flush_zone", "{zone}"), frozenset({"zone"}), timeout=5.0
    ),
}


def _verify_table() -> None:
    """Fail at import time if a template uses an undeclared placeholder."""
    for command_id, template in COMMAND_TABLE.items():
        used = {arg[1:-1] for arg in template.args if arg.startswith("{") and arg.endswith("}")}
        if used != set(template.placeholders):
            raise RuntimeError(f"Placeholder mismatch in template {command_id.value}")
        missing = set(template.placeholders) - set(PLACEHOLDER_VALIDATORS)
        if missing:
            raise RuntimeError(f"No validator for {sorted(missing)} in {command_id.value}")


_verify_table()


class CommandRunner(Protocol):
    """Anything that can run an allow-listed command."""

    def run(self, command_id: CommandId, params: Mapping[str, str] | None = None) -> CommandOutput:
        """Run the command and return its captured output."""
        ...


class ProcessGateway:
    """Runs allow-listed commands with argv arrays and bounded time.

    Non-zero exit codes are returned to the caller; only launch failures and
    timeouts raise :class:`CommandError`.
    """

    def __init__(self, config: AppConfig, table: Mapping[CommandId, CommandTemplate] | None = None):
        self._tools = {
            "checkconf": config.checkconf_bin,
            "control": config.control_bin,
            "systemctl": config.systemctl_bin,
        }
        self._table = dict(table or COMMAND_TABLE)

    def build_argv(self, command_id: CommandId, params: Mapping[str, str] | None = None) -> list[str]:
        """Return the argv for a command after validating its parameters."""
        try:
            template = self._table[CommandId(command_id)]
        except (KeyError, ValueError) as exc:
            raise ParameterError(f"Command not allowed: {command_id}") from exc
        supplied = dict(params or {})
        unexpected = set(supplied) - set(template.placeholders)
        if unexpected:
            raise ParameterError(f"Unexpected parameters for {template.tool}: {sorted(unexpected)}")
        argv = [self._tools[template.tool]]
        for arg in template.args:
            if arg.startswith("{") and arg.endswith("}"):
                name = arg[1:-1]
                if name not in supplied:
                    raise ParameterError(f"Missing required parameter: {name}")
                value = str(supplied[name])
                PLACEHOLDER_VALIDATORS[name](value)
                argv.append(value)
            else:
                argv.append(arg)
        return argv

    def run(self, command_id: CommandId, params: Mapping[str, str] | None = None) -> CommandOutput:
        """Run an allow-listed command and capture its output."""
        command_id = CommandId(command_id)
        argv = self.build_argv(command_id, params)
        timeout = self._table[command_id].timeout
        LOG.info("Running %s", " ".join(argv))
        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                check=False,
                timeout=timeout,
                env={**os.environ, "LC_ALL": "C"},
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandError(command_id.value, f"timed out after {timeout:g}s") from exc
        except OSError as exc:
            raise CommandError(command_id.value, f"cannot launch {argv[0]}: {exc}") from exc
        if completed.returncode != 0:
            LOG.warning(
                "%s exited with %s: %s",
                command_id.value,
                completed.returncode,
                completed.stderr.strip(),
            )
        return CommandOutput(
            stdout=completed.stdout,
            stderr=completed.stderr,
            exit_code=completed.returncode,
        )
