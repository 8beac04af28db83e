"""Utilities to serialise configurations and apply outcomes."""

from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Any

import yaml

from .atomic import atomic_write
from .models import (
    ApplyResult,
    Provider,
    SnapshotInfo,
    StepFailure,
    UnboundCtlError,
    UpstreamConfiguration,
)


def _provider_to_dict(provider: Provider) -> dict[str, Any]:
    """Convert a provider into a serialisable dictionary."""
    entry: dict[str, Any] = {
        "id": provider.id,
        "kind": provider.kind.value,
        "address": provider.address,
    }
    if provider.port is not None:
        entry["port"] = provider.port
    if provider.server_name_indication:
        entry["server_name_indication"] = provider.server_name_indication
    if provider.display_name:
        entry["display_name"] = provider.display_name
    entry["enabled"] = provider.enabled
    if provider.priority is not None:
        entry["priority"] = provider.priority
    return entry


def configuration_to_dict(configuration: UpstreamConfiguration) -> dict[str, Any]:
    """Create a dictionary describing the configuration."""
    data: dict[str, Any] = {
        "mode": configuration.mode.value,
        "tls_providers": [_provider_to_dict(p) for p in configuration.tls_providers],
        "https_providers": [_provider_to_dict(p) for p in configuration.https_providers],
    }
    if configuration.https_proxy is not None:
        data["https_proxy"] = asdict(configuration.https_proxy)
    return data


def configuration_to_json(configuration: UpstreamConfiguration) -> str:
    """Return the JSON descriptor text for a configuration."""
    return json.dumps(configuration_to_dict(configuration), indent=2) + "\n"


def configuration_to_yaml(configuration: UpstreamConfiguration) -> str:
    """Return YAML representation of a configuration."""
    return yaml.safe_dump(configuration_to_dict(configuration), sort_keys=False)


def _failure_to_dict(failure: StepFailure | None) -> dict[str, Any] | None:
    if failure is None:
        return None
    return {
        "kind": failure.kind.value,
        "step": failure.step.value,
        "message": failure.message,
        "cause": _failure_to_dict(failure.cause),
    }


def apply_result_to_dict(result: ApplyResult) -> dict[str, Any]:
    """Create a dictionary describing an apply attempt."""
    return {
        "outcome": result.outcome.value,
        "success": result.success,
        "snapshot_id": result.snapshot_id,
        "validation_passed": result.validation_passed,
        "reload_passed": result.reload_passed,
        "self_test_passed": result.self_test_passed,
        "rolled_back": result.rolled_back,
        "fatal": result.fatal,
        "cache_flushed": result.cache_flushed,
        "final_state": result.final_state.value,
        "error": _failure_to_dict(result.error),
    }


def apply_result_to_json(result: ApplyResult) -> str:
    """Return JSON representation of an apply attempt."""
    return json.dumps(apply_result_to_dict(result), indent=2)


def snapshots_to_list(snapshots: list[SnapshotInfo]) -> list[dict[str, Any]]:
    """Convert snapshot listings into serialisable dictionaries."""
    return [
        {
            "id": info.id,
            "captured_at": info.captured_at.isoformat(),
            "present": list(info.present),
            "absent": list(info.absent),
        }
        for info in snapshots
    ]


def write_document(path: Path, content: str) -> None:
    """Write exported content to ``path`` atomically."""
    result = atomic_write(path, content)
    if not result.success:
        raise UnboundCtlError(f"Cannot write {path}: {result.error}")
