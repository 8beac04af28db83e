"""Diff utilities for upstream configurations."""

from __future__ import annotations

import difflib
from dataclasses import dataclass, field

from .models import Provider, ResolverMode, UpstreamConfiguration


@dataclass
class UpstreamDiff:
    """High-level diff between two upstream configurations."""

    mode_before: ResolverMode
    mode_after: ResolverMode
    added: list[Provider] = field(default_factory=list)
    removed: list[Provider] = field(default_factory=list)
    changed: list[tuple[Provider, Provider]] = field(default_factory=list)
    proxy_changed: bool = False
    text_diff: list[str] = field(default_factory=list)

    @property
    def mode_changed(self) -> bool:
        """Return True when the resolver mode switches."""
        return self.mode_before is not self.mode_after

    def has_changes(self) -> bool:
        """Return True when the diff contains meaningful changes."""
        return bool(
            self.mode_changed or self.added or self.removed or self.changed or self.proxy_changed or self.text_diff
        )


def _index(providers: list[Provider]) -> dict[tuple[str, str], Provider]:
    """Index providers by transport and id."""
    return {(provider.kind.value, provider.id): provider for provider in providers}


def diff_configurations(
    current: UpstreamConfiguration,
    desired: UpstreamConfiguration,
    current_text: str = "",
    desired_text: str = "",
) -> UpstreamDiff:
    """Produce a diff between the current and desired configurations."""
    diff = UpstreamDiff(mode_before=current.mode, mode_after=desired.mode)
    current_map = _index(list(current.iter_providers()))
    desired_map = _index(list(desired.iter_providers()))

    for key in sorted(set(desired_map) | set(current_map)):
        before = current_map.get(key)
        after = desired_map.get(key)
        if before is None and after is not None:
            diff.added.append(after)
        elif after is None and before is not None:
            diff.removed.append(before)
        elif before != after:
            diff.changed.append((before, after))

    diff.proxy_changed = current.https_proxy != desired.https_proxy
    if current_text != desired_text:
        diff.text_diff = list(
            difflib.unified_diff(
                current_text.splitlines(),
                desired_text.splitlines(),
                fromfile="current",
                tofile="desired",
                lineterm="",
            )
        )
    return diff
