"""
Compare preset code between where it came from and another environment.

Comparison is exact text equality. A preset that does not exist in the target is
reported with target_code=None and never counts as identical. A preset whose code
could not be fetched carries the error and the rest of the batch still runs.
"""

from __future__ import annotations

import difflib
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from . import rally_logging  # noqa: F401  (registers Logger.trace)
from .errors import TransportError
from .rally_entities import Preset, download_preset_code, find_preset_by_name
from .rally_logging import ANSI_GREEN, ANSI_RED, ANSI_YELLOW, paint
from .workers import DEFAULT_MAX_WORKERS, run_concurrently

LOG = logging.getLogger("diff")


@dataclass
class PresetDiff:
    name: str
    source_code: str
    target_code: Optional[str]
    identical: bool
    source_label: str = ""
    target_label: str = ""
    error: Optional[str] = None


def _diff_one(api, target_env: str, preset: Preset) -> PresetDiff:
    try:
        source_code = preset.load_code(api)
        target = find_preset_by_name(api, target_env, preset.name)
        if target is None:
            return PresetDiff(preset.name, source_code, None, False, preset.label)
        target_code = download_preset_code(api, target_env, target.id)
    except TransportError as exc:
        if exc.unreachable:
            raise
        LOG.error("[error] Could not diff preset '%s': %s", preset.name, exc)
        return PresetDiff(preset.name, preset.code or "", None, False, preset.label, error=str(exc))
    return PresetDiff(preset.name, source_code, target_code, source_code == target_code,
                      preset.label, target.label)


def diff_presets(presets: Iterable[Preset], target_env: str, api,
                 max_workers: int = DEFAULT_MAX_WORKERS) -> List[PresetDiff]:
    """One PresetDiff per preset, in the order given."""
    presets = list(presets)
    LOG.info("[info] Diffing %d preset(s) against %s", len(presets), target_env)
    results = run_concurrently(lambda p: _diff_one(api, target_env, p), presets, max_workers)
    for r in results:
        if r.target_code is None:
            LOG.trace("[trace] Preset '%s' missing on %s", r.name, target_env)
    return results


def diff_chain(chain, target_env: str, api, max_workers: int = DEFAULT_MAX_WORKERS) -> List[PresetDiff]:
    return diff_presets(chain.presets.values(), target_env, api, max_workers)


def diff_lines(results: Iterable[PresetDiff], ignore_same: bool = False, show_lines: bool = False,
               color: bool = False) -> List[str]:
    def c(text: str, code: str) -> str:
        return paint(text, code) if color else text

    lines: List[str] = []
    for r in results:
        if r.error is not None:
            lines.append(f"{c('failed'.ljust(8), ANSI_RED)} {r.name}: {r.error}")
            continue
        if r.identical:
            if ignore_same:
                continue
            lines.append(f"{c('same'.ljust(8), ANSI_GREEN)} {r.name}")
            continue
        if r.target_code is None:
            lines.append(f"{c('missing'.ljust(8), ANSI_RED)} {r.name}")
            continue
        lines.append(f"{c('differs'.ljust(8), ANSI_YELLOW)} {r.name}")
        if show_lines:
            lines.extend(
                l.rstrip("\n") for l in difflib.unified_diff(
                    r.source_code.splitlines(keepends=True),
                    r.target_code.splitlines(keepends=True),
                    fromfile=r.source_label or "source",
                    tofile=r.target_label or "target",
                )
            )
    return lines


def print_diff(results: Iterable[PresetDiff], ignore_same: bool = False, show_lines: bool = False) -> None:
    for line in diff_lines(results, ignore_same, show_lines, color=True):
        print(line)
