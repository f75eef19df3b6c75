"""
Supply chain: the connected set of Rules and Presets reachable from a starting rule.

calculate_supply_chain() walks the rule graph breadth-first from the start rule over
passNext, errorNext and every dynamicNexts entry. The visited set is keyed by rule name
and a rule is queued at most once, so retry loops and other cycles are fine. A stop rule
is included in the chain but not expanded.

"@" as the start means "whole silo": every rule and preset in the environment is
enumerated instead of walked. A stop rule makes no sense there and is rejected.

SupplyChain.assemble() builds the same shape from an explicit list of entities
(`rally supply make`). Downstream consumers (log, sync, diff) do not care which
producer built the chain.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Dict, Iterable, List, Optional, Union

from . import rally_logging  # noqa: F401  (registers Logger.trace)
from .errors import AbortError, NotFoundError, Notification, TransportError
from .rally_entities import EntityIndex, Preset, Rule
from .rally_logging import ANSI_BLUE, ANSI_GREEN, ANSI_RED, ANSI_YELLOW, paint
from .workers import DEFAULT_MAX_WORKERS, run_concurrently

LOG = logging.getLogger("supply_chain")

WHOLE_SILO = "@"


def _log_name(entity: Union[Rule, Preset]) -> str:
    # local entities log their silo path so the line resolves again when piped back in
    if entity.identity.is_local and entity.path:
        return entity.path
    return entity.name


class SupplyChain:
    def __init__(self, start: Optional[Rule] = None, stop: Optional[Rule] = None,
                 source_env: Optional[str] = None):
        self.start = start
        self.stop = stop
        self.source_env = source_env
        self.rules: Dict[str, Rule] = {}
        self.presets: Dict[str, Preset] = {}
        self.notifications: List[Notification] = []

    @property
    def boundary(self) -> Optional[Rule]:
        return self.stop

    def add_rule(self, rule: Rule) -> bool:
        if rule.name in self.rules:
            return False
        self.rules[rule.name] = rule
        return True

    def add_preset(self, preset: Preset) -> bool:
        if preset.name in self.presets:
            return False
        self.presets[preset.name] = preset
        return True

    def notify(self, kind: str, message: str, name: Optional[str] = None) -> None:
        LOG.warning("[warn] %s", message)
        self.notifications.append(Notification(kind, message, name))

    @classmethod
    def assemble(cls, entities: Iterable[Union[Rule, Preset]],
                 notifications: Iterable[Notification] = (),
                 source_env: Optional[str] = None) -> "SupplyChain":
        chain = cls(source_env=source_env)
        for entity in entities:
            if isinstance(entity, Rule):
                chain.add_rule(entity)
            else:
                chain.add_preset(entity)
        chain.notifications.extend(notifications)
        return chain

    def resolve_reference_names(self, api) -> None:
        """Fill in relationship names for remote rules that only carry source ids.

        Rules fetched one at a time (composite keys) know their targets by id only;
        one index per source environment translates those ids to names.
        """
        indexes: Dict[str, EntityIndex] = {}
        for rule in self.rules.values():
            pending = [ref for _, ref in rule.references() if ref.name is None and ref.source_id]
            if not pending or rule.environment is None:
                continue
            if rule.environment not in indexes:
                indexes[rule.environment] = EntityIndex.load(api, rule.environment)
            rule.resolve_names(indexes[rule.environment])
            for label, ref in rule.references():
                if ref.name is None:
                    self.notify("missing",
                                f"Rule '{rule.name}' {label} points at unknown id {ref.source_id} on {rule.environment}",
                                rule.name)

    def download_preset_code(self, api, max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        """Fetch code for every remote preset that does not have it loaded yet."""
        pending = [p for p in self.presets.values() if p.code is None and not p.identity.is_local]
        if not pending:
            return
        LOG.info("[info] Downloading code for %d preset(s)", len(pending))

        def _load(preset: Preset) -> Optional[str]:
            try:
                preset.load_code(api)
            except TransportError as exc:
                if exc.unreachable:
                    raise
                return str(exc)
            return None

        for preset, error in zip(pending, run_concurrently(_load, pending, max_workers)):
            if error:
                self.notify("failed", f"Could not download code for preset '{preset.name}': {error}", preset.name)

    # ---------------------------
    # Log (pure projection)
    # ---------------------------

    def log_lines(self, color: bool = False) -> List[str]:
        def c(text: str, code: str) -> str:
            return paint(text, code) if color else text

        lines: List[str] = []
        if self.start is not None:
            stop = f"{self.stop.label}: {self.stop.name}" if self.stop else "(open)"
            lines.append(f"# Supply chain: {self.start.label}: {self.start.name} - {stop}")
        lines.append(c(f"# Required rules: {len(self.rules)}", ANSI_YELLOW))
        for rule in self.rules.values():
            lines.append(f"{c(rule.label.rjust(15), ANSI_GREEN)}: {c(_log_name(rule), ANSI_BLUE)}")
        lines.append(c(f"# Required presets: {len(self.presets)}", ANSI_YELLOW))
        for preset in self.presets.values():
            lines.append(f"{c(preset.label.rjust(15), ANSI_GREEN)}: {c(_log_name(preset), ANSI_BLUE)}")
        if self.notifications:
            lines.append(c(f"# Notifications: {len(self.notifications)}", ANSI_YELLOW))
            for note in self.notifications:
                lines.append(f"#   {c(note.kind.upper(), ANSI_RED)} {note.message}")
        return lines

    def log(self) -> None:
        for line in self.log_lines(color=True):
            print(line)


def calculate_supply_chain(api, env: str, start: str, stop: Optional[str] = None,
                           index: Optional[EntityIndex] = None) -> SupplyChain:
    """Compute the supply chain reachable from `start` on env, bounded at `stop`."""
    if not start:
        raise AbortError("No starting rule or @ supplied")
    if start == WHOLE_SILO:
        if stop:
            raise AbortError("A stop rule cannot be combined with a whole silo clone (@)")
        return clone_silo(api, env, index)

    index = index or EntityIndex.load(api, env)
    start_rule = index.find_rule(start)
    if start_rule is None:
        raise NotFoundError("starting rule", start, env)
    stop_rule = None
    if stop:
        stop_rule = index.find_rule(stop)
        if stop_rule is None:
            raise NotFoundError("stop rule", stop, env)

    LOG.info("[info] Analyzing supply chain: %s %s - %s", start_rule.label, start_rule.name,
             f"{stop_rule.label} {stop_rule.name}" if stop_rule else "(open)")

    chain = SupplyChain(start=start_rule, stop=stop_rule, source_env=env)
    queue = deque([start_rule])
    visited = {start_rule.name}
    while queue:
        rule = queue.popleft()
        chain.add_rule(rule)

        if rule.preset is not None:
            preset = index.preset_by_name(rule.preset.name)
            if preset is None:
                chain.notify("missing", f"Rule '{rule.name}' uses preset id {rule.preset.source_id}, "
                                        f"which does not exist on {env}", rule.name)
            else:
                chain.add_preset(preset)

        if stop_rule is not None and rule.name == stop_rule.name:
            LOG.trace("[trace] Reached stop rule '%s'; not expanding", rule.name)
            continue

        for label, ref in rule.next_references():
            target = index.rule_by_name(ref.name)
            if target is None:
                chain.notify("missing", f"Rule '{rule.name}' {label} points at rule id {ref.source_id}, "
                                        f"which does not exist on {env}", rule.name)
                continue
            if target.name in visited:
                continue
            visited.add(target.name)
            queue.append(target)

    LOG.info("[info] Supply chain has %d rule(s) and %d preset(s)", len(chain.rules), len(chain.presets))
    return chain


def clone_silo(api, env: str, index: Optional[EntityIndex] = None) -> SupplyChain:
    """Every rule and preset on env, in the same shape a traversal produces."""
    LOG.info("[info] Silo clone started for %s", env)
    index = index or EntityIndex.load(api, env)
    chain = SupplyChain(source_env=env)
    for rule in index.rules:
        chain.add_rule(rule)
    for preset in index.presets:
        chain.add_preset(preset)
    return chain
