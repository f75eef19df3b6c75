"""
Propagate a supply chain into another environment.

Rule relationships point at the SOURCE environment's ids. The target has its own ids for
the same-named entities, some of which do not exist yet, and the rule graph may contain
cycles, so there is no creation order that works in a single pass. Sync runs in two phases:

  Phase 1 - ensure existence (concurrent)
      • Preset: look up by name in target; create (attributes + code) or update in place.
      • Rule:   create a bare record (name, description) or update the description.
                No relationships are written in this phase.
      Every target id is recorded in a (kind, name) -> target id map.

  -- barrier: phase 2 starts only after every phase 1 task has finished --

  Out-of-chain targets are looked up live by name in the target, once per name.

  Phase 2 - wire relationships (concurrent)
      • PATCH preset / passNext / errorNext / dynamicNexts of every rule with target ids
        resolved strictly by name. A target that cannot be resolved is recorded as a
        dangling reference and only that relationship is left out.

A failure on one entity is recorded and the entity skipped. Only an unreachable API
aborts the whole sync. Running the same sync twice creates nothing the second time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from . import rally_logging  # noqa: F401  (registers Logger.trace)
from .errors import AbortError, DanglingReferenceError, Notification, TransportError
from .rally_entities import (
    PRESET_TYPE,
    RULE_TYPE,
    Preset,
    Rule,
    create_bare_rule,
    create_preset,
    find_preset_by_name,
    find_rule_by_name,
    patch_rule_relationships,
    update_preset,
    update_rule_description,
    upload_preset_code,
)
from .rally_logging import ANSI_GREEN, ANSI_RED, ANSI_YELLOW, paint
from .supply_chain_core import SupplyChain
from .workers import DEFAULT_MAX_WORKERS, run_concurrently

LOG = logging.getLogger("sync")

CREATED = "created"
UPDATED = "updated"
WIRED = "wired"
DANGLING = "dangling"
FAILED = "failed"

_ACTION_COLORS = {CREATED: ANSI_GREEN, UPDATED: ANSI_YELLOW, WIRED: ANSI_GREEN, DANGLING: ANSI_RED, FAILED: ANSI_RED}

TargetKey = Tuple[str, str]


@dataclass
class SyncOutcome:
    kind: str
    name: str
    action: str
    target_id: Optional[str] = None
    detail: str = ""

    @property
    def key(self) -> TargetKey:
        return (PRESET_TYPE if self.kind == "preset" else RULE_TYPE, self.name)


@dataclass
class SyncReport:
    target_env: str
    outcomes: List[SyncOutcome] = field(default_factory=list)
    notifications: List[Notification] = field(default_factory=list)
    id_map: Dict[TargetKey, str] = field(default_factory=dict)
    wired: bool = False

    def count(self, action: str) -> int:
        return sum(1 for o in self.outcomes if o.action == action)

    @property
    def created_count(self) -> int:
        return self.count(CREATED)

    @property
    def updated_count(self) -> int:
        return self.count(UPDATED)

    @property
    def failed(self) -> bool:
        return self.count(FAILED) > 0

    def target_id(self, kind: str, name: str) -> Optional[str]:
        return self.id_map.get((kind, name))

    def log_lines(self, color: bool = False) -> List[str]:
        def c(text: str, code: str) -> str:
            return paint(text, code) if color else text

        lines = [f"# Sync to {self.target_env}: {self.created_count} created, {self.updated_count} updated, "
                 f"{self.count(DANGLING)} dangling, {self.count(FAILED)} failed"]
        for o in self.outcomes:
            prefix = "P" if o.kind == "preset" else "R"
            label = f"{prefix}-{self.target_env}-{o.target_id or '?'}"
            line = f"  {c(o.action.ljust(8), _ACTION_COLORS.get(o.action, ''))} {label}: {o.name}"
            if o.detail:
                line += f" ({o.detail})"
            lines.append(line)
        for note in self.notifications:
            lines.append(f"#   {c(note.kind.upper(), ANSI_RED)} {note.message}")
        return lines

    def log(self) -> None:
        for line in self.log_lines(color=True):
            print(line)


def check_target_env(target_env: Optional[str], protected_envs: Iterable[str] = ()) -> None:
    if not target_env:
        raise AbortError("No target environment supplied for sync")
    if target_env in set(protected_envs):
        raise AbortError(f"{target_env} is protected; pass --no-protect to modify it")


def check_sync_target(chain: SupplyChain, target_env: Optional[str], protected_envs: Iterable[str] = ()) -> None:
    """Precondition checks; raise before any remote call is made."""
    check_target_env(target_env, protected_envs)
    if chain.source_env and chain.source_env == target_env:
        LOG.warning("[warn] Source and target environment are both %s", target_env)


# ---------------------------
# Phase 1: ensure existence
# ---------------------------

def _ensure_preset(api, env: str, preset: Preset) -> SyncOutcome:
    target_id: Optional[str] = None
    try:
        existing = find_preset_by_name(api, env, preset.name)
        if existing is None:
            target_id = create_preset(api, env, preset)
            action = CREATED
        else:
            target_id = existing.id
            update_preset(api, env, target_id, preset)
            action = UPDATED
        if preset.code is not None:
            upload_preset_code(api, env, target_id, preset.code)
    except TransportError as exc:
        if exc.unreachable:
            raise
        return SyncOutcome("preset", preset.name, FAILED, target_id, str(exc))
    LOG.info("[sync] %s preset '%s' on %s (id %s)", action, preset.name, env, target_id)
    return SyncOutcome("preset", preset.name, action, target_id)


def _ensure_rule(api, env: str, rule: Rule) -> SyncOutcome:
    target_id: Optional[str] = None
    try:
        existing = find_rule_by_name(api, env, rule.name)
        if existing is None:
            target_id = create_bare_rule(api, env, rule.name, rule.description)
            action = CREATED
        else:
            target_id = existing.id
            update_rule_description(api, env, target_id, rule.description)
            action = UPDATED
    except TransportError as exc:
        if exc.unreachable:
            raise
        return SyncOutcome("rule", rule.name, FAILED, target_id, str(exc))
    LOG.info("[sync] %s rule '%s' on %s (id %s)", action, rule.name, env, target_id)
    return SyncOutcome("rule", rule.name, action, target_id)


def ensure_entities(chain: SupplyChain, target_env: str, api,
                    max_workers: int = DEFAULT_MAX_WORKERS) -> SyncReport:
    """Phase 1. Returns a report whose id_map covers every entity that exists in target."""
    report = SyncReport(target_env=target_env)
    tasks: List[Tuple[str, Any]] = [("preset", p) for p in chain.presets.values()]
    tasks += [("rule", r) for r in chain.rules.values()]
    LOG.info("[sync] Phase 1: ensuring %d preset(s) and %d rule(s) exist on %s",
             len(chain.presets), len(chain.rules), target_env)

    def _run(task: Tuple[str, Any]) -> SyncOutcome:
        kind, entity = task
        if kind == "preset":
            return _ensure_preset(api, target_env, entity)
        return _ensure_rule(api, target_env, entity)

    for outcome in run_concurrently(_run, tasks, max_workers):
        report.outcomes.append(outcome)
        if outcome.target_id is not None:
            report.id_map[outcome.key] = outcome.target_id
        if outcome.action == FAILED:
            LOG.warning("[warn] %s '%s' failed on %s: %s", outcome.kind, outcome.name, target_env, outcome.detail)
            report.notifications.append(
                Notification("failed", f"{outcome.kind} '{outcome.name}': {outcome.detail}", outcome.name))
    return report


# ---------------------------
# Phase 2: wire relationships
# ---------------------------

def _external_keys(chain: SupplyChain, id_map: Dict[TargetKey, str]) -> List[TargetKey]:
    in_chain = {(RULE_TYPE, n) for n in chain.rules} | {(PRESET_TYPE, n) for n in chain.presets}
    wanted: List[TargetKey] = []
    for rule in chain.rules.values():
        for _, ref in rule.references():
            if not ref.name:
                continue
            key = (ref.kind, ref.name)
            if key in id_map or key in in_chain or key in wanted:
                continue
            wanted.append(key)
    return wanted


def _lookup_external(api, env: str, key: TargetKey) -> Optional[str]:
    kind, name = key
    try:
        if kind == PRESET_TYPE:
            hit = find_preset_by_name(api, env, name)
        else:
            hit = find_rule_by_name(api, env, name)
    except TransportError as exc:
        if exc.unreachable:
            raise
        LOG.warning("[warn] Lookup of %s '%s' on %s failed: %s", kind, name, env, exc)
        return None
    return hit.id if hit else None


def _wire_rule(api, env: str, rule: Rule, targets: Dict[TargetKey, str]) -> Tuple[SyncOutcome, List[Notification]]:
    rule_id = targets.get((RULE_TYPE, rule.name))
    if rule_id is None:
        return SyncOutcome("rule", rule.name, FAILED, None, "no record on target; relationships not written"), []

    notes: List[Notification] = []

    def target_for(label: str, ref) -> Optional[str]:
        tid = targets.get((ref.kind, ref.name)) if ref.name else None
        if tid is None:
            err = DanglingReferenceError(rule.name, label, ref.name, env)
            notes.append(Notification.from_error(DANGLING, err, rule.name))
        return tid

    relationships: Dict[str, Any] = {}
    if rule.preset is None:
        relationships["preset"] = {"data": None}
    else:
        pid = target_for("preset", rule.preset)
        if pid is not None:
            relationships["preset"] = {"data": {"id": pid, "type": PRESET_TYPE}}

    for key, ref in (("passNext", rule.pass_next), ("errorNext", rule.error_next)):
        if ref is None:
            relationships[key] = {"data": None}
            continue
        tid = target_for(key, ref)
        if tid is not None:
            relationships[key] = {"data": {"id": tid, "type": RULE_TYPE}}

    dynamic = []
    for transition, ref in rule.dynamic_nexts:
        tid = target_for(f"dynamicNexts[{transition}]", ref)
        if tid is not None:
            dynamic.append({"id": tid, "type": RULE_TYPE, "meta": {"transition": transition}})
    relationships["dynamicNexts"] = {"data": dynamic}

    try:
        patch_rule_relationships(api, env, rule_id, relationships)
    except TransportError as exc:
        if exc.unreachable:
            raise
        return SyncOutcome("rule", rule.name, FAILED, rule_id, str(exc)), notes

    action = DANGLING if notes else WIRED
    LOG.trace("[trace] %s rule '%s' on %s (%d relationship(s))", action, rule.name, env, len(relationships))
    return SyncOutcome("rule", rule.name, action, rule_id), notes


def wire_relationships(chain: SupplyChain, report: SyncReport, api,
                       max_workers: int = DEFAULT_MAX_WORKERS) -> SyncReport:
    """Phase 2. Must only be called with a report from a finished phase 1."""
    env = report.target_env
    external = _external_keys(chain, report.id_map)
    targets = dict(report.id_map)
    if external:
        LOG.info("[sync] Looking up %d out-of-chain target(s) on %s", len(external), env)
        for key, tid in zip(external, run_concurrently(lambda k: _lookup_external(api, env, k), external, max_workers)):
            if tid is not None:
                targets[key] = tid

    rules = list(chain.rules.values())
    LOG.info("[sync] Phase 2: wiring relationships for %d rule(s) on %s", len(rules), env)
    for outcome, notes in run_concurrently(lambda r: _wire_rule(api, env, r, targets), rules, max_workers):
        report.outcomes.append(outcome)
        for note in notes:
            LOG.warning("[warn] %s", note.message)
        report.notifications.extend(notes)
        if outcome.action == FAILED:
            report.notifications.append(
                Notification("failed", f"rule '{outcome.name}': {outcome.detail}", outcome.name))
    report.wired = True
    return report


def sync_to(
    chain: SupplyChain,
    target_env: str,
    api,
    *,
    max_workers: int = DEFAULT_MAX_WORKERS,
    protected_envs: Iterable[str] = (),
    stop_on_phase1_errors: bool = False,
) -> SyncReport:
    """Create/update every chain entity on target_env, then wire the rule graph by name."""
    check_sync_target(chain, target_env, protected_envs)
    chain.download_preset_code(api, max_workers)

    report = ensure_entities(chain, target_env, api, max_workers)
    if stop_on_phase1_errors and report.failed:
        LOG.warning("[warn] Phase 1 had failures on %s; relationships were not written", target_env)
        report.notifications.append(Notification("info", "Phase 1 had failures; relationships were not written"))
        return report
    return wire_relationships(chain, report, api, max_workers)
