"""
Turn user-supplied reference strings into Rules and Presets.

Forms, tried in order:
  1. Composite key   R-DEV-55: ...   /   P-UAT-12: ...
     Direct fetch by id in that environment. Anything after the colon (the name that
     `rally supply calc` prints) is ignored, so Log output can be piped straight back in.
  2. Silo path       ProjectX/silo-presets/colorgrade.xml
                     ProjectX/silo-rules/Ingest.json
                     ProjectX/silo-metadata/colorgrade.json
     Local entity built from the file, tagged with the subproject.
  3. Anything else is a bare name, looked up remotely (rules first, then presets).

Blank lines and lines starting with "#" are skipped in batches.

A single bad reference never raises during batch resolution: it is logged and comes
back as a Missing marker plus a notification. Only an unreachable API propagates.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from . import rally_logging  # noqa: F401  (registers Logger.trace)
from .errors import NotFoundError, Notification, TransportError, UnconfiguredEnvError
from .rally_entities import (
    Preset,
    Rule,
    fetch_preset_by_id,
    fetch_rule_by_id,
    find_preset_by_name,
    find_rule_by_name,
)
from .workers import DEFAULT_MAX_WORKERS, run_concurrently

LOG = logging.getLogger("identifiers")

COMPOSITE_RX = re.compile(r"^(?P<kind>\w)-(?P<env>\w{1,10})-(?P<id>\d{1,10}):")
SILO_RX = re.compile(r"^(?P<prefix>.*?)(?:^|[\/\\])silo-(?P<category>\w+)[\/\\]")
LOCAL_LABEL_RX = re.compile(r"^[A-Z]-LOCAL:\s*")

Entity = Union[Rule, Preset]


@dataclass(frozen=True)
class Resolved:
    reference: str
    entity: Entity


@dataclass(frozen=True)
class Missing:
    reference: str
    reason: str


Match = Union[Resolved, Missing]

SILO_LOADERS: Dict[str, Callable[[str, Optional[str]], Entity]] = {
    "presets": Preset.from_file,
    "rules": Rule.from_file,
    "metadata": Preset.from_metadata,
}


def clean_reference(raw: str) -> str:
    s = (raw or "").strip()
    if len(s) >= 2 and s.startswith('"') and s.endswith('"'):
        s = s[1:-1].strip()
    return LOCAL_LABEL_RX.sub("", s, count=1)


def _remote_lookup(ref: str, fetch: Callable[[], Optional[Entity]]) -> Match:
    try:
        entity = fetch()
    except TransportError as exc:
        if exc.unreachable:
            raise
        return Missing(ref, str(exc))
    except UnconfiguredEnvError as exc:
        return Missing(ref, str(exc))
    if entity is None:
        return Missing(ref, "not found")
    return Resolved(ref, entity)


def _match_composite(ref: str, api) -> Optional[Match]:
    m = COMPOSITE_RX.match(ref)
    if not m:
        return None
    kind, env, ident = m.group("kind"), m.group("env"), m.group("id")
    if kind == "P":
        return _remote_lookup(ref, lambda: fetch_preset_by_id(api, env, ident))
    if kind == "R":
        return _remote_lookup(ref, lambda: fetch_rule_by_id(api, env, ident))
    return Missing(ref, f"unknown entity kind '{kind}' (expected P or R)")


def _match_silo_path(ref: str, api) -> Optional[Match]:
    m = SILO_RX.match(ref)
    if not m:
        return None
    sub_project = os.path.basename(m.group("prefix").rstrip("/\\")) or None
    category = m.group("category")
    loader = SILO_LOADERS.get(category)
    if loader is None:
        return Missing(ref, f"unknown silo category 'silo-{category}'")
    try:
        return Resolved(ref, loader(ref, sub_project))
    except NotFoundError as exc:
        return Missing(ref, str(exc))


MATCHERS: Tuple[Callable[[str, object], Optional[Match]], ...] = (
    _match_composite,
    _match_silo_path,
)


def categorize(reference: str, api) -> Optional[Match]:
    """Run the matchers in order; None means no matcher claimed the reference."""
    ref = clean_reference(reference)
    for matcher in MATCHERS:
        result = matcher(ref, api)
        if result is not None:
            return result
    return None


def lookup_by_name(reference: str, api, env: Optional[str]) -> Match:
    ref = clean_reference(reference)
    if not env:
        return Missing(ref, "no environment to look the name up in")

    def _fetch() -> Optional[Entity]:
        return find_rule_by_name(api, env, ref) or find_preset_by_name(api, env, ref)

    result = _remote_lookup(ref, _fetch)
    if isinstance(result, Missing) and result.reason == "not found":
        return Missing(ref, f"no rule or preset named '{ref}' on {env}")
    return result


def resolve_reference(reference: str, api, env: Optional[str]) -> Match:
    return categorize(reference, api) or lookup_by_name(reference, api, env)


def resolve_references(
    references: Iterable[str],
    api,
    env: Optional[str] = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> Tuple[List[Entity], List[Notification]]:
    """Resolve a batch of references, de-duplicated by (kind, name), first wins."""
    # "#" lines are headings/notes from `rally supply calc` output
    refs = [r for r in (clean_reference(x) for x in references) if r and not r.startswith("#")]
    results = run_concurrently(lambda r: resolve_reference(r, api, env), refs, max_workers)

    entities: List[Entity] = []
    notifications: List[Notification] = []
    seen = set()
    for result in results:
        if isinstance(result, Missing):
            LOG.warning("[warn] Could not resolve '%s': %s", result.reference, result.reason)
            notifications.append(Notification("missing", f"{result.reference}: {result.reason}", result.reference))
            continue
        entity = result.entity
        key = (type(entity).__name__, entity.name)
        if key in seen:
            LOG.trace("[trace] Skipping duplicate reference '%s'", result.reference)
            continue
        seen.add(key)
        LOG.trace("[trace] '%s' -> %s %s", result.reference, entity.label, entity.name)
        entities.append(entity)
    return entities, notifications
