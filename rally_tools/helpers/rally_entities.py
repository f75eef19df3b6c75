"""
Rules and Presets, in memory and on the Rally API.

Identity across environments:
  • `name` is the portable key. The same logical rule is "Ingest" on DEV and on PROD.
  • `local_id` only means something inside `environment`. DEV rule 55 and PROD rule 55
    are unrelated. Never compare ids across environments.

Relationships read from the API arrive as `{id, type}` of the environment they were read
from. EntityIndex fills in the target names so that everything downstream (traversal,
sync, diff) can work strictly by name.

Local silo files:
  <sub>/silo-presets/<name>.<ext>   - preset code with an embedded RALLY HEADER block
  <sub>/silo-rules/<name>.json      - rule with relationships by name
  <sub>/silo-metadata/<name>.json   - preset metadata sidecar (code read from silo-presets)
"""

from __future__ import annotations

import glob
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from . import rally_logging  # noqa: F401  (registers Logger.trace)
from .errors import NotFoundError

LOG = logging.getLogger("rally_entities")

RULES_PATH = "/workflowRules"
PRESETS_PATH = "/presets"
RULE_TYPE = "workflowRules"
PRESET_TYPE = "presets"
PROVIDER_TYPE = "providerTypes"

# Preset header block, e.g. in an XML preset:
#   <!-- >>> RALLY HEADER BEGIN <<< -->
#   <!-- [RALLY:] name=colorgrade -->
#   <!-- [RALLY:] provider=SdviEvaluate -->
#   <!-- >>> RALLY HEADER END <<< -->
HEADER_BEGIN_RX = re.compile(r"RALLY\s+HEADER\s+BEGIN")
HEADER_END_RX = re.compile(r"RALLY\s+HEADER\s+END")
KV_LINE = re.compile(r"\[RALLY:\]\s+(?P<k>[A-Za-z0-9_]+)=(?P<v>.*?)\s*(?:-->|\*/|''')?\s*$")


@dataclass(frozen=True)
class Identity:
    name: str
    local_id: Optional[str] = None
    environment: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.environment is None

    def label(self, prefix: str) -> str:
        if self.is_local:
            return f"{prefix}-LOCAL"
        return f"{prefix}-{self.environment}-{self.local_id}"


@dataclass
class Reference:
    """Target of a relationship. `source_id` is only valid in the env the owner was read from."""
    kind: str
    name: Optional[str] = None
    source_id: Optional[str] = None


def _ref_from_data(data: Any, kind: str) -> Optional[Reference]:
    if not isinstance(data, dict):
        return None
    rid = data.get("id")
    name = data.get("name") or (data.get("attributes") or {}).get("name")
    if rid is None and not name:
        return None
    return Reference(kind, name=name, source_id=str(rid) if rid is not None else None)


def _named_ref(value: Any, kind: str) -> Optional[Reference]:
    if isinstance(value, dict):
        value = value.get("name")
    if not value:
        return None
    return Reference(kind, name=str(value))


def _coerce_header_value(v: str) -> str:
    s = (v or "").strip()
    if (s.startswith('"') and s.endswith('"')) or (s.startswith("'") and s.endswith("'")):
        return s[1:-1]
    return s


def split_header(text: str) -> Tuple[Dict[str, str], str]:
    """Split preset file text into (header key/values, code without the header block)."""
    header: Dict[str, str] = {}
    body: List[str] = []
    in_header = False
    seen = False
    for line in text.splitlines(keepends=True):
        if not seen and HEADER_BEGIN_RX.search(line):
            in_header = True
            seen = True
            continue
        if in_header:
            if HEADER_END_RX.search(line):
                in_header = False
                continue
            m = KV_LINE.search(line.rstrip("\r\n"))
            if m:
                header[m.group("k")] = _coerce_header_value(m.group("v"))
            continue
        body.append(line)
    return header, "".join(body)


def normalize_metadata(included: Optional[Iterable[Dict[str, Any]]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for md in included or []:
        if md.get("type") != "metadata":
            continue
        attrs = md.get("attributes") or {}
        out[attrs.get("usage")] = attrs.get("metadata")
    return out


# ---------------------------
# In-memory representation
# ---------------------------

@dataclass
class Preset:
    identity: Identity
    provider_type: Optional[str] = None
    ext: Optional[str] = None
    code: Optional[str] = None
    sub_project: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    path: Optional[str] = None

    @property
    def name(self) -> str:
        return self.identity.name

    @property
    def id(self) -> Optional[str]:
        return self.identity.local_id

    @property
    def environment(self) -> Optional[str]:
        return self.identity.environment

    @property
    def label(self) -> str:
        return self.identity.label("P")

    @classmethod
    def from_resource(cls, data: Dict[str, Any], env: str,
                      included: Optional[List[Dict[str, Any]]] = None) -> "Preset":
        attrs = data.get("attributes") or {}
        rels = data.get("relationships") or {}
        provider = ((rels.get("providerType") or {}).get("data") or {}).get("name")
        return cls(
            identity=Identity(str(attrs.get("name") or ""), str(data.get("id")), env),
            provider_type=provider or attrs.get("providerTypeName"),
            metadata=normalize_metadata(included),
        )

    @classmethod
    def from_file(cls, path: str, sub_project: Optional[str] = None) -> "Preset":
        try:
            with open(path, "r", encoding="utf-8") as f:
                text = f.read()
        except (OSError, UnicodeDecodeError) as exc:
            raise NotFoundError("preset file", path) from exc
        header, code = split_header(text)
        stem, suffix = os.path.splitext(os.path.basename(path))
        return cls(
            identity=Identity(header.get("name") or stem),
            provider_type=header.get("provider") or None,
            ext=header.get("ext") or suffix.lstrip(".") or None,
            code=code,
            sub_project=sub_project,
            path=path,
        )

    @classmethod
    def from_metadata(cls, path: str, sub_project: Optional[str] = None) -> "Preset":
        """Load a preset through its silo-metadata sidecar."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise NotFoundError("metadata sidecar", path) from exc
        if not isinstance(data, dict):
            raise NotFoundError("metadata sidecar", path)

        stem = os.path.splitext(os.path.basename(path))[0]
        name = data.get("name") or stem
        silo_root = os.path.dirname(os.path.dirname(path))
        ext = data.get("ext")
        candidates: List[str] = []
        # the code file is named after the sidecar, or after the preset when they differ
        for base in dict.fromkeys((stem, name)):
            if ext:
                candidates.append(os.path.join(silo_root, "silo-presets", f"{base}.{ext}"))
            else:
                candidates.extend(sorted(glob.glob(
                    os.path.join(glob.escape(silo_root), "silo-presets", f"{glob.escape(base)}.*"))))
        code_path = next((c for c in candidates if os.path.isfile(c)), None)
        if code_path is None:
            raise NotFoundError("preset code file", name)

        preset = cls.from_file(code_path, sub_project)
        preset.metadata = dict(data.get("metadata") or {})
        if not preset.provider_type and data.get("providerType"):
            preset.provider_type = data.get("providerType")
        return preset

    def load_code(self, api) -> str:
        if self.code is None and not self.identity.is_local:
            self.code = download_preset_code(api, self.environment, self.id)
        return self.code or ""


@dataclass
class Rule:
    identity: Identity
    description: str = ""
    preset: Optional[Reference] = None
    pass_next: Optional[Reference] = None
    error_next: Optional[Reference] = None
    dynamic_nexts: List[Tuple[str, Reference]] = field(default_factory=list)
    sub_project: Optional[str] = None
    path: Optional[str] = None

    @property
    def name(self) -> str:
        return self.identity.name

    @property
    def id(self) -> Optional[str]:
        return self.identity.local_id

    @property
    def environment(self) -> Optional[str]:
        return self.identity.environment

    @property
    def label(self) -> str:
        return self.identity.label("R")

    def next_references(self) -> List[Tuple[str, Reference]]:
        """Outgoing rule edges in traversal order: passNext, errorNext, then dynamicNexts."""
        out: List[Tuple[str, Reference]] = []
        if self.pass_next:
            out.append(("passNext", self.pass_next))
        if self.error_next:
            out.append(("errorNext", self.error_next))
        for transition, ref in self.dynamic_nexts:
            out.append((f"dynamicNexts[{transition}]", ref))
        return out

    def references(self) -> List[Tuple[str, Reference]]:
        out = [("preset", self.preset)] if self.preset else []
        return out + self.next_references()

    def resolve_names(self, index: "EntityIndex") -> None:
        for _, ref in self.references():
            if ref.name is None and ref.source_id is not None:
                ref.name = index.name_for(ref.kind, ref.source_id)

    @classmethod
    def from_resource(cls, data: Dict[str, Any], env: str) -> "Rule":
        attrs = data.get("attributes") or {}
        rels = data.get("relationships") or {}

        def one(key: str, kind: str) -> Optional[Reference]:
            return _ref_from_data((rels.get(key) or {}).get("data"), kind)

        dynamic: List[Tuple[str, Reference]] = []
        for entry in (rels.get("dynamicNexts") or {}).get("data") or []:
            ref = _ref_from_data(entry, RULE_TYPE)
            if ref is None:
                continue
            transition = str((entry.get("meta") or {}).get("transition") or "")
            dynamic.append((transition, ref))

        return cls(
            identity=Identity(str(attrs.get("name") or ""), str(data.get("id")), env),
            description=attrs.get("description") or "",
            preset=one("preset", PRESET_TYPE),
            pass_next=one("passNext", RULE_TYPE),
            error_next=one("errorNext", RULE_TYPE),
            dynamic_nexts=dynamic,
        )

    @classmethod
    def from_file(cls, path: str, sub_project: Optional[str] = None) -> "Rule":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise NotFoundError("rule file", path) from exc
        if not isinstance(data, dict):
            raise NotFoundError("rule file", path)

        dynamic: List[Tuple[str, Reference]] = []
        for entry in data.get("dynamicNexts") or []:
            if not isinstance(entry, dict):
                continue
            ref = _named_ref(entry.get("name"), RULE_TYPE)
            if ref is not None:
                dynamic.append((str(entry.get("transition") or ""), ref))

        return cls(
            identity=Identity(data.get("name") or os.path.splitext(os.path.basename(path))[0]),
            description=data.get("description") or "",
            preset=_named_ref(data.get("preset"), PRESET_TYPE),
            pass_next=_named_ref(data.get("passNext"), RULE_TYPE),
            error_next=_named_ref(data.get("errorNext"), RULE_TYPE),
            dynamic_nexts=dynamic,
            sub_project=sub_project,
            path=path,
        )


# ---------------------------
# Remote CRUD
# ---------------------------

def _find_resource_by_name(api, env: str, path: str, name: str) -> Optional[Dict[str, Any]]:
    items = api.page_through(env, path, query={"filter": f"name={name}"})
    for item in items:
        if (item.get("attributes") or {}).get("name") == name:
            return item
    return None


def fetch_rule_by_id(api, env: str, rule_id: str) -> Rule:
    doc = api.request(env, f"{RULES_PATH}/{rule_id}") or {}
    return Rule.from_resource(doc.get("data") or {}, env)


def fetch_preset_by_id(api, env: str, preset_id: str) -> Preset:
    doc = api.request(env, f"{PRESETS_PATH}/{preset_id}", query={"include": "metadata"}) or {}
    return Preset.from_resource(doc.get("data") or {}, env, doc.get("included"))


def find_rule_by_name(api, env: str, name: str) -> Optional[Rule]:
    item = _find_resource_by_name(api, env, RULES_PATH, name)
    return Rule.from_resource(item, env) if item else None


def find_preset_by_name(api, env: str, name: str) -> Optional[Preset]:
    item = _find_resource_by_name(api, env, PRESETS_PATH, name)
    return Preset.from_resource(item, env) if item else None


def list_rules(api, env: str) -> List[Rule]:
    return [Rule.from_resource(item, env) for item in api.page_through(env, RULES_PATH)]


def list_presets(api, env: str) -> List[Preset]:
    return [Preset.from_resource(item, env) for item in api.page_through(env, PRESETS_PATH)]


def download_preset_code(api, env: str, preset_id: str) -> str:
    return api.request(env, f"{PRESETS_PATH}/{preset_id}/artifacts/preset", text=True) or ""


def upload_preset_code(api, env: str, preset_id: str, code: str) -> None:
    api.request(env, f"{PRESETS_PATH}/{preset_id}/artifacts/preset", method="PUT", payload=code, text=True)


def _preset_payload(preset: Preset, preset_id: Optional[str] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {"type": PRESET_TYPE, "attributes": {"name": preset.name}}
    if preset_id is not None:
        data["id"] = preset_id
    if preset.provider_type:
        data["relationships"] = {
            "providerType": {"data": {"name": preset.provider_type, "type": PROVIDER_TYPE}}
        }
    return {"data": data}


def create_preset(api, env: str, preset: Preset) -> str:
    doc = api.request(env, PRESETS_PATH, method="POST", payload=_preset_payload(preset)) or {}
    return str((doc.get("data") or {}).get("id"))


def update_preset(api, env: str, preset_id: str, preset: Preset) -> None:
    api.request(env, f"{PRESETS_PATH}/{preset_id}", method="PATCH", payload=_preset_payload(preset, preset_id))


def create_bare_rule(api, env: str, name: str, description: str) -> str:
    payload = {"data": {"type": RULE_TYPE, "attributes": {"name": name, "description": description}}}
    doc = api.request(env, RULES_PATH, method="POST", payload=payload) or {}
    return str((doc.get("data") or {}).get("id"))


def update_rule_description(api, env: str, rule_id: str, description: str) -> None:
    payload = {"data": {"id": rule_id, "type": RULE_TYPE, "attributes": {"description": description}}}
    api.request(env, f"{RULES_PATH}/{rule_id}", method="PATCH", payload=payload)


def patch_rule_relationships(api, env: str, rule_id: str, relationships: Dict[str, Any]) -> None:
    payload = {"data": {"id": rule_id, "type": RULE_TYPE, "relationships": relationships}}
    api.request(env, f"{RULES_PATH}/{rule_id}", method="PATCH", payload=payload)


# ---------------------------
# Local silo writers
# ---------------------------

# comment open/close used for the header block, by file extension
HEADER_COMMENTS = {
    "xml": ("<!--", "-->"),
    "html": ("<!--", "-->"),
    "py": ("#", ""),
    "sh": ("#", ""),
    "yaml": ("#", ""),
    "yml": ("#", ""),
    "rb": ("#", ""),
}
DEFAULT_HEADER_COMMENT = ("/*", "*/")


def silo_root_of(path: Optional[str]) -> Optional[str]:
    """`ProjectX/silo-presets/a.xml` -> `ProjectX`."""
    if not path:
        return None
    return os.path.dirname(os.path.dirname(os.path.abspath(path)))


def render_header(preset: Preset) -> str:
    opener, closer = HEADER_COMMENTS.get((preset.ext or "").lower(), DEFAULT_HEADER_COMMENT)
    tail = f" {closer}" if closer else ""
    lines = [f"{opener} >>> RALLY HEADER BEGIN <<<{tail}", f"{opener} [RALLY:] name={preset.name}{tail}"]
    if preset.provider_type:
        lines.append(f"{opener} [RALLY:] provider={preset.provider_type}{tail}")
    if preset.ext:
        lines.append(f"{opener} [RALLY:] ext={preset.ext}{tail}")
    lines.append(f"{opener} >>> RALLY HEADER END <<<{tail}")
    return "\n".join(lines) + "\n"


def save_metadata_sidecar(preset: Preset, silo_root: str, stem: Optional[str] = None) -> str:
    path = os.path.join(silo_root, "silo-metadata", f"{stem or preset.name}.json")
    os.makedirs(os.path.dirname(path), exist_ok=True)
    data = {
        "name": preset.name,
        "ext": preset.ext,
        "providerType": preset.provider_type,
        "metadata": preset.metadata,
    }
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
        f.write("\n")
    return path


def save_preset_file(preset: Preset, path: str) -> str:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(render_header(preset))
        f.write(preset.code or "")
    return path


def grab_preset(api, env: str, preset: Preset, silo_root: Optional[str] = None,
                full: bool = False, ext: Optional[str] = None) -> List[str]:
    """Write env's metadata for `preset` into the silo; with full, the code file too.

    A local preset is matched on env by name and its own silo and file name are reused.
    Returns the paths written.
    """
    if preset.environment == env:
        remote_id = preset.id
    else:
        hit = find_preset_by_name(api, env, preset.name)
        if hit is None:
            raise NotFoundError("preset", preset.name, env)
        remote_id = hit.id
    remote = fetch_preset_by_id(api, env, remote_id)
    remote.ext = preset.ext or ext or remote.ext or "txt"

    root = silo_root or silo_root_of(preset.path) or "."
    stem = os.path.splitext(os.path.basename(preset.path))[0] if preset.path else remote.name
    written = [save_metadata_sidecar(remote, root, stem)]
    if full:
        remote.load_code(api)
        code_path = preset.path or os.path.join(root, "silo-presets", f"{stem}.{remote.ext}")
        written.append(save_preset_file(remote, code_path))
    LOG.info("[info] Grabbed preset '%s' from %s into %s", remote.name, env, root)
    return written


# ---------------------------
# Per-environment index
# ---------------------------

class EntityIndex:
    """Every rule and preset of one environment, keyed by id and by name."""

    def __init__(self, env: str, rules: Iterable[Rule], presets: Iterable[Preset]):
        self.env = env
        self.rules = list(rules)
        self.presets = list(presets)
        self._rules_by_id = {r.id: r for r in self.rules}
        self._presets_by_id = {p.id: p for p in self.presets}
        self._rules_by_name: Dict[str, Rule] = {}
        self._presets_by_name: Dict[str, Preset] = {}
        for rule in self.rules:
            if rule.name in self._rules_by_name:
                LOG.warning("[warn] Duplicate rule name '%s' on %s (ids %s, %s); using the first",
                            rule.name, env, self._rules_by_name[rule.name].id, rule.id)
                continue
            self._rules_by_name[rule.name] = rule
        for preset in self.presets:
            if preset.name in self._presets_by_name:
                LOG.warning("[warn] Duplicate preset name '%s' on %s (ids %s, %s); using the first",
                            preset.name, env, self._presets_by_name[preset.name].id, preset.id)
                continue
            self._presets_by_name[preset.name] = preset
        for rule in self.rules:
            rule.resolve_names(self)

    @classmethod
    def load(cls, api, env: str) -> "EntityIndex":
        presets = list_presets(api, env)
        rules = list_rules(api, env)
        LOG.info("[info] Indexed %d rule(s) and %d preset(s) on %s", len(rules), len(presets), env)
        return cls(env, rules, presets)

    def name_for(self, kind: str, source_id: str) -> Optional[str]:
        if kind == PRESET_TYPE:
            hit = self._presets_by_id.get(source_id)
        else:
            hit = self._rules_by_id.get(source_id)
        return hit.name if hit else None

    def rule_by_id(self, rule_id: str) -> Optional[Rule]:
        return self._rules_by_id.get(rule_id)

    def rule_by_name(self, name: Optional[str]) -> Optional[Rule]:
        return self._rules_by_name.get(name) if name else None

    def preset_by_id(self, preset_id: str) -> Optional[Preset]:
        return self._presets_by_id.get(preset_id)

    def preset_by_name(self, name: Optional[str]) -> Optional[Preset]:
        return self._presets_by_name.get(name) if name else None

    def find_rule(self, term: str) -> Optional[Rule]:
        """Exact name match first, then the first rule whose name contains term."""
        exact = self._rules_by_name.get(term)
        if exact is not None:
            return exact
        for rule in self.rules:
            if term in rule.name:
                LOG.trace("[trace] '%s' matched rule '%s' by substring", term, rule.name)
                return rule
        return None
