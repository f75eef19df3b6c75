#!/usr/bin/env python3
"""
rally - supply chain tooling for Rally rules and presets.

  rally                                        version banner + API access per env
  rally supply calc <start|@> [stop] -e DEV    compute a chain by walking the rule graph
  rally supply make [ref ...] [-f FILE] -e DEV build a chain from explicit references
        ... --to PROD [--to QA]                 sync the chain to each env
        ... --diff PROD [--ignore-same]         compare preset code against env
  rally preset list -e DEV
  rally preset upload <ref ...> -e DEV          push local/remote presets to env
  rally preset diff <ref ...> -e DEV            unified diff of preset code against env
  rally preset grab <ref ...> -e DEV [--full]   write metadata (and code) into the local silo
  rally rule list -e DEV

References are composite keys (R-DEV-55: Ingest), silo paths
(ProjectX/silo-rules/Ingest.json) or bare names. `-` reads references from stdin, so
the output of `rally supply calc` can be piped into `rally supply make -`.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Iterable, List, Optional

from rally_tools import __version__
from rally_tools.helpers.diff_core import diff_chain, diff_presets, print_diff
from rally_tools.helpers.errors import AbortError, NotFoundError, TransportError
from rally_tools.helpers.identifiers import resolve_references
from rally_tools.helpers.rally_api import RallyAPI
from rally_tools.helpers.rally_config import RallyConfig, load_config
from rally_tools.helpers.rally_entities import Preset, grab_preset, list_presets, list_rules
from rally_tools.helpers.rally_logging import (
    ANSI_BLUE,
    ANSI_GREEN,
    ANSI_RED,
    ANSI_YELLOW,
    _setup_logger,
    paint,
    set_color,
    step_header,
)
from rally_tools.helpers.supply_chain_core import SupplyChain, calculate_supply_chain
from rally_tools.helpers.sync_core import check_sync_target, check_target_env, sync_to

LOG = logging.getLogger("rally")

ACCESS_LABELS = {200: "OK", 401: "bad api key", 403: "forbidden"}


# ---------------------------
# Helpers
# ---------------------------

def _source_env(args, cfg: RallyConfig) -> str:
    env = getattr(args, "env", None) or cfg.default_env
    if not env:
        raise AbortError("No env supplied (use -e/--env or set defaultEnv in the config)")
    return env


def _read_references(refs: Iterable[str], files: Iterable[str]) -> List[str]:
    out: List[str] = []
    for ref in refs:
        if ref == "-":
            out.extend(sys.stdin.read().splitlines())
        else:
            out.append(ref)
    for path in files:
        try:
            with open(path, "r", encoding="utf-8") as f:
                out.extend(f.read().splitlines())
        except OSError as exc:
            raise AbortError(f"Could not read reference file {path}: {exc}") from exc
    return out


def _protected(args, cfg: RallyConfig):
    return () if getattr(args, "no_protect", False) else cfg.protected_envs


def _check_targets(args, cfg: RallyConfig) -> None:
    for env in getattr(args, "to", None) or []:
        check_target_env(env, _protected(args, cfg))


def _print_entity_lines(entities) -> None:
    for e in entities:
        print(f"{paint(e.label.rjust(15), ANSI_GREEN)}: {paint(e.name, ANSI_BLUE)}")


def _post_actions(args, cfg: RallyConfig, api: RallyAPI, chain: SupplyChain) -> int:
    """Sync to every --to env, else diff against --diff, else just log the chain."""
    targets = getattr(args, "to", None) or []
    if targets:
        for env in targets:
            check_sync_target(chain, env, _protected(args, cfg))
        chain.download_preset_code(api, cfg.max_workers)
        chain.log()
        failed = False
        for env in targets:
            step_header(f"Sync to {env}", {"rules": len(chain.rules), "presets": len(chain.presets)})
            report = sync_to(chain, env, api, max_workers=cfg.max_workers,
                             protected_envs=_protected(args, cfg),
                             stop_on_phase1_errors=getattr(args, "stop_on_errors", False))
            report.log()
            failed = failed or report.failed
        return 1 if failed else 0

    diff_env = getattr(args, "diff", None)
    if diff_env:
        results = diff_chain(chain, diff_env, api, cfg.max_workers)
        print_diff(results, ignore_same=getattr(args, "ignore_same", False),
                   show_lines=getattr(args, "show_lines", False))
        return 1 if any(r.error for r in results) else 0

    chain.log()
    return 0


def _resolve_chain(args, cfg: RallyConfig, api: RallyAPI, env: Optional[str]) -> SupplyChain:
    references = _read_references(getattr(args, "refs", []), getattr(args, "file", []))
    if not references:
        raise AbortError("No references supplied")
    entities, notifications = resolve_references(references, api, env, cfg.max_workers)
    chain = SupplyChain.assemble(entities, notifications)
    chain.resolve_reference_names(api)
    if not chain.rules and not chain.presets:
        chain.log()
        raise AbortError("None of the references could be resolved")
    return chain


# ---------------------------
# Commands
# ---------------------------

def cmd_status(args, cfg: RallyConfig, api: RallyAPI) -> int:
    step_header(f"rally-supply-tools {__version__}", {
        "config": cfg.path or "-",
        "default env": cfg.default_env or "-",
        "protected": ", ".join(sorted(cfg.protected_envs)) or "-",
    })
    if not cfg.has_config:
        print(paint(f"[warn] No config file found at {cfg.path}", ANSI_YELLOW))
    for env in cfg.env_names():
        if env == "LOCAL":
            continue
        if env not in cfg.api or not cfg.api[env].url:
            status = paint("not configured", ANSI_YELLOW)
        else:
            try:
                code = api.test_access(env)
            except TransportError:
                status = paint("unreachable", ANSI_RED)
            else:
                label = ACCESS_LABELS.get(code, f"HTTP {code}")
                status = paint(label, ANSI_GREEN if code == 200 else ANSI_RED)
        print(f"  {env.ljust(8)} {status}")
    return 0


def cmd_supply_calc(args, cfg: RallyConfig, api: RallyAPI) -> int:
    env = _source_env(args, cfg)
    _check_targets(args, cfg)
    chain = calculate_supply_chain(api, env, args.start, args.stop)
    return _post_actions(args, cfg, api, chain)


def cmd_supply_make(args, cfg: RallyConfig, api: RallyAPI) -> int:
    _check_targets(args, cfg)
    chain = _resolve_chain(args, cfg, api, _source_env(args, cfg))
    return _post_actions(args, cfg, api, chain)


def cmd_preset_list(args, cfg: RallyConfig, api: RallyAPI) -> int:
    env = _source_env(args, cfg)
    presets = list_presets(api, env)
    print(paint(f"# Presets on {env}: {len(presets)}", ANSI_YELLOW))
    _print_entity_lines(presets)
    return 0


def cmd_rule_list(args, cfg: RallyConfig, api: RallyAPI) -> int:
    env = _source_env(args, cfg)
    rules = list_rules(api, env)
    print(paint(f"# Rules on {env}: {len(rules)}", ANSI_YELLOW))
    _print_entity_lines(rules)
    return 0


def _preset_chain(args, cfg: RallyConfig, api: RallyAPI, lookup_env: Optional[str] = None) -> SupplyChain:
    chain = _resolve_chain(args, cfg, api, lookup_env or getattr(args, "source", None) or cfg.default_env)
    if chain.rules:
        LOG.warning("[warn] Ignoring %d rule reference(s); preset commands only handle presets", len(chain.rules))
        chain.rules.clear()
    if not chain.presets:
        raise AbortError("No presets among the supplied references")
    return chain


def cmd_preset_upload(args, cfg: RallyConfig, api: RallyAPI) -> int:
    target = _source_env(args, cfg)
    check_target_env(target, _protected(args, cfg))
    chain = _preset_chain(args, cfg, api)
    report = sync_to(chain, target, api, max_workers=cfg.max_workers, protected_envs=_protected(args, cfg))
    report.log()
    return 1 if report.failed else 0


def cmd_preset_diff(args, cfg: RallyConfig, api: RallyAPI) -> int:
    target = _source_env(args, cfg)
    chain = _preset_chain(args, cfg, api)
    presets: List[Preset] = list(chain.presets.values())
    results = diff_presets(presets, target, api, cfg.max_workers)
    print_diff(results, ignore_same=args.ignore_same, show_lines=True)
    return 1 if any(r.error for r in results) else 0


def cmd_preset_grab(args, cfg: RallyConfig, api: RallyAPI) -> int:
    env = _source_env(args, cfg)
    chain = _preset_chain(args, cfg, api, lookup_env=env)
    failed = False
    for preset in chain.presets.values():
        try:
            written = grab_preset(api, env, preset, silo_root=args.silo, full=args.full, ext=args.ext)
        except NotFoundError as exc:
            print(paint(f"[error] {exc}", ANSI_RED), file=sys.stderr)
            failed = True
            continue
        for path in written:
            print(f"{paint(preset.name.rjust(15), ANSI_GREEN)}: {path}")
    return 1 if failed else 0


# ---------------------------
# Parser
# ---------------------------

def _common_options() -> argparse.ArgumentParser:
    # SUPPRESS keeps sub-command defaults from clobbering values given before the sub-command
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=argparse.SUPPRESS, help="Path to the JSON config (default ~/.rallyconfig or $RALLY_CONFIG)")
    common.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS, help="Enable TRACE logging")
    common.add_argument("--no-protect", action="store_true", default=argparse.SUPPRESS, help="Allow writes to protected environments")
    common.add_argument("--no-color", action="store_true", default=argparse.SUPPRESS, help="Disable ANSI colors")
    common.add_argument("--max-workers", type=int, default=argparse.SUPPRESS, help="Concurrency cap for remote calls")
    common.add_argument("-e", "--env", default=argparse.SUPPRESS, help="Environment to work against (default: defaultEnv)")
    return common


def _add_reference_inputs(p: argparse.ArgumentParser) -> None:
    p.add_argument("refs", nargs="*", help="References; '-' reads them from stdin")
    p.add_argument("-f", "--file", action="append", default=[], help="File with one reference per line (repeatable)")


def _add_post_actions(p: argparse.ArgumentParser) -> None:
    p.add_argument("--to", action="append", default=[], metavar="ENV", help="Sync the chain to ENV (repeatable)")
    p.add_argument("--diff", metavar="ENV", help="Diff preset code of the chain against ENV")
    p.add_argument("--ignore-same", action="store_true", help="With --diff, hide identical presets")
    p.add_argument("--show-lines", action="store_true", help="With --diff, print a unified diff per differing preset")
    p.add_argument("--stop-on-errors", action="store_true", help="With --to, skip wiring when any entity failed to sync")


def build_parser() -> argparse.ArgumentParser:
    common = _common_options()
    parser = argparse.ArgumentParser(prog="rally", parents=[common],
                                     description="Calculate Rally supply chains and move them between environments.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.set_defaults(handler=cmd_status)
    sub = parser.add_subparsers(dest="command")

    supply = sub.add_parser("supply", help="Supply chain operations")
    supply_sub = supply.add_subparsers(dest="action", required=True)
    calc = supply_sub.add_parser("calc", parents=[common], help="Walk the rule graph from a start rule (or @ for the whole silo)")
    calc.add_argument("start", help="Start rule name (exact or contained), or @ for every rule and preset")
    calc.add_argument("stop", nargs="?", help="Stop rule: included in the chain but not expanded")
    _add_post_actions(calc)
    calc.set_defaults(handler=cmd_supply_calc)
    make = supply_sub.add_parser("make", parents=[common], help="Build a chain from explicit references")
    _add_reference_inputs(make)
    _add_post_actions(make)
    make.set_defaults(handler=cmd_supply_make)

    preset = sub.add_parser("preset", help="Preset operations")
    preset_sub = preset.add_subparsers(dest="action", required=True)
    plist = preset_sub.add_parser("list", parents=[common], help="List presets on an environment")
    plist.set_defaults(handler=cmd_preset_list)
    upload = preset_sub.add_parser("upload", parents=[common], help="Create/update presets on an environment")
    _add_reference_inputs(upload)
    upload.add_argument("--from", dest="source", metavar="ENV", help="Env for bare-name lookups (default: defaultEnv)")
    upload.set_defaults(handler=cmd_preset_upload)
    pdiff = preset_sub.add_parser("diff", parents=[common], help="Diff preset code against an environment")
    _add_reference_inputs(pdiff)
    pdiff.add_argument("--from", dest="source", metavar="ENV", help="Env for bare-name lookups (default: defaultEnv)")
    pdiff.add_argument("--ignore-same", action="store_true", help="Hide identical presets")
    pdiff.set_defaults(handler=cmd_preset_diff)
    grab = preset_sub.add_parser("grab", parents=[common], help="Write preset metadata (and code with --full) from an env into the local silo")
    _add_reference_inputs(grab)
    grab.add_argument("--full", action="store_true", help="Also download the code into silo-presets with a header block")
    grab.add_argument("--silo", metavar="DIR", help="Silo root for presets without a local file (default: current directory)")
    grab.add_argument("--ext", help="File extension for presets without a local file (default: txt)")
    grab.set_defaults(handler=cmd_preset_grab)

    rule = sub.add_parser("rule", help="Rule operations")
    rule_sub = rule.add_subparsers(dest="action", required=True)
    rlist = rule_sub.add_parser("list", parents=[common], help="List rules on an environment")
    rlist.set_defaults(handler=cmd_rule_list)
    return parser


def main(argv: Optional[List[str]] = None, api: Optional[RallyAPI] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logger(getattr(args, "verbose", False))

    try:
        cfg = load_config(getattr(args, "config", None))
        if getattr(args, "no_color", False) or not cfg.color:
            set_color(False)
        if getattr(args, "max_workers", None):
            cfg.max_workers = max(1, args.max_workers)
        api = api or RallyAPI(cfg)
        return args.handler(args, cfg, api)
    except AbortError as exc:
        print(f"CLI Aborted: {exc}", file=sys.stderr)
        return 2
    except NotFoundError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 3
    except TransportError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 4


if __name__ == "__main__":
    sys.exit(main())
