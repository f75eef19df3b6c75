"""
Configuration for the rally tools.

Config is a JSON file, by default ~/.rallyconfig (override with RALLY_CONFIG or --config):

    {
      "api": {
        "DEV":  {"url": "https://dev.rally.example/api",  "key": "..."},
        "PROD": {"url": "https://prod.rally.example/api", "key": "..."}
      },
      "defaultEnv": "DEV",
      "protectedEnvs": ["UAT", "PROD"],
      "verifyTls": true,
      "timeout": 30,
      "maxWorkers": 8,
      "chunkSize": 50,
      "color": true
    }

Environment variables win over the file:
  RALLY_API_URL_<ENV>, RALLY_API_KEY_<ENV>  - per-environment url/key
  RALLY_VERIFY_TLS                           - "1"/"true"/"yes"/"on" to verify certificates
  RALLY_MAX_WORKERS                          - concurrency cap for remote calls
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from . import rally_logging  # noqa: F401  (registers Logger.trace)
from .errors import AbortError, UnconfiguredEnvError

LOG = logging.getLogger("rally_config")

KNOWN_ENVS = ("LOCAL", "DEV", "UAT", "QA", "PROD")
DEFAULT_PROTECTED_ENVS = ("UAT", "PROD")
TRUTHY = {"1", "true", "yes", "on"}


def default_config_path() -> str:
    return os.getenv("RALLY_CONFIG", os.path.expanduser("~/.rallyconfig"))


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in TRUTHY


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        LOG.warning("[warn] Ignoring %s=%r (not an integer)", name, raw)
        return default


@dataclass
class EnvConfig:
    url: str
    key: str


@dataclass
class RallyConfig:
    api: Dict[str, EnvConfig] = field(default_factory=dict)
    default_env: Optional[str] = None
    protected_envs: Set[str] = field(default_factory=lambda: set(DEFAULT_PROTECTED_ENVS))
    verify_tls: bool = True
    timeout: int = 30
    max_workers: int = 8
    chunk_size: int = 50
    color: bool = True
    path: Optional[str] = None
    has_config: bool = False

    def env(self, name: Optional[str]) -> EnvConfig:
        if not name:
            raise AbortError("No env supplied")
        cfg = self.api.get(name)
        if cfg is None or not cfg.url:
            raise UnconfiguredEnvError(name)
        return cfg

    def is_protected(self, env: str) -> bool:
        return env in self.protected_envs

    def env_names(self) -> List[str]:
        names = list(KNOWN_ENVS)
        names.extend(sorted(n for n in self.api if n not in KNOWN_ENVS))
        return names


def _parse_api_block(raw: Any) -> Dict[str, EnvConfig]:
    out: Dict[str, EnvConfig] = {}
    if not isinstance(raw, dict):
        return out
    for env, entry in raw.items():
        if not isinstance(entry, dict):
            LOG.warning("[warn] Config api.%s is not an object; skipping", env)
            continue
        out[str(env)] = EnvConfig(url=str(entry.get("url") or ""), key=str(entry.get("key") or ""))
    return out


def config_from_dict(data: Dict[str, Any], path: Optional[str] = None) -> RallyConfig:
    protected = data.get("protectedEnvs")
    cfg = RallyConfig(
        api=_parse_api_block(data.get("api")),
        default_env=data.get("defaultEnv") or None,
        protected_envs=set(protected) if isinstance(protected, list) else set(DEFAULT_PROTECTED_ENVS),
        verify_tls=bool(data.get("verifyTls", True)),
        timeout=int(data.get("timeout", 30)),
        max_workers=int(data.get("maxWorkers", 8)),
        chunk_size=int(data.get("chunkSize", 50)),
        color=bool(data.get("color", True)),
        path=path,
        has_config=True,
    )
    return cfg


def _apply_env_overrides(cfg: RallyConfig) -> RallyConfig:
    for env in set(KNOWN_ENVS) | set(cfg.api):
        url = os.getenv(f"RALLY_API_URL_{env}")
        key = os.getenv(f"RALLY_API_KEY_{env}")
        if url is None and key is None:
            continue
        current = cfg.api.get(env) or EnvConfig(url="", key="")
        cfg.api[env] = EnvConfig(url=url if url is not None else current.url,
                                 key=key if key is not None else current.key)
    cfg.verify_tls = _env_flag("RALLY_VERIFY_TLS", cfg.verify_tls)
    cfg.max_workers = max(1, _env_int("RALLY_MAX_WORKERS", cfg.max_workers))
    return cfg


def load_config(path: Optional[str] = None) -> RallyConfig:
    """Load the JSON config (missing file -> empty config) and apply env overrides."""
    path = os.path.expanduser(path) if path else default_config_path()
    if not os.path.exists(path):
        LOG.trace("[trace] No config file at %s; using defaults", path)
        return _apply_env_overrides(RallyConfig(path=path))
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise AbortError(f"Failed to read config {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise AbortError(f"Config {path} is not a JSON object")
    return _apply_env_overrides(config_from_dict(data, path=path))
