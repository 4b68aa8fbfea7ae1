# buildbot/config.py
# -*- coding: utf-8 -*-
"""
Build bot configuration loader

Features:
- Read YAML/JSON config from the first existing candidate (explicit path,
  BUILDBOT_CONFIG, cwd, user config dir)
- Merge with authoritative DEFAULTS, normalize paths and coerce basic types
- Environment overrides for the workspace root and the upload target
- Validate structure and types, warn or raise ConfigError (fatal=True)
- Return an explicit Config value; callers pass it to every component
"""

from __future__ import annotations

import os
import json
import logging
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml

from buildbot.errors import ConfigError

logger = logging.getLogger("buildbot.config")

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "root": ".",
    "clean_on_start": True,
    "projects_file": None,  # None -> bundled projects.yaml
    "logging": {
        "level": "INFO",
        "file_level": "DEBUG",
        "color": None,  # None -> only when the console is a terminal
        "format": "[%(asctime)s] [%(levelname)s] [%(buildbot_module)s] %(message)s",
        "datefmt": "%H:%M:%S",
        "module_levels": {},
    },
    "http": {
        "timeout": 60,
        "user_agent": "lua-buildbot/0.3",
    },
    "tools": {
        "tar": "tar",
        "unzip": "unzip",
        "gunzip": "gunzip",
    },
    "toolchain": {
        "root": None,  # explicit path to SetEnv.Cmd (or its Bin directory)
        "arguments": ["/release", "/x86"],
        "sdk_versions": ["v7.1", "v7.0A", "v7.0"],
    },
    "upload": {
        "target": None,  # "host:/path"; None disables upload
        "command": ["scp"],
    },
    "vm": {
        "command": ["VBoxHeadless", "-startvm", "Lua build bot"],
        "shutdown_command": ["shutdown", "-s", "-t", "0"],
    },
}

ENV_CONFIG = "BUILDBOT_CONFIG"
ENV_ROOT = "BUILDBOT_ROOT"
ENV_UPLOAD = "BUILDBOT_UPLOAD_TARGET"


# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    path: Optional[Path] = None

    def get(self, path: str, default: Any = None) -> Any:
        """Dot-separated getter for merged config."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)

    @property
    def root(self) -> Path:
        return Path(self.merged["root"])

    @property
    def clean_on_start(self) -> bool:
        return bool(self.merged.get("clean_on_start", True))

    @property
    def toolchain_root(self) -> Optional[str]:
        return self.get("toolchain.root")

    @property
    def upload_target(self) -> Optional[str]:
        return self.get("upload.target") or None

    @property
    def projects_file(self) -> Optional[str]:
        return self.merged.get("projects_file")


# ----------------------------
# Utilities
# ----------------------------
def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(str(val))))


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res


def _find_candidates(explicit: Optional[str] = None) -> List[Path]:
    candidates: List[Path] = []
    env = os.environ.get(ENV_CONFIG)
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "buildbot.yaml",
        Path.cwd() / "buildbot.yml",
        Path.cwd() / "buildbot.json",
        Path.home() / ".config" / "buildbot" / "config.yaml",
    ])
    return candidates


def _load_file(path: Path) -> Dict[str, Any]:
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(txt)
        else:
            data = json.loads(txt)
    except (yaml.YAMLError, ValueError) as e:
        raise ConfigError(f"cannot parse config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping at top level")
    return data


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    out = deepcopy(cfg)
    if os.environ.get(ENV_ROOT):
        out["root"] = os.environ[ENV_ROOT]
    if ENV_UPLOAD in os.environ:
        out.setdefault("upload", {})["target"] = os.environ[ENV_UPLOAD] or None
    return out


def _normalize_and_coerce(cfg: Dict[str, Any], base_dir: Path) -> Dict[str, Any]:
    """Resolve paths relative to the config file and coerce basic types."""
    out = deepcopy(cfg)
    root = out.get("root") or "."
    if not os.path.isabs(os.path.expanduser(str(root))):
        root = str(base_dir / root)
    out["root"] = _expand_path(root)
    if out.get("projects_file"):
        pf = os.path.expanduser(str(out["projects_file"]))
        out["projects_file"] = _expand_path(pf if os.path.isabs(pf) else str(base_dir / pf))
    tc = out.get("toolchain")
    if isinstance(tc, dict) and tc.get("root"):
        tc["root"] = _expand_path(tc["root"])
    out["clean_on_start"] = bool(out.get("clean_on_start", True))
    http = out.get("http")
    if isinstance(http, dict) and "timeout" in http:
        try:
            http["timeout"] = int(http["timeout"])
        except (TypeError, ValueError):
            logger.debug("config: http.timeout is not an integer: %r", http["timeout"])
    return out


def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list)."""
    warnings: List[str] = []
    for k in cfg.keys():
        if k not in DEFAULTS:
            warnings.append(f"Unknown top-level config key: {k}")
    for section in ("logging", "http", "tools", "toolchain", "upload", "vm"):
        if not isinstance(cfg.get(section), dict):
            warnings.append(f"{section} must be a mapping")
    timeout = cfg.get("http", {}).get("timeout") if isinstance(cfg.get("http"), dict) else None
    if not isinstance(timeout, int) or timeout < 1:
        warnings.append("http.timeout must be integer >= 1")
    target = cfg.get("upload", {}).get("target") if isinstance(cfg.get("upload"), dict) else None
    if target is not None and (not isinstance(target, str) or ":" not in target):
        warnings.append("upload.target must be a 'host:path' string or null")
    for key in ("upload", "vm"):
        section = cfg.get(key)
        if isinstance(section, dict):
            for name, value in section.items():
                if name.endswith("command") and not isinstance(value, list):
                    warnings.append(f"{key}.{name} must be a list of arguments")
    args = cfg.get("toolchain", {}).get("arguments") if isinstance(cfg.get("toolchain"), dict) else None
    if not isinstance(args, list):
        warnings.append("toolchain.arguments must be a list")
    return (len(warnings) == 0, warnings)


# ----------------------------
# Loading
# ----------------------------
def find_config_path(explicit: Optional[str] = None) -> Optional[Path]:
    if explicit and not Path(explicit).exists():
        raise ConfigError(f"config file not found: {explicit}")
    for p in _find_candidates(explicit):
        if p.exists():
            return p
    return None


def load(explicit_path: Optional[str] = None, fatal: bool = False,
         overrides: Optional[Dict[str, Any]] = None) -> Config:
    """
    Load and merge config. If fatal=True then structural validation failures raise.
    overrides (e.g. from the command line) are merged last.
    """
    cfg_path = find_config_path(explicit_path)
    raw: Dict[str, Any] = {}
    base_dir = Path.cwd()
    if cfg_path:
        raw = _load_file(cfg_path)
        base_dir = cfg_path.resolve().parent
    merged = _apply_env_overrides(_deep_merge(DEFAULTS, raw))
    if overrides:
        merged = _deep_merge(merged, overrides)
    normalized = _normalize_and_coerce(merged, base_dir)
    ok, issues = _validate_structure(normalized)
    if not ok:
        msg = f"config: validation issues: {issues}"
        if fatal:
            raise ConfigError(msg)
        logger.warning(msg)
    logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
    return Config(raw=raw, merged=normalized, path=cfg_path)
