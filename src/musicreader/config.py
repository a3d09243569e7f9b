# src/musicreader/config.py
from __future__ import annotations
import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

log = logging.getLogger(__name__)

# Package root: .../src/musicreader
PKG_ROOT = Path(__file__).resolve().parent
DEFAULT_CFG_PATH = PKG_ROOT / "config.default.yaml"
USER_CFG_PATH = Path.home() / ".config" / "musicreader" / "config.yaml"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

def _safe_load(path: Path) -> Dict[str, Any]:
    try:
        if path.exists():
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
            if data is None:
                return {}
            if not isinstance(data, dict):
                log.warning("config: %s is not a mapping, ignored", path)
                return {}
            return data
    except (OSError, yaml.YAMLError) as e:
        # a broken user file must not take the core down
        log.warning("config: cannot read %s (%s), using defaults", path, e)
    return {}

def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out

def load_config(
    user_path: Optional[Union[str, Path]] = None,
    default_path: Optional[Union[str, Path]] = None,
) -> Dict[str, Any]:
    """
    Packaged defaults deep-merged with the user's overrides.
    Sections: playback, decode, export, logging.
    """
    dpath = Path(default_path) if default_path else DEFAULT_CFG_PATH
    upath = Path(user_path) if user_path else USER_CFG_PATH

    cfg = _deep_merge(_safe_load(dpath), _safe_load(upath))

    # minimal defaults if the packaged file is missing
    pb = cfg.setdefault("playback", {})
    pb.setdefault("tempo", 120.0)
    pb.setdefault("tick_interval", 0.01)
    pb.setdefault("loop", False)
    pb.setdefault("volume", 0.8)
    cfg.setdefault("decode", {}).setdefault("default_velocity", 80)
    cfg.setdefault("export", {}).setdefault("ticks_per_beat", 960)
    lg = cfg.setdefault("logging", {})
    lg.setdefault("level", "INFO")
    lg.setdefault("format", LOG_FORMAT)
    return cfg

def get_default_velocity(cfg: Dict[str, Any]) -> int:
    try:
        return max(1, min(127, int(cfg.get("decode", {}).get("default_velocity", 80))))
    except (TypeError, ValueError):
        return 80

def get_ticks_per_beat(cfg: Dict[str, Any]) -> int:
    try:
        return int(cfg.get("export", {}).get("ticks_per_beat", 960))
    except (TypeError, ValueError):
        return 960

def setup_logging(cfg: Dict[str, Any], verbose: bool = False):
    lg = cfg.get("logging", {})
    level = logging.DEBUG if verbose else getattr(logging, str(lg.get("level", "INFO")).upper(), logging.INFO)
    if logging.getLogger().handlers:
        logging.getLogger().setLevel(level)
        return
    logging.basicConfig(level=level, format=lg.get("format", LOG_FORMAT))
