# src/musicreader/persist.py
from __future__ import annotations
import json
from pathlib import Path
from typing import Union

import yaml

from .errors import MalformedDocument
from .model import Score

YAML_SUFFIXES = {".yaml", ".yml"}


def dumps(score: Score, fmt: str = "json") -> str:
    data = score.to_dict()
    if fmt == "json":
        return json.dumps(data, ensure_ascii=False, indent=2)
    if fmt == "yaml":
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
    raise ValueError(f"unknown format {fmt!r}")

def loads(text: str, fmt: str = "json") -> Score:
    try:
        if fmt == "json":
            data = json.loads(text)
        elif fmt == "yaml":
            data = yaml.safe_load(text)
        else:
            raise ValueError(f"unknown format {fmt!r}")
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise MalformedDocument(f"unreadable {fmt} score: {e}") from e
    return Score.from_dict(data)

def _fmt_for(path: Path) -> str:
    return "yaml" if path.suffix.lower() in YAML_SUFFIXES else "json"

def save_score(score: Score, path: Union[str, Path]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps(score, _fmt_for(path)), encoding="utf-8")
    return path

def read_score(path: Union[str, Path]) -> Score:
    path = Path(path)
    return loads(path.read_text(encoding="utf-8"), _fmt_for(path))
