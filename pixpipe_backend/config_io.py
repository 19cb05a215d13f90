from __future__ import annotations

import os
from pathlib import Path

import yaml


def load_config_text(path: str) -> str:
    return Path(path).expanduser().read_text(encoding="utf-8")


def save_config_text(path: str, yaml_text: str) -> None:
    """Write config text after checking it parses; replaces the file atomically."""
    yaml.safe_load(yaml_text)
    p = Path(path).expanduser()
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(p.name + ".tmp")
    tmp.write_text(yaml_text, encoding="utf-8")
    os.replace(tmp, p)
