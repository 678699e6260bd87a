from __future__ import annotations

from typing import Any

import ruamel.yaml

YAMLError = ruamel.yaml.YAMLError


def load_yaml(text: str) -> Any:
    """Plain dicts/lists/scalars (YAML 1.2, so `on:` stays a string key)."""
    yaml = ruamel.yaml.YAML(typ="safe", pure=True)
    return yaml.load(text)
