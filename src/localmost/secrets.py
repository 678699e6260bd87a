# secrets.py
from __future__ import annotations

import logging
import os
from typing import Callable, Dict, Iterable, Literal, Mapping, Optional

import click

from .errors import MissingSecretError

log = logging.getLogger(__name__)

SecretMode = Literal["stub", "prompt", "abort"]
SECRET_MODES = ("stub", "prompt", "abort")

# (name, source) where source is "environment" | "stubbed" | "prompted"
SecretReporter = Callable[[str, str], None]


def _prompt(name: str) -> str:
    return click.prompt(f"Value for secret {name}", hide_input=True, default="", show_default=False)


def resolve_secrets(
    names: Iterable[str],
    mode: SecretMode = "stub",
    env: Optional[Mapping[str, str]] = None,
    prompt: Callable[[str], str] = _prompt,
    report: Optional[SecretReporter] = None,
) -> Dict[str, str]:
    """
    Values for the secrets a run needs. The process environment wins;
    otherwise `mode` decides: stub -> "", prompt -> ask, abort -> raise.

    Raises:
        MissingSecretError: mode "abort" and at least one name unresolved
    """
    if mode not in SECRET_MODES:
        raise ValueError(f"Unknown secret mode: {mode}")
    env = os.environ if env is None else env

    resolved: Dict[str, str] = {}
    missing = []
    for name in dict.fromkeys(names):
        if name in env:
            resolved[name] = env[name]
            source = "environment"
        elif mode == "abort":
            missing.append(name)
            continue
        elif mode == "prompt":
            resolved[name] = prompt(name)
            source = "prompted"
        else:
            resolved[name] = ""
            source = "stubbed"
        log.debug("secret %s: %s", name, source)
        if report is not None:
            report(name, source)

    if missing:
        raise MissingSecretError(missing)
    return resolved
