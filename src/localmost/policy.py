# policy.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, Field

from ._yaml import YAMLError, load_yaml
from .errors import PolicyError

LOCALMOSTRC_VERSION = 1
LOCALMOSTRC_FILENAMES = (".localmostrc", ".localmostrc.yml", ".localmostrc.yaml")


# -------------------- Schemas --------------------

class NetworkPolicy(BaseModel):
    allow: Optional[List[str]] = None
    deny: Optional[List[str]] = None


class FilesystemPolicy(BaseModel):
    read: Optional[List[str]] = None
    write: Optional[List[str]] = None
    deny: Optional[List[str]] = None


class EnvPolicy(BaseModel):
    allow: Optional[List[str]] = None
    deny: Optional[List[str]] = None


class SandboxPolicy(BaseModel):
    network: Optional[NetworkPolicy] = None
    filesystem: Optional[FilesystemPolicy] = None
    env: Optional[EnvPolicy] = None


class SecretsPolicy(BaseModel):
    require: Optional[List[str]] = None


class WorkflowPolicy(SandboxPolicy):
    secrets: Optional[SecretsPolicy] = None


class LocalmostrcConfig(BaseModel):
    version: int = LOCALMOSTRC_VERSION
    shared: Optional[SandboxPolicy] = None
    workflows: Dict[str, WorkflowPolicy] = Field(default_factory=dict)


DEFAULT_SANDBOX_POLICY = SandboxPolicy(
    network=NetworkPolicy(
        allow=[
            "*.github.com",
            "*.githubusercontent.com",
            "github.com",
            "registry.npmjs.org",
            "registry.yarnpkg.com",
            "pypi.org",
            "files.pythonhosted.org",
            "crates.io",
            "static.crates.io",
            "rubygems.org",
            "api.nuget.org",
            "*.apple.com",
            "cdn.cocoapods.org",
            "trunk.cocoapods.org",
            "*.cloudfront.net",
            "*.fastly.net",
        ],
    ),
    filesystem=FilesystemPolicy(
        deny=[
            "~/.ssh/id_*",
            "~/.gnupg/*",
            "~/.aws/*",
            "~/.config/gh/*",
        ],
    ),
)


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------

@dataclass
class ParseResult:
    config: Optional[LocalmostrcConfig] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.config is not None and not self.errors

    def unwrap(self) -> LocalmostrcConfig:
        if not self.ok:
            raise PolicyError("Invalid .localmostrc", list(self.errors))
        assert self.config is not None
        return self.config


def _check_string_array(value: Any, location: str, errors: List[str]) -> None:
    if not isinstance(value, list):
        errors.append(f"{location} must be an array")
        return
    for i, element in enumerate(value):
        if not isinstance(element, str):
            errors.append(f"{location}[{i}] must be a string")


def _check_section(value: Any, location: str, keys: Iterable[str], errors: List[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{location} must be an object")
        return
    for key in keys:
        if value.get(key) is not None:
            _check_string_array(value[key], f"{location}.{key}", errors)


def _check_policy(policy: Any, location: str, errors: List[str]) -> None:
    if policy is None:
        return
    if not isinstance(policy, dict):
        errors.append(f"{location} must be an object")
        return
    if policy.get("network") is not None:
        _check_section(policy["network"], f"{location}.network", ("allow", "deny"), errors)
    if policy.get("filesystem") is not None:
        _check_section(policy["filesystem"], f"{location}.filesystem", ("read", "write", "deny"), errors)
    if policy.get("env") is not None:
        _check_section(policy["env"], f"{location}.env", ("allow", "deny"), errors)


def _check_secrets(policy: Any, location: str, errors: List[str]) -> None:
    if not isinstance(policy, dict) or policy.get("secrets") is None:
        return
    secrets = policy["secrets"]
    if not isinstance(secrets, dict):
        errors.append(f"{location}.secrets must be an object")
        return
    if secrets.get("require") is not None:
        _check_string_array(secrets["require"], f"{location}.secrets.require", errors)


def parse_localmostrc(content: str) -> ParseResult:
    """
    Parse and validate .localmostrc text.

    All problems are collected (not just the first), each prefixed with the
    field path it concerns.
    """
    try:
        doc = load_yaml(content)
    except YAMLError as e:
        return ParseResult(errors=[f"Invalid YAML: {e}"])

    if not isinstance(doc, dict):
        return ParseResult(errors=["Invalid .localmostrc: must be a YAML object"])

    errors: List[str] = []
    warnings: List[str] = []

    version = doc.get("version")
    if version is None:
        warnings.append('Missing "version" field. Assuming version 1.')
    elif isinstance(version, bool) or not isinstance(version, (int, float)):
        errors.append('"version" must be a number')
    elif version != LOCALMOSTRC_VERSION:
        errors.append(
            f"Unsupported version: {version}. This tool supports version {LOCALMOSTRC_VERSION}."
        )

    _check_policy(doc.get("shared"), "shared", errors)

    workflows = doc.get("workflows")
    if workflows is not None:
        if not isinstance(workflows, dict):
            errors.append('"workflows" must be an object')
        else:
            for name, policy in workflows.items():
                _check_policy(policy, f"workflows.{name}", errors)
                _check_secrets(policy, f"workflows.{name}", errors)

    if errors:
        return ParseResult(errors=errors, warnings=warnings)

    config = LocalmostrcConfig(
        version=LOCALMOSTRC_VERSION,
        shared=SandboxPolicy.model_validate(doc["shared"]) if doc.get("shared") else None,
        workflows={
            str(name): WorkflowPolicy.model_validate(policy or {})
            for name, policy in (workflows or {}).items()
        },
    )
    return ParseResult(config=config, warnings=warnings)


def find_localmostrc(repo_root: str | Path) -> Optional[Path]:
    for filename in LOCALMOSTRC_FILENAMES:
        candidate = Path(repo_root) / filename
        if candidate.is_file():
            return candidate
    return None


def read_localmostrc(path: str | Path) -> ParseResult:
    p = Path(path)
    try:
        content = p.read_text(encoding="utf-8")
    except OSError as e:
        return ParseResult(errors=[f"Failed to read {p}: {e}"])
    return parse_localmostrc(content)


# ----------------------------------------------------------------------
# Merging
# ----------------------------------------------------------------------

def _merge_lists(base: Optional[List[str]], override: Optional[List[str]]) -> Optional[List[str]]:
    if base is None and override is None:
        return None
    merged: Dict[str, None] = dict.fromkeys(base or [])
    merged.update(dict.fromkeys(override or []))
    return list(merged)


def _merge_network(a: Optional[NetworkPolicy], b: Optional[NetworkPolicy]) -> Optional[NetworkPolicy]:
    if a is None and b is None:
        return None
    a, b = a or NetworkPolicy(), b or NetworkPolicy()
    return NetworkPolicy(allow=_merge_lists(a.allow, b.allow), deny=_merge_lists(a.deny, b.deny))


def _merge_filesystem(
    a: Optional[FilesystemPolicy], b: Optional[FilesystemPolicy]
) -> Optional[FilesystemPolicy]:
    if a is None and b is None:
        return None
    a, b = a or FilesystemPolicy(), b or FilesystemPolicy()
    return FilesystemPolicy(
        read=_merge_lists(a.read, b.read),
        write=_merge_lists(a.write, b.write),
        deny=_merge_lists(a.deny, b.deny),
    )


def _merge_env(a: Optional[EnvPolicy], b: Optional[EnvPolicy]) -> Optional[EnvPolicy]:
    if a is None and b is None:
        return None
    a, b = a or EnvPolicy(), b or EnvPolicy()
    return EnvPolicy(allow=_merge_lists(a.allow, b.allow), deny=_merge_lists(a.deny, b.deny))


def merge_policies(base: Optional[SandboxPolicy], override: Optional[SandboxPolicy]) -> SandboxPolicy:
    """Set-union of every list; an absent section leaves the other side unchanged."""
    base = base or SandboxPolicy()
    override = override or SandboxPolicy()
    return SandboxPolicy(
        network=_merge_network(base.network, override.network),
        filesystem=_merge_filesystem(base.filesystem, override.filesystem),
        env=_merge_env(base.env, override.env),
    )


def get_effective_policy(config: LocalmostrcConfig, workflow_name: str) -> SandboxPolicy:
    """Shared policy merged with the workflow's own section."""
    workflow_policy = config.workflows.get(workflow_name)
    override = (
        SandboxPolicy(
            network=workflow_policy.network,
            filesystem=workflow_policy.filesystem,
            env=workflow_policy.env,
        )
        if workflow_policy is not None
        else None
    )
    return merge_policies(config.shared, override)


def get_required_secrets(config: LocalmostrcConfig, workflow_name: str) -> List[str]:
    policy = config.workflows.get(workflow_name)
    if policy is None or policy.secrets is None:
        return []
    return list(policy.secrets.require or [])


# ----------------------------------------------------------------------
# Serialization
# ----------------------------------------------------------------------

def _serialize_list(key: str, values: Optional[List[str]], indent: str, quote: bool) -> List[str]:
    if not values:
        return []
    lines = [f"{indent}{key}:"]
    for v in values:
        lines.append(f'{indent}  - "{v}"' if quote else f"{indent}  - {v}")
    return lines


def _serialize_policy(policy: SandboxPolicy, indent: str) -> List[str]:
    lines: List[str] = []
    if policy.network:
        lines.append(f"{indent}network:")
        lines += _serialize_list("allow", policy.network.allow, indent + "  ", True)
        lines += _serialize_list("deny", policy.network.deny, indent + "  ", True)
    if policy.filesystem:
        lines.append(f"{indent}filesystem:")
        lines += _serialize_list("read", policy.filesystem.read, indent + "  ", True)
        lines += _serialize_list("write", policy.filesystem.write, indent + "  ", True)
        lines += _serialize_list("deny", policy.filesystem.deny, indent + "  ", True)
    if policy.env:
        lines.append(f"{indent}env:")
        lines += _serialize_list("allow", policy.env.allow, indent + "  ", False)
        lines += _serialize_list("deny", policy.env.deny, indent + "  ", False)
    return lines


def serialize_localmostrc(config: LocalmostrcConfig) -> str:
    """Render a config as .localmostrc text (readable by parse_localmostrc)."""
    lines = [f"version: {config.version}", ""]

    if config.shared:
        lines.append("shared:")
        lines += _serialize_policy(config.shared, "  ")

    if config.workflows:
        lines += ["", "workflows:"]
        for name, policy in config.workflows.items():
            lines.append(f"  {name}:")
            lines += _serialize_policy(policy, "    ")
            if policy.secrets and policy.secrets.require:
                lines += ["    secrets:"]
                lines += _serialize_list("require", policy.secrets.require, "      ", False)

    return "\n".join(lines) + "\n"


# ----------------------------------------------------------------------
# Diffing
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class PolicyDiff:
    path: str
    type: Literal["added", "removed"]
    value: str


_SECTIONS = (
    ("network", "allow"),
    ("network", "deny"),
    ("filesystem", "read"),
    ("filesystem", "write"),
    ("filesystem", "deny"),
    ("env", "allow"),
    ("env", "deny"),
)


def _section_values(policy: Optional[SandboxPolicy], section: str, key: str) -> List[str]:
    if policy is None:
        return []
    part = getattr(policy, section)
    if part is None:
        return []
    return list(getattr(part, key) or [])


def _diff_policies(
    old: Optional[SandboxPolicy], new: Optional[SandboxPolicy], prefix: str, out: List[PolicyDiff]
) -> None:
    for section, key in _SECTIONS:
        path = f"{prefix}.{section}.{key}"
        old_values = _section_values(old, section, key)
        new_values = _section_values(new, section, key)
        old_set, new_set = set(old_values), set(new_values)
        out.extend(PolicyDiff(path, "added", v) for v in dict.fromkeys(new_values) if v not in old_set)
        out.extend(PolicyDiff(path, "removed", v) for v in dict.fromkeys(old_values) if v not in new_set)


def diff_configs(old: LocalmostrcConfig, new: LocalmostrcConfig) -> List[PolicyDiff]:
    """
    Per-section set differences between two configs. Order within a list
    is ignored; only additions and removals are reported.
    """
    diffs: List[PolicyDiff] = []
    _diff_policies(old.shared, new.shared, "shared", diffs)
    names = list(dict.fromkeys([*old.workflows, *new.workflows]))
    for name in names:
        _diff_policies(old.workflows.get(name), new.workflows.get(name), f"workflows.{name}", diffs)
    return diffs


def format_policy_diff(diffs: List[PolicyDiff]) -> str:
    if not diffs:
        return "No changes"
    return "\n".join(
        f"+ {d.path}: {d.value}" if d.type == "added" else f"- {d.path}: {d.value}"
        for d in diffs
    )


def empty_config() -> LocalmostrcConfig:
    return LocalmostrcConfig()
