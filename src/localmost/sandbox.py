# sandbox.py
"""Compile a SandboxPolicy into a macOS sandbox-exec profile.

The compiler is pure: the same inputs (including `home` and `temp_dir`)
always give byte-identical text. Rules are emitted allow-first; deny rules
for the filesystem and network come after every allow so that they win
under sandbox-exec's last-match semantics.
"""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import List, Optional

from .policy import SandboxPolicy

# Written-to by package managers and toolchains; always writable.
HOME_CACHE_DIRS = (
    ".npm",
    ".yarn",
    ".pnpm-store",
    ".cache",
    ".cargo",
    ".rustup",
    ".gradle",
    ".m2",
    ".nuget",
    ".dotnet",
    ".local",
    "go",
    "Library/Caches",
)

SYSTEM_TEMP_DIRS = ("/tmp", "/private/tmp", "/var/folders", "/private/var/folders")

DEVICE_FILES = ("/dev/null", "/dev/random", "/dev/urandom", "/dev/tty", "/dev/dtracehelper")


def _escape(path: str) -> str:
    return path.replace('"', '\\"')


def _expand_home(pattern: str, home: str) -> str:
    if pattern == "~" or pattern.startswith("~/"):
        return home + pattern[1:]
    return pattern


def _glob_regex(expanded: str) -> str:
    return "^" + _escape(expanded).replace("*", ".*").replace("/", "\\/")


def network_pattern(domain: str) -> str:
    """`*.github.com` matches any subdomain; anything else is an exact host."""
    escaped = _escape(domain)
    if escaped.startswith("*."):
        base = escaped[2:].replace(".", "\\\\.")
        return f'(remote regex ".*\\\\.{base}$")'
    host = escaped.replace(".", "\\\\.")
    return f'(remote regex "^{host}$")'


def _section(title: str) -> List[str]:
    bar = ";; " + "-" * 60
    return [bar, f";; {title}", bar]


def _write_rule(pattern: str, home: str) -> str:
    expanded = _expand_home(pattern, home)
    if "**" in expanded:
        base = expanded.replace("/**", "", 1).replace("**/", "", 1)
        return f'  (subpath "{_escape(base)}")'
    if "*" in expanded:
        return f'  (regex "{_glob_regex(expanded)}")'
    return f'  (subpath "{_escape(expanded)}")'


def compile_profile(
    work_dir: str | Path,
    policy: Optional[SandboxPolicy] = None,
    permissive: bool = False,
    log_destination: str | None = None,
    home: str | None = None,
    temp_dir: str | None = None,
) -> str:
    home = _escape(home if home is not None else str(Path.home()))
    tmp = _escape(temp_dir if temp_dir is not None else tempfile.gettempdir())
    wd = _escape(str(work_dir))

    fs_policy = policy.filesystem if policy else None
    net_policy = policy.network if policy else None

    lines: List[str] = [
        "(version 1)",
        "(allow default)" if permissive else "(deny default)",
        "",
        ";; " + "=" * 60,
        ";; LOCALMOST SANDBOX PROFILE",
        ";; Running in PERMISSIVE mode - violations are logged, not blocked"
        if permissive
        else ";; Running in ENFORCEMENT mode - violations are blocked",
        ";; " + "=" * 60,
        "",
    ]

    if log_destination:
        lines.append(f";; Log violations to: {log_destination}")
        lines.append(f'(trace "{_escape(log_destination)}")')
    else:
        lines.append('(trace "/dev/stderr")')
    lines.append("")

    # ---- file access ----
    lines += _section("FILE ACCESS")
    lines += [
        "",
        ";; Read access - broad to allow tools to function",
        "(allow file-read*",
        '  (subpath "/")',
        '  (literal "/dev/null")',
        '  (literal "/dev/random")',
        '  (literal "/dev/urandom"))',
        "",
        ";; Write access - working directory",
        "(allow file-write*",
        f'  (subpath "{wd}"))',
        "",
        ";; File ioctl for git file locking",
        "(allow file-ioctl",
        f'  (subpath "{wd}"))',
        "",
        ";; System temp directories",
        "(allow file-write*",
        f'  (subpath "{tmp}")',
    ]
    lines += [f'  (subpath "{d}")' for d in SYSTEM_TEMP_DIRS[:-1]]
    lines += [f'  (subpath "{SYSTEM_TEMP_DIRS[-1]}"))', ""]

    lines += [";; User cache directories (npm, cargo, pip, etc.)", "(allow file-write*"]
    lines += [f'  (subpath "{home}/{d}")' for d in HOME_CACHE_DIRS[:-1]]
    lines += [f'  (subpath "{home}/{HOME_CACHE_DIRS[-1]}"))', ""]

    lines += [";; Localmost directories", "(allow file-write*", f'  (subpath "{home}/.localmost"))', ""]

    if fs_policy and fs_policy.write:
        lines += [";; Policy-defined write access", "(allow file-write*"]
        lines += [_write_rule(p, home) for p in fs_policy.write]
        lines += [")", ""]

    lines += [";; Device files", "(allow file-write*"]
    lines += [f'  (literal "{d}")' for d in DEVICE_FILES[:-1]]
    lines += [f'  (literal "{DEVICE_FILES[-1]}"))', ""]
    lines += ["(allow file-read-metadata)", ""]

    if fs_policy and fs_policy.deny:
        lines.append(";; Policy-defined filesystem deny")
        for pattern in fs_policy.deny:
            expanded = _expand_home(pattern, home)
            if "*" in expanded:
                target = f'(regex "{_glob_regex(expanded)}")'
            else:
                target = f'(subpath "{_escape(expanded)}")'
            lines.append(f"(deny file-read* {target})")
            lines.append(f"(deny file-write* {target})")
        lines.append("")

    # ---- network ----
    lines += _section("NETWORK ACCESS")
    lines.append("")

    if net_policy and net_policy.allow is not None and not permissive:
        lines += [";; Policy-defined network allowlist", "(allow network-outbound", "  (local ip)"]
        lines += [f"  {network_pattern(d)}" for d in net_policy.allow]
        lines += [")", "", "(allow network-inbound (local ip))"]
    else:
        lines += [";; Unrestricted network access", "(allow network*)"]
    lines.append("")

    if net_policy and net_policy.deny and not permissive:
        lines.append(";; Policy-defined network deny")
        lines += [f"(deny network-outbound {network_pattern(d)})" for d in net_policy.deny]
        lines.append("")

    # ---- process / system ----
    lines += _section("PROCESS OPERATIONS - Permissive (runner spawns build tools)")
    lines += ["(allow process*)", "(allow signal)", ""]
    lines += _section("MACH/IPC OPERATIONS - Required by system frameworks")
    lines += ["(allow mach*)", "(allow ipc*)", ""]
    lines += _section("SYSTEM OPERATIONS")
    lines += [
        "(allow sysctl*)",
        "(allow iokit*)",
        "(allow pseudo-tty)",
        "(allow user-preference-read)",
        "(allow user-preference-write",
        '  (preference-domain "com.apple.dt.Xcode"))',
        "",
    ]

    return "\n".join(lines)


def compile_discovery_profile(work_dir: str | Path, log_destination: str, **kwargs) -> str:
    """Permissive profile that only traces; used to learn what a workflow touches."""
    return compile_profile(work_dir, permissive=True, log_destination=log_destination, **kwargs)
