"""
Missing-package hints for failed commands.

When a command fails because an executable is missing, the combined output
usually carries a shell "not found" message. detect_missing_package() finds
the offending command and suggests the Alpine (apk) package that provides it.
"""

from __future__ import annotations

import re
from typing import Dict, Optional, Pattern, Tuple

# Commands whose apk package name differs from (or needs pinning beyond)
# the command itself. Unlisted commands fall back to their own name.
COMMAND_TO_PACKAGE: Dict[str, str] = {
    "python": "python3",
    "python3": "python3",
    "pip": "py3-pip",
    "pip3": "py3-pip",
    "node": "nodejs",
    "npm": "nodejs npm",
    "git": "git",
    "curl": "curl",
    "wget": "wget",
    "vim": "vim",
    "nano": "nano",
    "jq": "jq",
    "make": "make",
    "gcc": "gcc",
    "g++": "g++",
    "bash": "bash",
    "zsh": "zsh",
    "ssh": "openssh-client",
    "scp": "openssh-client",
    "rsync": "rsync",
    "tar": "tar",
    "zip": "zip",
    "unzip": "unzip",
    "gzip": "gzip",
    "htop": "htop",
    "netcat": "netcat-openbsd",
    "nc": "netcat-openbsd",
    "nmap": "nmap",
    "ping": "iputils",
    "dig": "bind-tools",
    "nslookup": "bind-tools",
    "ffmpeg": "ffmpeg",
    "imagemagick": "imagemagick",
    "convert": "imagemagick",
    "ruby": "ruby",
    "gem": "ruby",
    "go": "go",
    "rustc": "rust",
    "cargo": "cargo",
    "java": "openjdk11",
    "javac": "openjdk11",
    "perl": "perl",
    "php": "php",
    "lua": "lua",
    "sqlite3": "sqlite",
    "psql": "postgresql-client",
    "mysql": "mysql-client",
    "redis-cli": "redis",
    "mongosh": "mongodb-tools",
}

_TOKEN = r"([\w.+-]+)"

# Order is significant: the first pattern that matches wins.
MISSING_COMMAND_PATTERNS: Tuple[Pattern[str], ...] = (
    # busybox ash / dash: "sh: python: not found", "sh: 1: python: not found"
    re.compile(rf"sh: (?:\d+: )?{_TOKEN}: not found", re.IGNORECASE),
    # bash: "bash: python: command not found", "bash: line 1: python: command not found"
    re.compile(rf"bash: (?:line \d+: )?{_TOKEN}: command not found", re.IGNORECASE),
    # zsh and others: "python: command not found"
    re.compile(rf"{_TOKEN}: command not found", re.IGNORECASE),
    # exec of a missing interpreter: "python: No such file or directory"
    re.compile(rf"^{_TOKEN}: No such file or directory", re.IGNORECASE | re.MULTILINE),
    # runtime-level exec failure: "executable file `python` not found in $PATH"
    re.compile(rf"executable file [`'\"]?{_TOKEN}[`'\"]? not found", re.IGNORECASE),
)


def package_for_command(command: str) -> str:
    """apk package that provides command (the command itself if unknown)."""
    return COMMAND_TO_PACKAGE.get(command, command)


def find_missing_command(output: str) -> Optional[str]:
    """Return the first missing command named in output, or None."""
    for pattern in MISSING_COMMAND_PATTERNS:
        match = pattern.search(output)
        if match and match.group(1):
            return match.group(1)
    return None


def detect_missing_package(output: str, exit_code: Optional[int]) -> Optional[str]:
    """
    Build an install suggestion for a failed command.

    Args:
        output: Combined stdout/stderr of the command
        exit_code: Process exit code (None if unknown)

    Returns:
        Suggestion text naming the `apk add` command, or None when the
        command succeeded or no missing-command message was found.
    """
    if exit_code == 0:
        return None

    missing = find_missing_command(output)
    if missing is None:
        return None

    package = package_for_command(missing)
    return (
        f"\n\n💡 **Missing package detected**: the command `{missing}` was not found.\n"
        "Install the package with:\n\n"
        f"```\napk add {package}\n```\n\n"
        "Run the install command with execute_command first, "
        "then run the original command again."
    )


__all__ = [
    "COMMAND_TO_PACKAGE",
    "MISSING_COMMAND_PATTERNS",
    "detect_missing_package",
    "find_missing_command",
    "package_for_command",
]
