"""Command normalization and allow-list checks."""

from __future__ import annotations

from typing import Sequence

from core.errors import AuthorizationDenied
from utils.constants import PLUGIN_NAME


def normalize_command(raw: str, plugin_name: str = PLUGIN_NAME) -> str:
    """Trim *raw* and drop a leading plugin name (case-insensitive)."""
    cmd = (raw or "").strip()
    if plugin_name and cmd.lower().startswith(plugin_name.lower()):
        return cmd[len(plugin_name):].strip()
    return cmd


def is_help_request(raw: str, plugin_name: str = PLUGIN_NAME) -> bool:
    lower = (raw or "").strip().lower()
    name = plugin_name.lower()
    return lower in ("", "help", name, f"{name} help")


def _prefix_matches(command: str, prefix: str, word_boundary: bool) -> bool:
    if not command.startswith(prefix):
        return False
    if not word_boundary or len(command) == len(prefix) or not prefix:
        return True
    return command[len(prefix)].isspace() or prefix[-1].isspace()


def is_allowed(command: str, allowlist: Sequence[str], *, word_boundary: bool = False) -> bool:
    """Check *command* against administrator allow-list prefixes.

    An empty allow-list allows everything. Matching is a case-sensitive
    prefix test on the trimmed strings, so ``"ec2 desc"`` admits
    ``"ec2 describe-instances"``. With *word_boundary* the prefix must also
    end where a whitespace-separated token ends.
    """
    if not allowlist:
        return True
    cmd = (command or "").strip()
    for pattern in allowlist:
        if _prefix_matches(cmd, str(pattern).strip(), word_boundary):
            return True
    return False


def authorize(command: str, allowlist: Sequence[str], *, word_boundary: bool = False) -> None:
    """Raise AuthorizationDenied unless *command* passes :func:`is_allowed`."""
    if not is_allowed(command, allowlist, word_boundary=word_boundary):
        raise AuthorizationDenied(f"Command not allowed: {command!r}")


def is_full_help_request(raw: str, plugin_name: str = PLUGIN_NAME) -> bool:
    lower = (raw or "").strip().lower()
    name = plugin_name.lower()
    return lower in ("help full", "help examples", f"{name} help full", f"{name} help examples")
