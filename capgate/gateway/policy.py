"""
Command Policy

Decides, before anything reaches the compute backend, whether a command or
repository is acceptable. Read-only: evaluating a policy never mutates state.

Two command forms:
    - free-form ``command``: allow-listed prefix AND no deny pattern.
      Deny wins. Pattern matching on shell strings is a known weak spot;
      prefer argv.
    - structured ``argv``: executable must be allow-listed; arguments are
      quoted with shlex so the shell never interprets them.
"""

import logging
import posixpath
import re
import shlex
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from capgate.errors import PolicyViolation

logger = logging.getLogger(__name__)

ALLOW = "ALLOW"
DENY = "DENY"

ALLOWED_COMMAND_PREFIXES: Tuple[str, ...] = (
    "git ",
    "npm ",
    "node ",
    "yarn ",
    "ls ",
    "cat ",
    "echo ",
    "cd ",
    "mkdir ",
    "cp ",
    "mv ",
)

ALLOWED_EXACT_COMMANDS = frozenset({"pwd", "ls"})

ALLOWED_EXECUTABLES = frozenset({
    "git",
    "npm",
    "npx",
    "node",
    "yarn",
    "ls",
    "cat",
    "echo",
    "pwd",
    "mkdir",
    "cp",
    "mv",
    "tar",
    "python",
    "python3",
    "pip",
    "dotnet",
    "mvn",
    "gradle",
    "go",
})

# (name, pattern) pairs; any match denies
DENY_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("recursive-rm", re.compile(r"\brm\s+(?:-\S+\s+)*(?:-[a-zA-Z]*[rR][a-zA-Z]*|--recursive)\b")),
    ("privilege-escalation", re.compile(r"\b(?:sudo|su|doas|chmod|chown)\b")),
    ("package-manager", re.compile(r"\b(?:apt-get|yum|dnf)\b|\bapt\s+install\b|\bapk\s+add\b")),
    ("download", re.compile(r"\bwget\b|\bcurl\b.*https?://")),
    ("pipe-to-shell", re.compile(r"\|\s*(?:sudo\s+)?(?:\S*/)?(?:env\s+)?(?:ba|z|da|k)?sh\b")),
    ("remote-shell", re.compile(r"\b(?:ssh|scp|telnet|nc|ncat)\b")),
)

SHELL_METACHARACTERS = re.compile(r"[;&|`$()<>\"'\\\r\n]")

DEFAULT_TRUSTED_REPOSITORY_PATTERN = r"https://github\.com/worksquares/[A-Za-z0-9._-]+/?"


@dataclass(frozen=True)
class PolicyDecision:
    """Result of a policy evaluation."""

    policy_id: str
    decision: str
    code: str
    reason: str

    @property
    def allowed(self) -> bool:
        return self.decision == ALLOW

    def to_dict(self) -> Dict[str, str]:
        return {
            "policy_id": self.policy_id,
            "decision": self.decision,
            "code": self.code,
            "reason": self.reason,
        }

    def raise_for_denial(self) -> None:
        if not self.allowed:
            raise PolicyViolation(self.reason)


def sanitize_argument(value: str) -> str:
    """Strip shell metacharacters, then quote for the shell."""
    return shlex.quote(SHELL_METACHARACTERS.sub("", str(value)))


def workspace_path(workspace_root: str, resource_id: str) -> str:
    """Workspace directory for a resource; one path segment, never traverses."""
    segment = re.sub(r"[^A-Za-z0-9_-]", "-", resource_id) or "default"
    return posixpath.join(workspace_root, segment)


class CommandPolicy:
    """Allow/deny rules for commands, working directories and repositories."""

    def __init__(
        self,
        trusted_repository_pattern: str = DEFAULT_TRUSTED_REPOSITORY_PATTERN,
        workspace_root: str = "/workspace",
        allowed_prefixes: Iterable[str] = ALLOWED_COMMAND_PREFIXES,
        allowed_executables: Iterable[str] = ALLOWED_EXECUTABLES,
    ):
        self.trusted_repository = re.compile(trusted_repository_pattern)
        self.workspace_root = posixpath.normpath(workspace_root)
        self.allowed_prefixes = tuple(allowed_prefixes)
        self.allowed_executables = frozenset(allowed_executables)

    # =========================================================================
    # Free-form commands
    # =========================================================================

    def _deny_match(self, command: str) -> Optional[str]:
        for name, pattern in DENY_PATTERNS:
            if pattern.search(command):
                return name
        return None

    def check_command(self, command: str) -> PolicyDecision:
        policy_id = "command_allowlist"
        command = command.strip()

        blocked = self._deny_match(command)
        if blocked:
            return PolicyDecision(policy_id, DENY, "BLOCKED_PATTERN", f"Command matches blocked pattern: {blocked}")

        if command in ALLOWED_EXACT_COMMANDS or command.startswith(self.allowed_prefixes):
            return PolicyDecision(policy_id, ALLOW, "PASS", "Command prefix is allow-listed.")

        return PolicyDecision(policy_id, DENY, "NOT_ALLOWED", "Command not allowed")

    # =========================================================================
    # Structured commands
    # =========================================================================

    def check_cwd(self, cwd: str) -> PolicyDecision:
        policy_id = "workspace_cwd"
        if not cwd.startswith("/") or ".." in cwd.split("/"):
            return PolicyDecision(policy_id, DENY, "CWD_OUTSIDE_WORKSPACE", "Working directory must be an absolute workspace path")

        normalized = posixpath.normpath(cwd)
        if normalized != self.workspace_root and not normalized.startswith(self.workspace_root + "/"):
            return PolicyDecision(policy_id, DENY, "CWD_OUTSIDE_WORKSPACE", "Working directory outside workspace")

        return PolicyDecision(policy_id, ALLOW, "PASS", "Working directory is inside the workspace.")

    def check_argv(self, argv: Sequence[str], cwd: Optional[str] = None) -> PolicyDecision:
        policy_id = "argv_allowlist"
        if not argv:
            return PolicyDecision(policy_id, DENY, "EMPTY_ARGV", "Empty argv")

        if argv[0] not in self.allowed_executables:
            return PolicyDecision(policy_id, DENY, "NOT_ALLOWED", f"Executable not allowed: {argv[0]}")

        blocked = self._deny_match(" ".join(argv))
        if blocked:
            return PolicyDecision(policy_id, DENY, "BLOCKED_PATTERN", f"Command matches blocked pattern: {blocked}")

        if cwd is not None:
            cwd_decision = self.check_cwd(cwd)
            if not cwd_decision.allowed:
                return cwd_decision

        return PolicyDecision(policy_id, ALLOW, "PASS", "Executable is allow-listed.")

    @staticmethod
    def render_argv(argv: Sequence[str], cwd: Optional[str] = None) -> str:
        """Render argv as a single shell string with every argument quoted."""
        rendered = shlex.join(list(argv))
        if cwd:
            return f"cd {shlex.quote(cwd)} && {rendered}"
        return rendered

    # =========================================================================
    # Repositories
    # =========================================================================

    def check_repository(self, repository: str) -> PolicyDecision:
        policy_id = "trusted_repository"
        if self.trusted_repository.fullmatch(repository.strip()):
            return PolicyDecision(policy_id, ALLOW, "PASS", "Repository is in the trusted organization.")
        return PolicyDecision(policy_id, DENY, "UNTRUSTED_REPOSITORY", "Untrusted repository")

    # =========================================================================
    # Entry point
    # =========================================================================

    def evaluate(self, operation: str, parameters: Dict[str, Any]) -> PolicyDecision:
        """Evaluate the policy for an already schema-validated operation."""
        if operation == "executeCommand":
            if "argv" in parameters:
                decision = self.check_argv(parameters["argv"], parameters.get("cwd"))
            else:
                decision = self.check_command(parameters["command"])
                if decision.allowed and parameters.get("cwd") is not None:
                    decision = self.check_cwd(parameters["cwd"])
        elif operation == "gitClone":
            decision = self.check_repository(parameters["repository"])
        else:
            decision = PolicyDecision("no_policy", ALLOW, "PASS", "No command policy applies.")

        if not decision.allowed:
            logger.warning(f"Policy denied {operation}: {decision.reason}")
        return decision
