"""Safe Git Shell — safety boundary between an automated client and the git executable.

Public API:
    shell = SafeGitShell(session_id, working_dir=WorkingDirectory(), audit_dir="./audit")
    output = shell.execute("log --oneline -10")
    envelope = success_response(output)

Pipeline: Validate (allow-list -> dangerous patterns -> read-only class) -> Resolve cwd
-> Execute (argument vector, no shell) -> Shape response.
"""

import json
import os
import re
import shlex
import subprocess
import sys
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Optional


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

GIT_BINARY = "git"

ENV_WORKING_DIR = "GIT_SHELL_WORKING_DIR"
ENV_PWD = "PWD"
CWD_ARG_PREFIX = "--cwd="

REJECT_NOT_ALLOWED = "not-allowed"
REJECT_DANGEROUS = "dangerous-pattern"

STATUS_COMPLETED = "completed"
STATUS_REJECTED = "rejected"
STATUS_FAILED = "failed"

SOURCE_EXPLICIT = "explicit"
SOURCE_ENV = "env"
SOURCE_ARGV = "argv"
SOURCE_PWD = "pwd"
SOURCE_PROCESS = "process"

EXIT_CODE_NOT_FOUND = 127
OUTPUT_SUMMARY_LIMIT = 200

_GIT_PREFIX_RE = re.compile(r"^git\s+")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class GitShellError(Exception):
    """Base class for every expected failure the shell reports to its caller."""

    stderr = ""


class WorkingDirectoryUnset(GitShellError):
    pass


class InvalidPath(GitShellError):
    pass


class InvalidArguments(GitShellError):
    pass


class UnknownTool(GitShellError):
    pass


class CommandRejected(GitShellError):
    """The gate refused a command. reason is REJECT_NOT_ALLOWED or REJECT_DANGEROUS."""

    def __init__(self, message: str, reason: str, command: str, tag: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
        self.command = command
        self.tag = tag


class ExecutionFailed(GitShellError):
    """git exited nonzero, timed out, or could not be started."""

    def __init__(
        self,
        message: str,
        command: str,
        stderr: str = "",
        exit_code: Optional[int] = None,
        stdout: str = "",
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.command = command
        self.stderr = stderr or ""
        self.exit_code = exit_code
        self.stdout = stdout or ""
        self.timed_out = timed_out


# ---------------------------------------------------------------------------
# Rule table — allow-list, read-only subset, dangerous patterns
# ---------------------------------------------------------------------------

# Versioned data, not logic. Replace wholesale with load_rule_table(path).
DEFAULT_RULES: dict[str, Any] = {
    "version": 2,
    "allowed_commands": [
        "status", "diff", "log", "show", "branch", "tag", "remote",
        "fetch", "pull", "push", "add", "commit", "checkout", "switch",
        "merge", "rebase", "reset", "stash", "clone", "init", "config",
        "ls-files", "ls-remote", "describe", "reflog", "blame", "grep",
        "shortlog", "cherry-pick", "revert",
    ],
    "read_only_commands": [
        "status", "diff", "log", "show", "branch", "tag", "remote",
        "ls-files", "ls-remote", "describe", "reflog", "blame", "grep",
        "shortlog",
    ],
    "dangerous_patterns": [
        {"tag": "force-flag", "pattern": r"--force", "ignore_case": True},
        {"tag": "discard-changes",
         "pattern": r"^(?:checkout|switch)\s+(?:.*\s)?(?:-[a-zA-Z]*f|--discard-changes\b)"},
        {"tag": "hard-reset", "pattern": r"--hard", "ignore_case": True},
        {"tag": "file-removal", "pattern": r"(?:^|\s)rm\s", "ignore_case": True},
        {"tag": "clean", "pattern": r"(?:^|\s)clean\s+-[a-z]*[df]", "ignore_case": True},
        {"tag": "force-push", "pattern": r"^push\s+(?:.*\s)?(?:-[a-zA-Z]*f|\+\S)"},
        {"tag": "interactive-rebase",
         "pattern": r"^rebase\s+(?:.*\s)?(?:--interactive\b|-[a-zA-Z]*i)"},
        {"tag": "rebase-exec", "pattern": r"^rebase\s+(?:.*\s)?-[a-zA-Z]*x"},
        {"tag": "filter-branch", "pattern": r"filter-branch", "ignore_case": True},
        {"tag": "aggressive-gc", "pattern": r"gc\s+--aggressive", "ignore_case": True},
        {"tag": "branch-force-delete", "pattern": r"^branch\s+(?:.*\s)?-[a-zA-Z]*D"},
        {"tag": "tag-delete", "pattern": r"^tag\s+(?:.*\s)?(?:-d\b|--delete\b)"},
        {"tag": "transport-exec",
         "pattern": r"--upload-pack|--receive-pack|--exec\b", "ignore_case": True},
        {"tag": "config-exec",
         "pattern": r"^config\s+(?:.*\s)?(?:core\.(?:sshcommand|hookspath|fsmonitor|editor|pager"
                    r"|gitproxy|askpass)|alias\.|credential\.|filter\.|diff\.external\b"
                    r"|\S+\.textconv\b|diff\.\S+\.command\b)",
         "ignore_case": True},
        {"tag": "clone-config", "pattern": r"^clone\s+(?:.*\s)?(?:-[a-zA-Z]*c|--config\b)"},
    ],
}


@dataclass(frozen=True)
class DangerousPattern:
    tag: str
    regex: re.Pattern

    def matches(self, command: str) -> bool:
        return self.regex.search(command) is not None


@dataclass(frozen=True)
class RuleTable:
    version: int
    allowed_commands: frozenset
    read_only_commands: frozenset
    dangerous_patterns: tuple

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RuleTable":
        """Build a rule table from its data form. Raises ValueError on malformed data."""
        try:
            allowed = frozenset(data["allowed_commands"])
            read_only = frozenset(data.get("read_only_commands", []))
            raw_patterns = data.get("dangerous_patterns", [])
            version = int(data.get("version", 1))
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed rule table: {e}") from e

        stray = read_only - allowed
        if stray:
            raise ValueError(
                f"Read-only commands missing from allow-list: {', '.join(sorted(stray))}"
            )

        patterns = []
        for entry in raw_patterns:
            flags = re.IGNORECASE if entry.get("ignore_case") else 0
            try:
                patterns.append(DangerousPattern(
                    tag=entry["tag"], regex=re.compile(entry["pattern"], flags)
                ))
            except (KeyError, re.error) as e:
                raise ValueError(f"Bad dangerous pattern {entry!r}: {e}") from e

        return cls(
            version=version,
            allowed_commands=allowed,
            read_only_commands=read_only,
            dangerous_patterns=tuple(patterns),
        )


def load_rule_table(path: str) -> RuleTable:
    """Load a rule table from a JSON file with the same shape as DEFAULT_RULES."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Cannot read rule table {path}: {e}") from e
    return RuleTable.from_dict(data)


DEFAULT_RULE_TABLE = RuleTable.from_dict(DEFAULT_RULES)


# ---------------------------------------------------------------------------
# Validation (the gate)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CommandSpec:
    command: str
    main_command: str
    args: tuple
    is_read_only: bool
    is_allowed: bool = True
    raw: str = field(default="", compare=False)

    @property
    def argv(self) -> list[str]:
        return [self.main_command, *self.args]


def strip_git_prefix(raw: str) -> str:
    return _GIT_PREFIX_RE.sub("", raw.strip()).strip()


def validate_git_command(raw: str, rules: RuleTable = DEFAULT_RULE_TABLE) -> CommandSpec:
    """Run a raw command string through the gate.

    Allow-list first (default deny), then the dangerous-pattern table against the
    whole cleaned command. Either layer can reject.

    Raises:
        CommandRejected: reason REJECT_NOT_ALLOWED or REJECT_DANGEROUS.
    """
    if not isinstance(raw, str):
        raise CommandRejected("Git command must be a string", REJECT_NOT_ALLOWED, repr(raw))

    command = strip_git_prefix(raw)
    if not command:
        raise CommandRejected("Empty git command", REJECT_NOT_ALLOWED, command, tag="empty")

    try:
        tokens = shlex.split(command)
    except ValueError:
        raise CommandRejected(
            f"Git command has malformed quoting and cannot be parsed safely: {command}",
            REJECT_NOT_ALLOWED, command, tag="malformed-quoting",
        )
    if not tokens:
        raise CommandRejected("Empty git command", REJECT_NOT_ALLOWED, command, tag="empty")

    main_command = tokens[0]
    if main_command not in rules.allowed_commands:
        raise CommandRejected(
            f"Git command not allowed: {main_command}", REJECT_NOT_ALLOWED, command
        )

    # Patterns see the tokens git will receive, so quoting cannot hide a flag
    normalised = " ".join(tokens)
    for pattern in rules.dangerous_patterns:
        if pattern.matches(normalised) or pattern.matches(command):
            raise CommandRejected(
                f"Dangerous git command pattern detected ({pattern.tag}): {command}\n"
                "This command is blocked for safety.",
                REJECT_DANGEROUS, command, tag=pattern.tag,
            )

    return CommandSpec(
        command=command,
        main_command=main_command,
        args=tuple(tokens[1:]),
        is_read_only=main_command in rules.read_only_commands,
        raw=raw,
    )


# ---------------------------------------------------------------------------
# Working-directory resolver
# ---------------------------------------------------------------------------

class WorkingDirectory:
    """Where git runs for one session.

    Explicit setting wins; otherwise GIT_SHELL_WORKING_DIR, a --cwd=<path> process
    argument, PWD (unless it is the filesystem root), and finally os.getcwd().
    No lock: callers sharing one instance see each other's set() immediately.
    """

    def __init__(
        self,
        path: Optional[str] = None,
        environ: Optional[dict] = None,
        argv: Optional[list[str]] = None,
        require_explicit: bool = False,
    ):
        self._explicit: Optional[str] = None
        self._environ = os.environ if environ is None else environ
        self._argv = sys.argv if argv is None else argv
        self._require_explicit = require_explicit
        if path:
            self.set(path)

    @property
    def explicit(self) -> Optional[str]:
        return self._explicit

    def set(self, path: str) -> str:
        if not path or not isinstance(path, str):
            raise InvalidPath("Working directory path is required")
        expanded = os.path.expanduser(path)
        if not os.path.exists(expanded):
            raise InvalidPath(f"Directory does not exist: {path}")
        if not os.path.isdir(expanded):
            raise InvalidPath(f"Path is not a directory: {path}")
        self._explicit = os.path.abspath(expanded)
        return self._explicit

    def _argv_cwd(self) -> Optional[str]:
        for arg in self._argv[1:]:
            if arg.startswith(CWD_ARG_PREFIX) and len(arg) > len(CWD_ARG_PREFIX):
                return arg[len(CWD_ARG_PREFIX):]
        return None

    def resolve_with_source(self) -> tuple[str, str]:
        if self._explicit:
            return self._explicit, SOURCE_EXPLICIT

        if self._require_explicit:
            raise WorkingDirectoryUnset(
                "Working directory is not set. Call set_working_dir with the "
                "repository path first."
            )

        env_dir = self._environ.get(ENV_WORKING_DIR)
        if env_dir:
            return os.path.abspath(os.path.expanduser(env_dir)), SOURCE_ENV

        argv_dir = self._argv_cwd()
        if argv_dir:
            return os.path.abspath(os.path.expanduser(argv_dir)), SOURCE_ARGV

        # PWD of "/" usually means a launcher that never set it
        pwd = self._environ.get(ENV_PWD)
        if pwd and pwd != os.sep:
            return os.path.abspath(pwd), SOURCE_PWD

        try:
            return os.getcwd(), SOURCE_PROCESS
        except OSError as e:
            raise WorkingDirectoryUnset(
                f"Cannot determine working directory: {e}"
            ) from e

    def resolve(self) -> str:
        return self.resolve_with_source()[0]

    def describe(self) -> str:
        """Human-readable report for debugging where commands will run."""
        path, source = self.resolve_with_source()
        exists = os.path.isdir(path)
        repo_root = _find_repo_root(path) if exists else None
        lines = [
            "📁 Working directory info:",
            f"- Resolved path: {path}",
            f"- Source: {source}",
            f"- Exists: {'yes' if exists else 'no'}",
            f"- Git repository: {repo_root if repo_root else 'not inside a git work tree'}",
            f"- {ENV_WORKING_DIR}: {self._environ.get(ENV_WORKING_DIR) or '(unset)'}",
            f"- {ENV_PWD}: {self._environ.get(ENV_PWD) or '(unset)'}",
        ]
        try:
            lines.append(f"- Process cwd: {os.getcwd()}")
        except OSError:
            lines.append("- Process cwd: (unavailable)")
        return "\n".join(lines)


def _find_repo_root(path: str) -> Optional[str]:
    current = Path(path)
    for candidate in (current, *current.parents):
        if (candidate / ".git").exists():
            return str(candidate)
    return None


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

@dataclass
class AuditRecord:
    timestamp: str
    session_id: str
    sequence: int
    raw_command: str
    command: str
    main_command: Optional[str]
    read_only: Optional[bool]
    status: str
    error: Optional[str]
    rejection_tag: Optional[str]
    exit_code: Optional[int]
    working_dir: Optional[str]
    output_summary: str
    duration_seconds: Optional[float]


def _write_audit_record(record: AuditRecord, audit_dir: Path, session_id: str):
    """Append one audit record to the session's JSONL file."""
    audit_dir.mkdir(parents=True, exist_ok=True)
    filepath = audit_dir / f"git_audit_{session_id}.jsonl"
    with open(filepath, "a", encoding="utf-8") as f:
        f.write(json.dumps(asdict(record), default=str) + "\n")


# ---------------------------------------------------------------------------
# SafeGitShell — main class
# ---------------------------------------------------------------------------

class SafeGitShell:
    """Validate, then run git as an argument vector in the session's working directory.

    Usage:
        shell = SafeGitShell(session_id="sess_001", working_dir=WorkingDirectory("/repo"))
        output = shell.execute("status --short")
    """

    def __init__(
        self,
        session_id: str,
        working_dir: Optional[WorkingDirectory] = None,
        audit_dir: Optional[str] = None,
        rules: Optional[RuleTable] = None,
        timeout_seconds: Optional[float] = None,
        git_binary: str = GIT_BINARY,
        debug: bool = False,
    ):
        self._session_id = session_id
        self._working_dir = working_dir or WorkingDirectory()
        self._audit_dir = Path(audit_dir) if audit_dir else None
        self._rules = rules or DEFAULT_RULE_TABLE
        self._timeout = timeout_seconds
        self._git_binary = git_binary
        self._debug = debug
        self._sequence = 0

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def working_dir(self) -> WorkingDirectory:
        return self._working_dir

    @property
    def rules(self) -> RuleTable:
        return self._rules

    @property
    def debug(self) -> bool:
        return self._debug

    @property
    def audit_path(self) -> Optional[Path]:
        if self._audit_dir is None:
            return None
        return self._audit_dir / f"git_audit_{self._session_id}.jsonl"

    def validate(self, command: str) -> CommandSpec:
        return validate_git_command(command, self._rules)

    def execute(self, command: str) -> str:
        """Validate and run one git command string. Returns stdout followed by stderr.

        Raises:
            CommandRejected: the gate refused the command; nothing was spawned.
            WorkingDirectoryUnset: no working directory could be determined.
            ExecutionFailed: nonzero exit, timeout, or spawn failure.
        """
        return self._run_gated(command)[1]

    def execute_with_spec(self, command: str) -> tuple[CommandSpec, str]:
        """Like execute(), also returning the CommandSpec the gate produced."""
        return self._run_gated(command)

    def run(self, args: list[str]) -> str:
        """Same as execute() for callers that already hold discrete argument tokens."""
        return self._run_gated(shlex.join(args))[1]

    def _run_gated(self, raw: str) -> tuple[CommandSpec, str]:
        self._sequence += 1
        sequence = self._sequence

        try:
            spec = self.validate(raw)
        except CommandRejected as e:
            self._write_audit(
                sequence=sequence, raw=raw, command=e.command, spec=None,
                status=STATUS_REJECTED, error=e.reason, rejection_tag=e.tag,
            )
            raise

        try:
            cwd = self._working_dir.resolve()
        except WorkingDirectoryUnset as e:
            self._write_audit(
                sequence=sequence, raw=raw, command=spec.command, spec=spec,
                status=STATUS_FAILED, error="working_dir_unset", output=str(e),
            )
            raise

        argv = [self._git_binary, *spec.argv]
        if self._debug:
            print(f"[git-shell] #{sequence} {shlex.join(argv)} (cwd={cwd})", file=sys.stderr)

        start_time = time.monotonic()
        try:
            result = subprocess.run(
                argv,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                shell=False,
            )
        except subprocess.TimeoutExpired:
            duration = round(time.monotonic() - start_time, 3)
            self._write_audit(
                sequence=sequence, raw=raw, command=spec.command, spec=spec,
                status=STATUS_FAILED, error="timeout", cwd=cwd, duration=duration,
            )
            raise ExecutionFailed(
                f"Command timed out after {self._timeout}s: git {spec.command}",
                command=spec.command, timed_out=True,
            )
        except OSError as e:
            # git missing from PATH, or cwd deleted after it was set
            duration = round(time.monotonic() - start_time, 3)
            self._write_audit(
                sequence=sequence, raw=raw, command=spec.command, spec=spec,
                status=STATUS_FAILED, error="spawn_error", exit_code=EXIT_CODE_NOT_FOUND,
                cwd=cwd, output=str(e), duration=duration,
            )
            raise ExecutionFailed(
                f"Failed to start git for: git {spec.command}",
                command=spec.command, stderr=str(e), exit_code=EXIT_CODE_NOT_FOUND,
            ) from e

        duration = round(time.monotonic() - start_time, 3)
        stdout = result.stdout or ""
        stderr = result.stderr or ""

        if result.returncode != 0:
            self._write_audit(
                sequence=sequence, raw=raw, command=spec.command, spec=spec,
                status=STATUS_FAILED, error="nonzero_exit", exit_code=result.returncode,
                cwd=cwd, output=stderr or stdout, duration=duration,
            )
            raise ExecutionFailed(
                f"Command failed (exit {result.returncode}): git {spec.command}",
                command=spec.command, stderr=stderr,
                exit_code=result.returncode, stdout=stdout,
            )

        output = stdout + stderr
        self._write_audit(
            sequence=sequence, raw=raw, command=spec.command, spec=spec,
            status=STATUS_COMPLETED, exit_code=0, cwd=cwd, output=output, duration=duration,
        )
        return spec, output

    # --- Audit trail ---

    def read_audit_trail(self, limit: Optional[int] = None) -> list[dict]:
        path = self.audit_path
        if path is None or not path.exists():
            return []
        records = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        if limit is not None:
            return records[-limit:] if limit > 0 else []
        return records

    def clear_audit_trail(self) -> bool:
        """Truncate this session's audit file. Returns False if there was nothing to clear."""
        path = self.audit_path
        if path is None or not path.exists():
            return False
        path.write_text("", encoding="utf-8")
        return True

    def _write_audit(
        self,
        sequence: int,
        raw: str,
        command: str,
        spec: Optional[CommandSpec],
        status: str,
        error: Optional[str] = None,
        rejection_tag: Optional[str] = None,
        exit_code: Optional[int] = None,
        cwd: Optional[str] = None,
        output: str = "",
        duration: Optional[float] = None,
    ):
        """Write an audit record. Failures are logged to stderr but never block execution."""
        if self._audit_dir is None:
            return
        record = AuditRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            session_id=self._session_id,
            sequence=sequence,
            raw_command=raw if isinstance(raw, str) else repr(raw),
            command=command,
            main_command=spec.main_command if spec else None,
            read_only=spec.is_read_only if spec else None,
            status=status,
            error=error,
            rejection_tag=rejection_tag,
            exit_code=exit_code,
            working_dir=cwd,
            output_summary=output[:OUTPUT_SUMMARY_LIMIT] if output else "",
            duration_seconds=duration,
        )

        try:
            _write_audit_record(record, self._audit_dir, self._session_id)
        except Exception as e:
            print(f"WARNING: Audit log write failure: {e}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Response shaping
# ---------------------------------------------------------------------------

def success_response(text: str) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}]}


def failure_response(error: BaseException) -> dict[str, Any]:
    stderr = getattr(error, "stderr", "") or ""
    return {
        "content": [{"type": "text", "text": f"❌ Operation failed:\n{error}\n{stderr}"}],
        "isError": True,
    }


def handle_errors(handler: Callable[..., str]) -> Callable[..., dict[str, Any]]:
    """Route a handler's text result or expected failure through the envelope shaper.

    Only GitShellError is converted; anything else is a defect and propagates.
    """
    @wraps(handler)
    def wrapper(*args, **kwargs) -> dict[str, Any]:
        try:
            return success_response(handler(*args, **kwargs))
        except GitShellError as e:
            return failure_response(e)
    return wrapper
