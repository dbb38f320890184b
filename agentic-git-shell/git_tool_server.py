#!/usr/bin/env python3
"""Git Tool Server — MCP stdio server exposing gated git operations.

Usage:
    python git_tool_server.py [--cwd=PATH] [--audit-dir PATH] [--rules-file PATH]
                              [--timeout SECONDS] [--require-working-dir] [--debug]

Every tool goes through SafeGitShell (validate -> resolve cwd -> execute) and
returns the uniform envelope {"content": [{"type": "text", "text": ...}], "isError"?: true}.
"""

import argparse
import asyncio
import os
import platform
import re
import shlex
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import mcp.types as types
from dotenv import load_dotenv
from mcp.server import Server
from mcp.server.stdio import stdio_server

from safe_git_shell import (
    DEFAULT_RULE_TABLE,
    ExecutionFailed,
    GitShellError,
    InvalidArguments,
    SafeGitShell,
    UnknownTool,
    WorkingDirectory,
    handle_errors,
    load_rule_table,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SERVER_NAME = "agentic-git-shell"
SERVER_VERSION = "1.0.0"

ENV_AUDIT_DIR = "GIT_SHELL_AUDIT_DIR"
ENV_RULES_FILE = "GIT_SHELL_RULES_FILE"
ENV_TIMEOUT = "GIT_SHELL_TIMEOUT"
ENV_DEBUG = "GIT_SHELL_DEBUG"

DEFAULT_AUDIT_DIR = "./audit"
DEFAULT_BRANCH = "main"
DEFAULT_LOG_LINES = 50

# git prints "fatal: The current branch <name> has no upstream branch."
NO_UPSTREAM_MARKERS = ("has no upstream branch", "no upstream branch")
_NO_UPSTREAM_BRANCH_RE = re.compile(r"current branch (\S+) has no upstream branch")

READ_ONLY_PREFIX = "📖 "
MUTATING_PREFIX = "✅ "

GITIGNORE_TEMPLATE = """# Dependencies
node_modules/
.venv/
venv/
__pycache__/
*.py[cod]

# Environment variables
.env
.env.local
.env.*.local

# IDE
.vscode/
.idea/
*.swp
*.swo
*~

# OS
.DS_Store
Thumbs.db

# Build output
dist/
build/
*.egg-info/
*.log

# Testing
coverage/
.coverage
.pytest_cache/
"""


# ---------------------------------------------------------------------------
# Tool declarations
# ---------------------------------------------------------------------------

def _schema(properties: Optional[dict] = None, required: Optional[list[str]] = None) -> dict:
    schema: dict[str, Any] = {"type": "object", "properties": properties or {}}
    if required:
        schema["required"] = required
    return schema


TOOL_DEFINITIONS = [
    {
        "name": "git_command",
        "description": (
            "General git command runner. Runs one git sub-command through an allow-list "
            "and a dangerous-pattern filter; destructive flags (--force, --hard, branch -D, "
            "interactive rebase, ...) are refused. No shell is involved."
        ),
        "inputSchema": _schema({
            "command": {"type": "string", "description": (
                "git command without the 'git' prefix, e.g. 'status', "
                "'log --oneline -10', 'branch -a'"
            )},
        }, required=["command"]),
    },
    {
        "name": "set_working_dir",
        "description": "Set the directory git commands run in for this session.",
        "inputSchema": _schema({
            "path": {"type": "string", "description": "Existing directory path"},
        }, required=["path"]),
    },
    {
        "name": "debug_working_dir",
        "description": "Show which working directory git commands will use and where it came from.",
        "inputSchema": _schema(),
    },
    {
        "name": "git_init",
        "description": (
            "Initialise a repository in the working directory, set the default branch, "
            "optionally add an 'origin' remote, and create a .gitignore if none exists."
        ),
        "inputSchema": _schema({
            "remote_url": {"type": "string", "description": "Remote URL for 'origin' (optional)"},
            "branch": {"type": "string", "description": f"Default branch (default: {DEFAULT_BRANCH})"},
        }),
    },
    {
        "name": "git_status",
        "description": "Show working tree status.",
        "inputSchema": _schema(),
    },
    {
        "name": "git_diff",
        "description": "Overview of staged and unstaged changes.",
        "inputSchema": _schema(),
    },
    {
        "name": "git_add",
        "description": "Stage files (default: everything).",
        "inputSchema": _schema({
            "files": {"type": "string", "description": "Space-separated paths (default: '.')"},
        }),
    },
    {
        "name": "git_smart_commit",
        "description": (
            "Stage everything, commit with the given message, and push. If the branch has "
            "no upstream yet, sets 'origin/<branch>' as upstream and pushes once more."
        ),
        "inputSchema": _schema({
            "message": {"type": "string", "description": "Commit message"},
        }, required=["message"]),
    },
    {
        "name": "git_push",
        "description": "Push the current branch, setting its upstream on first push.",
        "inputSchema": _schema(),
    },
    {
        "name": "debug_info",
        "description": "Server diagnostics: platform, working directory, git state, recent audit records.",
        "inputSchema": _schema({
            "include_logs": {"type": "boolean", "description": "Include recent audit records (default: true)"},
            "log_lines": {"type": "integer", "description": f"Number of records (default: {DEFAULT_LOG_LINES})"},
        }),
    },
    {
        "name": "debug_clear_logs",
        "description": "Clear this session's audit trail.",
        "inputSchema": _schema(),
    },
]


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------

def _require_str(args: dict, key: str, what: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidArguments(f"Please provide {what} ('{key}')")
    return value


def _optional_str(args: dict, key: str, default: Optional[str] = None) -> Optional[str]:
    value = args.get(key)
    if value is None or value == "":
        return default
    if not isinstance(value, str):
        raise InvalidArguments(f"'{key}' must be a string")
    return value


def _is_missing_upstream(error: ExecutionFailed) -> bool:
    text = f"{error}\n{error.stderr}"
    return any(marker in text for marker in NO_UPSTREAM_MARKERS)


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------

class GitToolHandlers:
    """One method per tool. Each returns a response envelope, never raises GitShellError."""

    def __init__(self, shell: SafeGitShell):
        self._shell = shell

    @property
    def shell(self) -> SafeGitShell:
        return self._shell

    @handle_errors
    def git_command(self, args: dict) -> str:
        command = _require_str(args, "command", "the git command to run")
        spec, output = self._shell.execute_with_spec(command)
        prefix = READ_ONLY_PREFIX if spec.is_read_only else MUTATING_PREFIX
        return f"{prefix}Git command succeeded:\n\nCommand: git {spec.command}\n\nOutput:\n{output}"

    @handle_errors
    def set_working_dir(self, args: dict) -> str:
        path = _require_str(args, "path", "a working directory path")
        resolved = self._shell.working_dir.set(path)
        return f"✅ Working directory set to: {resolved}"

    @handle_errors
    def debug_working_dir(self, args: dict) -> str:
        return self._shell.working_dir.describe()

    @handle_errors
    def git_init(self, args: dict) -> str:
        remote_url = _optional_str(args, "remote_url")
        branch = _optional_str(args, "branch", DEFAULT_BRANCH)

        result = f"✅ Git repository initialised\n{self._shell.run(['init'])}\n"

        try:
            self._shell.run(["branch", "-M", branch])
            result += f"✅ Default branch set to: {branch}\n"
        except ExecutionFailed:
            # An unborn branch cannot be renamed until the first commit
            result += f"ℹ️  Default branch will be set to {branch} after the first commit\n"

        if remote_url:
            try:
                self._shell.run(["remote", "add", "origin", remote_url])
                result += f"✅ Remote added: {remote_url}\n"
            except ExecutionFailed as e:
                result += f"⚠️  Failed to add remote: {e}\n{e.stderr}"

        gitignore = Path(self._shell.working_dir.resolve()) / ".gitignore"
        if gitignore.exists():
            result += "ℹ️  .gitignore already exists, skipped\n"
        else:
            gitignore.write_text(GITIGNORE_TEMPLATE, encoding="utf-8")
            result += "✅ Created .gitignore\n"

        return result

    @handle_errors
    def git_status(self, args: dict) -> str:
        return self._shell.run(["status"])

    @handle_errors
    def git_diff(self, args: dict) -> str:
        status = self._shell.run(["status", "--short"])
        staged = self._shell.run(["diff", "--cached"])
        unstaged = self._shell.run(["diff"])

        result = f"📊 Change overview:\n\n{status}\n"
        if staged:
            result += f"\n📝 Staged changes (git diff --cached):\n```diff\n{staged}\n```\n"
        if unstaged:
            result += f"\n📝 Unstaged changes (git diff):\n```diff\n{unstaged}\n```\n"
        if not staged and not unstaged:
            result += "\n✅ No changes detected"
        return result

    @handle_errors
    def git_add(self, args: dict) -> str:
        files = _optional_str(args, "files", ".")
        try:
            paths = shlex.split(files)
        except ValueError:
            raise InvalidArguments(f"Cannot parse file list: {files}")
        if not paths:
            paths = ["."]
        self._shell.run(["add", *paths])
        status = self._shell.run(["status", "--short"])
        return f"✅ Staged: {' '.join(paths)}\n\n📊 Current status:\n{status}"

    @handle_errors
    def git_smart_commit(self, args: dict) -> str:
        message = _require_str(args, "message", "a commit message")
        self._shell.run(["add", "."])
        commit_output = self._shell.run(["commit", "-m", message])
        push_output = self.push_with_upstream_recovery()
        return f"✅ Smart commit succeeded!\n\n📝 Commit: {message}\n\n{commit_output}\n{push_output}"

    @handle_errors
    def git_push(self, args: dict) -> str:
        return self.push_with_upstream_recovery()

    def push_with_upstream_recovery(self) -> str:
        """Push; on the one 'no upstream branch' failure, set upstream and push once more.

        Any other push failure propagates untouched.
        """
        try:
            return self._shell.run(["push"])
        except ExecutionFailed as e:
            if not _is_missing_upstream(e):
                raise
            original = e

        match = _NO_UPSTREAM_BRANCH_RE.search(f"{original.stderr}\n{original}")
        if match:
            branch = match.group(1)
        else:
            branch = self._shell.run(["branch", "--show-current"]).strip()
        if not branch:
            raise original

        output = self._shell.run(["push", "--set-upstream", "origin", branch])
        return (
            f"ℹ️  Push without upstream failed: {_first_line(original.stderr) or original}\n"
            f"✅ Upstream branch set automatically: origin/{branch}\n{output}"
        )

    @handle_errors
    def debug_info(self, args: dict) -> str:
        include_logs = args.get("include_logs", True) is not False
        log_lines = args.get("log_lines")
        if log_lines is None:
            log_lines = DEFAULT_LOG_LINES
        if not isinstance(log_lines, int) or isinstance(log_lines, bool) or log_lines < 0:
            raise InvalidArguments("'log_lines' must be a non-negative integer")

        info = "🔍 Debug report\n\n"
        info += f"Time: {datetime.now(timezone.utc).isoformat()}\n\n"
        info += "System:\n"
        info += f"- Python: {platform.python_version()}\n"
        info += f"- Platform: {platform.platform()} ({platform.machine()})\n"
        info += f"- Server: {SERVER_NAME} {SERVER_VERSION}\n"
        info += f"- Session: {self._shell.session_id}\n"
        info += f"- Rule table version: {self._shell.rules.version}\n"

        try:
            info += f"- Working directory: {self._shell.working_dir.resolve()}\n\n"
        except GitShellError as e:
            info += f"- Working directory: ❌ {e}\n\n"

        try:
            branch = self._shell.run(["branch", "--show-current"]).strip()
            status = self._shell.run(["status", "--short"]).strip()
            remotes = self._shell.run(["remote", "-v"]).strip()
            info += "Git:\n"
            info += f"- Current branch: {branch or 'unknown'}\n"
            info += f"- Working tree: {status or 'clean'}\n"
            info += f"- Remotes: {remotes or 'none'}\n\n"
        except GitShellError as e:
            info += f"Git: ❌ {e}\n\n"

        info += f"Debug mode: {'✅ enabled' if self._shell.debug else '❌ disabled'}\n"
        info += f"Audit file: {self._shell.audit_path or 'disabled'}\n\n"

        records = self._shell.read_audit_trail(limit=log_lines) if include_logs else []
        if records:
            info += f"Recent audit records (latest {len(records)}):\n"
            for record in records:
                stamp = record.get("timestamp", "")[11:19]
                status = str(record.get("status", "")).upper()
                info += f"[{stamp}] {status}: git {record.get('command', '')}\n"
        else:
            info += "Logs: no audit records available\n"
        return info

    @handle_errors
    def debug_clear_logs(self, args: dict) -> str:
        if self._shell.clear_audit_trail():
            return "✅ Audit trail cleared"
        return "ℹ️  No audit trail to clear"


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

TOOL_HANDLERS = {
    "git_command": GitToolHandlers.git_command,
    "set_working_dir": GitToolHandlers.set_working_dir,
    "debug_working_dir": GitToolHandlers.debug_working_dir,
    "git_init": GitToolHandlers.git_init,
    "git_status": GitToolHandlers.git_status,
    "git_diff": GitToolHandlers.git_diff,
    "git_add": GitToolHandlers.git_add,
    "git_smart_commit": GitToolHandlers.git_smart_commit,
    "git_push": GitToolHandlers.git_push,
    "debug_info": GitToolHandlers.debug_info,
    "debug_clear_logs": GitToolHandlers.debug_clear_logs,
}


def dispatch_tool(tool_name: str, tool_args: Optional[dict], handlers: GitToolHandlers) -> dict:
    """Route a tool call to its handler. Unknown names raise UnknownTool."""
    handler = TOOL_HANDLERS.get(tool_name)
    if handler is None:
        raise UnknownTool(f"Unknown tool: {tool_name}")
    if tool_args is not None and not isinstance(tool_args, dict):
        raise InvalidArguments(f"Arguments for {tool_name} must be an object")
    return handler(handlers, tool_args or {})


# ---------------------------------------------------------------------------
# MCP transport
# ---------------------------------------------------------------------------

class ToolCallFailed(Exception):
    """Carries a failure envelope's text out of call_tool so the SDK marks isError."""


def build_server(handlers: GitToolHandlers) -> Server:
    server = Server(SERVER_NAME)

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return [
            types.Tool(
                name=definition["name"],
                description=definition["description"],
                inputSchema=definition["inputSchema"],
            )
            for definition in TOOL_DEFINITIONS
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: Optional[dict]) -> list[types.TextContent]:
        try:
            envelope = await asyncio.to_thread(dispatch_tool, name, arguments, handlers)
        except GitShellError as e:
            print(f"[git-shell] Rejected tool call '{name}': {e}", file=sys.stderr)
            raise
        except Exception as e:
            print(f"[git-shell] Unhandled error in tool '{name}': {e}", file=sys.stderr)
            traceback.print_exc(file=sys.stderr)
            raise

        text = envelope["content"][0]["text"]
        if envelope.get("isError"):
            raise ToolCallFailed(text)
        return [types.TextContent(type="text", text=text)]

    return server


async def serve_stdio(handlers: GitToolHandlers):
    server = build_server(handlers)
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _env_timeout() -> Optional[float]:
    raw = os.environ.get(ENV_TIMEOUT, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        print(f"WARNING: ignoring non-numeric {ENV_TIMEOUT}={raw!r}", file=sys.stderr)
        return None


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="MCP stdio server exposing gated git operations")
    parser.add_argument("--cwd", metavar="PATH",
                        help="Working directory fallback (--cwd=PATH); GIT_SHELL_WORKING_DIR takes precedence")
    parser.add_argument("--audit-dir", default=os.environ.get(ENV_AUDIT_DIR, DEFAULT_AUDIT_DIR),
                        help=f"Audit trail directory (default: {DEFAULT_AUDIT_DIR})")
    parser.add_argument("--no-audit", action="store_true", help="Disable the JSONL audit trail")
    parser.add_argument("--rules-file", default=os.environ.get(ENV_RULES_FILE),
                        help="JSON rule table replacing the built-in allow-list and patterns")
    parser.add_argument("--timeout", type=float, default=_env_timeout(),
                        help="Per-command timeout in seconds (default: none)")
    parser.add_argument("--require-working-dir", action="store_true",
                        help="Refuse to run git until set_working_dir has been called")
    parser.add_argument("--session-id", help="Audit session id (default: timestamp based)")
    parser.add_argument("--debug", action="store_true", default=_env_flag(ENV_DEBUG),
                        help="Trace every git invocation to stderr")
    return parser


def main(argv: Optional[list[str]] = None):
    load_dotenv()
    # Defaults read the environment, so build the parser after .env is loaded
    args = build_arg_parser().parse_args(argv)
    # The resolver reads --cwd=PATH itself; normalise "--cwd PATH" into that form
    process_argv = [sys.argv[0]] + ([f"--cwd={args.cwd}"] if args.cwd else [])

    try:
        rules = load_rule_table(args.rules_file) if args.rules_file else DEFAULT_RULE_TABLE
    except ValueError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        sys.exit(1)

    session_id = args.session_id or f"git_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}"
    working_dir = WorkingDirectory(argv=process_argv, require_explicit=args.require_working_dir)
    shell = SafeGitShell(
        session_id=session_id,
        working_dir=working_dir,
        audit_dir=None if args.no_audit else args.audit_dir,
        rules=rules,
        timeout_seconds=args.timeout,
        debug=args.debug,
    )
    handlers = GitToolHandlers(shell)

    print(f"[git-shell] {SERVER_NAME} {SERVER_VERSION} running on stdio "
          f"(session {session_id})", file=sys.stderr)
    try:
        print(f"[git-shell] root: {working_dir.resolve()}", file=sys.stderr)
    except GitShellError as e:
        print(f"[git-shell] root: {e}", file=sys.stderr)

    try:
        asyncio.run(serve_stdio(handlers))
    except KeyboardInterrupt:
        print("\n[git-shell] Interrupted — shutting down.", file=sys.stderr)
        sys.exit(0)
    except Exception as e:
        print(f"[ERROR] Uncaught server fault: {e}", file=sys.stderr)
        traceback.print_exc(file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
