"""Shared helper functions and classes for Safe Git Shell tests.

Import these in test files: from helpers import mock_subprocess_result, GitRunRecorder, ...
Fixtures are in conftest.py and are auto-injected by pytest.
"""

import json
from pathlib import Path
from unittest.mock import MagicMock


# ---------------------------------------------------------------------------
# Subprocess mock helpers
# ---------------------------------------------------------------------------

def mock_subprocess_result(stdout="", stderr="", returncode=0):
    """Create a mock subprocess.CompletedProcess."""
    result = MagicMock()
    result.stdout = stdout
    result.stderr = stderr
    result.returncode = returncode
    return result


NO_UPSTREAM_STDERR = (
    "fatal: The current branch {branch} has no upstream branch.\n"
    "To push the current branch and set the remote as upstream, use\n\n"
    "    git push --set-upstream origin {branch}\n"
)


class GitRunRecorder:
    """Stand-in for subprocess.run: records argv and returns pattern-matched results.

    Patterns are matched against the git arguments joined by spaces (without the
    leading 'git'), using startswith. First registered match wins, so register the
    more specific pattern first. A result may be an exception instance, which is raised.
    Successive results for one pattern are returned in order; the last one repeats.
    """

    def __init__(self, default=None):
        self.calls: list = []
        self._patterns: list = []
        self._default = default if default is not None else mock_subprocess_result("")

    def add_response(self, pattern: str, *results):
        self._patterns.append([pattern, list(results)])

    def __call__(self, argv, **kwargs):
        self.calls.append({"argv": list(argv), **kwargs})
        joined = " ".join(argv[1:])
        for pattern, results in self._patterns:
            if joined.startswith(pattern):
                result = results.pop(0) if len(results) > 1 else results[0]
                if isinstance(result, BaseException):
                    raise result
                return result
        return self._default

    def git_args(self) -> list:
        """argv of every call with the git binary dropped."""
        return [c["argv"][1:] for c in self.calls]

    def calls_with(self, pattern: str) -> list:
        return [c for c in self.calls if " ".join(c["argv"][1:]).startswith(pattern)]


# ---------------------------------------------------------------------------
# Envelope helpers
# ---------------------------------------------------------------------------

def envelope_text(envelope: dict) -> str:
    return envelope["content"][0]["text"]


# ---------------------------------------------------------------------------
# Audit log reader helper
# ---------------------------------------------------------------------------

def read_audit_records(audit_dir, session_id="test_session"):
    """Read all audit records from a session's JSONL file."""
    filepath = Path(audit_dir) / f"git_audit_{session_id}.jsonl"
    if not filepath.exists():
        return []
    records = []
    for line in filepath.read_text().strip().split("\n"):
        if line:
            records.append(json.loads(line))
    return records
