"""Shared fixtures for Safe Git Shell tests.

Fixtures are auto-injected by pytest. Helper functions are in helpers.py.
"""

import shutil
import sys
from pathlib import Path

import pytest
from unittest.mock import patch

# Add parent directory and tests directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from git_tool_server import GitToolHandlers
from safe_git_shell import SafeGitShell, WorkingDirectory
from helpers import GitRunRecorder


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_audit_dir(tmp_path):
    return str(tmp_path / "audit")


@pytest.fixture
def repo_dir(tmp_path):
    path = tmp_path / "repo"
    path.mkdir()
    return path


@pytest.fixture
def working_dir(repo_dir):
    """Working directory pinned to repo_dir, isolated from the real environment."""
    return WorkingDirectory(path=str(repo_dir), environ={}, argv=["git_tool_server.py"])


@pytest.fixture
def make_shell(tmp_audit_dir, working_dir):
    """Factory fixture to create SafeGitShell instances with configurable options."""
    def _make(
        working_dir=working_dir,
        audit=True,
        rules=None,
        timeout=None,
        session_id="test_session",
        debug=False,
    ):
        return SafeGitShell(
            session_id=session_id,
            working_dir=working_dir,
            audit_dir=tmp_audit_dir if audit else None,
            rules=rules,
            timeout_seconds=timeout,
            debug=debug,
        )
    return _make


@pytest.fixture
def shell(make_shell):
    return make_shell()


@pytest.fixture
def handlers(shell):
    return GitToolHandlers(shell)


@pytest.fixture
def git_run():
    """Patch subprocess.run inside safe_git_shell with a recording stand-in."""
    recorder = GitRunRecorder()
    with patch("safe_git_shell.subprocess.run", side_effect=recorder):
        yield recorder


@pytest.fixture
def isolated_git_env(monkeypatch, tmp_path):
    """Real git with no user/system config leaking in."""
    if shutil.which("git") is None:
        pytest.skip("git executable not available")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(tmp_path / "gitconfig"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    (tmp_path / "gitconfig").write_text("")
