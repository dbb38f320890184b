"""Section 1 — Gate: Sub-command allow-list.

Tests AL.01–AL.42. P0 (default deny) and P1 (allow-list correctness, prefix stripping).
"""

import pytest

from safe_git_shell import (
    DEFAULT_RULE_TABLE,
    REJECT_NOT_ALLOWED,
    CommandRejected,
    validate_git_command,
)


# ---------------------------------------------------------------------------
# AL.01–AL.14: P0 — Default deny (sub-commands NOT in allow-list)
# ---------------------------------------------------------------------------

@pytest.mark.p0
@pytest.mark.parametrize("command", [
    pytest.param("foo bar", id="AL.01"),
    pytest.param("rm -rf /", id="AL.02"),
    pytest.param("clean -fdx", id="AL.03"),
    pytest.param("gc --prune=now", id="AL.04"),
    pytest.param("filter-branch --tree-filter 'rm x' HEAD", id="AL.05"),
    pytest.param("submodule foreach 'rm -rf .'", id="AL.06"),
    pytest.param("-c core.pager=sh status", id="AL.07"),
    pytest.param("--git-dir=/etc status", id="AL.08"),
    pytest.param("daemon --export-all", id="AL.09"),
    pytest.param("archive HEAD -o /tmp/x.tar", id="AL.10"),
    pytest.param("git", id="AL.11"),
    pytest.param("STATUS", id="AL.12"),
    pytest.param("update-ref -d refs/heads/main", id="AL.13"),
    pytest.param("bash -c 'echo hi'", id="AL.14"),
])
def test_default_deny(command):
    with pytest.raises(CommandRejected) as exc:
        validate_git_command(command)
    assert exc.value.reason == REJECT_NOT_ALLOWED, (
        f"Expected not-allowed for '{command}', got {exc.value.reason}"
    )


@pytest.mark.p0
@pytest.mark.parametrize("command", [
    pytest.param("", id="AL.15"),
    pytest.param("   ", id="AL.16"),
    pytest.param("git   ", id="AL.17"),
])
def test_empty_command_rejected(command):
    with pytest.raises(CommandRejected) as exc:
        validate_git_command(command)
    assert exc.value.reason == REJECT_NOT_ALLOWED


@pytest.mark.p0
def test_non_string_rejected():
    """AL.18: None / non-string input never reaches tokenisation."""
    with pytest.raises(CommandRejected) as exc:
        validate_git_command(None)
    assert exc.value.reason == REJECT_NOT_ALLOWED


@pytest.mark.p0
def test_malformed_quoting_rejected():
    """AL.19: Unbalanced quotes -> not-allowed, tagged."""
    with pytest.raises(CommandRejected) as exc:
        validate_git_command('commit -m "unterminated')
    assert exc.value.reason == REJECT_NOT_ALLOWED
    assert exc.value.tag == "malformed-quoting"


@pytest.mark.p0
def test_trailing_arguments_do_not_rescue_unknown_command():
    """AL.20: An unknown sub-command is rejected whatever follows it."""
    for suffix in ["", " status", " --help", " log --oneline"]:
        with pytest.raises(CommandRejected):
            validate_git_command(f"frobnicate{suffix}")


# ---------------------------------------------------------------------------
# AL.30–AL.38: P1 — Allowed sub-commands pass
# ---------------------------------------------------------------------------

@pytest.mark.p1
@pytest.mark.parametrize("command,main", [
    pytest.param("status", "status", id="AL.30"),
    pytest.param("log --oneline -10", "log", id="AL.31"),
    pytest.param("branch -a", "branch", id="AL.32"),
    pytest.param("push -u origin main", "push", id="AL.33"),
    pytest.param("commit -m 'initial commit'", "commit", id="AL.34"),
    pytest.param("reset --soft HEAD~1", "reset", id="AL.35"),
    pytest.param("cherry-pick abc123", "cherry-pick", id="AL.36"),
    pytest.param("config user.name 'Ada Lovelace'", "config", id="AL.37"),
    pytest.param("ls-remote origin", "ls-remote", id="AL.38"),
])
def test_allowed_commands_pass(command, main):
    spec = validate_git_command(command)
    assert spec.is_allowed is True
    assert spec.main_command == main


@pytest.mark.p1
def test_every_allow_listed_command_passes_bare():
    """AL.39: Each allow-list entry passes on its own."""
    for main in DEFAULT_RULE_TABLE.allowed_commands:
        assert validate_git_command(main).main_command == main


@pytest.mark.p1
def test_args_are_tokenised():
    """AL.40: Quoted arguments become single tokens."""
    spec = validate_git_command("commit -m 'fix: handle empty input'")
    assert spec.args == ("-m", "fix: handle empty input")
    assert spec.argv == ["commit", "-m", "fix: handle empty input"]


# ---------------------------------------------------------------------------
# AL.41–AL.42: P1 — Prefix stripping is idempotent
# ---------------------------------------------------------------------------

@pytest.mark.p1
@pytest.mark.parametrize("bare", ["status", "log --oneline -5", "commit -m x", "push"])
def test_git_prefix_stripped(bare):
    """AL.41: 'X' and 'git X' produce the same CommandSpec."""
    plain = validate_git_command(bare)
    prefixed = validate_git_command(f"git {bare}")
    padded = validate_git_command(f"  git   {bare}  ")
    assert plain == prefixed == padded
    assert prefixed.command == bare
    assert prefixed.raw == f"git {bare}"


@pytest.mark.p1
def test_only_one_prefix_stripped():
    """AL.42: 'git git status' leaves 'git' as the sub-command -> rejected."""
    with pytest.raises(CommandRejected) as exc:
        validate_git_command("git git status")
    assert exc.value.reason == REJECT_NOT_ALLOWED
