"""Tests for the per-repository pipeline."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import FakeRunner, fail
from repo_batch.core import (
    CommandResult,
    OutcomeStatus,
    Repository,
    RepoTask,
    TaskMode,
    TaskOptions,
    format_exec_log,
    is_nothing_to_commit,
    log_file_name,
)

NOTHING_TO_COMMIT = CommandResult(
    ok=False,
    stdout="On branch feat/x\nnothing to commit, working tree clean\n",
    error="Command failed: git commit",
    exit_code=1,
)


def make_task(runner, base_path, logs_dir, **options) -> RepoTask:
    return RepoTask(runner, base_path, logs_dir, TaskOptions(**options))


class TestNothingToCommit:
    @pytest.mark.parametrize(
        "text",
        [
            "On branch main\nnothing to commit, working tree clean",
            "nothing added to commit but untracked files present\nnothing to commit",
            'no changes added to commit (use "git add" and/or "git commit -a")',
            "Nothing To Commit",
        ],
    )
    def test_benign_outputs(self, text: str) -> None:
        assert is_nothing_to_commit(text)

    @pytest.mark.parametrize(
        "text",
        [
            "error: pathspec 'package-lock.json' did not match any file(s) known to git",
            "fatal: Unable to create '.git/index.lock': File exists.",
            "",
        ],
    )
    def test_real_failures(self, text: str) -> None:
        assert not is_nothing_to_commit(text)


class TestInstall:
    def test_success_runs_full_pipeline(self, fake_runner, base_path, logs_dir, make_repo):
        repo_path = make_repo("repo-a")
        task = make_task(fake_runner, base_path, logs_dir)

        outcome = task.execute(
            Repository(name="repo-a", branch="feat/x"), TaskMode.INSTALL, ["lodash", "axios"]
        )

        assert outcome.status == OutcomeStatus.SUCCESS
        assert outcome.message == "Committed on feat/x (log: repo-a.log)"
        assert outcome.log_path == logs_dir / "repo-a.log"
        assert fake_runner.commands == [
            "git show-ref --verify --quiet refs/heads/feat/x",
            "git checkout feat/x",
            "npm install lodash axios",
            "git add package.json package-lock.json",
            "git commit -m 'Install: lodash, axios' --no-verify",
            "git push --set-upstream origin feat/x --no-verify",
        ]
        assert {cwd for _, cwd in fake_runner.calls} == {repo_path}

    def test_log_file_holds_every_command(self, base_path, logs_dir, make_repo):
        make_repo("repo-a")
        runner = FakeRunner(
            {
                "npm": CommandResult(ok=True, stdout="added 1 package\n"),
                "git rev-parse --abbrev-ref HEAD": CommandResult(ok=True, stdout="main\n"),
            }
        )

        outcome = make_task(runner, base_path, logs_dir).execute(
            Repository(name="repo-a"), TaskMode.INSTALL, ["lodash"]
        )

        content = outcome.log_path.read_text()
        assert "$ npm install lodash\nadded 1 package" in content
        assert "$ git add package.json package-lock.json" in content
        assert "$ git push --set-upstream origin" in content

    def test_uninstall_commits_as_remove(self, fake_runner, base_path, logs_dir, make_repo):
        make_repo("repo-a")

        make_task(fake_runner, base_path, logs_dir).execute(
            Repository(name="repo-a", branch="feat/x"), TaskMode.UNINSTALL, ["moment"]
        )

        assert "npm uninstall moment" in fake_runner.commands
        assert "git commit -m 'Remove: moment' --no-verify" in fake_runner.commands

    def test_nothing_to_commit_is_skipped_without_push(self, base_path, logs_dir, make_repo):
        make_repo("repo-a")
        runner = FakeRunner({"git commit": NOTHING_TO_COMMIT})

        outcome = make_task(runner, base_path, logs_dir).execute(
            Repository(name="repo-a", branch="feat/x"), TaskMode.INSTALL, ["lodash"]
        )

        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.message == "No changes to commit (log: repo-a.log)"
        assert not any(c.startswith("git push") for c in runner.commands)
        assert outcome.log_path.exists()

    def test_other_commit_failure_is_an_error(self, base_path, logs_dir, make_repo):
        make_repo("repo-a")
        runner = FakeRunner({"git commit": fail("fatal: cannot lock ref\nmore detail")})

        outcome = make_task(runner, base_path, logs_dir).execute(
            Repository(name="repo-a"), TaskMode.INSTALL, ["lodash"]
        )

        assert outcome.status == OutcomeStatus.ERROR
        assert outcome.message == "fatal: cannot lock ref (log: repo-a.log)"
        assert not any(c.startswith("git push") for c in runner.commands)

    def test_npm_failure_stops_before_commit(self, base_path, logs_dir, make_repo):
        make_repo("repo-a")
        runner = FakeRunner({"npm": fail("npm ERR! 404 Not Found - GET https://registry/nope")})

        outcome = make_task(runner, base_path, logs_dir).execute(
            Repository(name="repo-a"), TaskMode.INSTALL, ["nope"]
        )

        assert outcome.status == OutcomeStatus.ERROR
        assert outcome.message.startswith("npm ERR! 404")
        assert not any(c.startswith("git commit") for c in runner.commands)
        assert "npm ERR! 404" in outcome.log_path.read_text()

    def test_push_failure_is_an_error(self, base_path, logs_dir, make_repo):
        make_repo("repo-a")
        runner = FakeRunner({"git push": fail("remote: Permission denied")})

        outcome = make_task(runner, base_path, logs_dir).execute(
            Repository(name="repo-a", branch="feat/x"), TaskMode.INSTALL, ["lodash"]
        )

        assert outcome.status == OutcomeStatus.ERROR
        assert "Permission denied" in outcome.message

    def test_skip_push(self, fake_runner, base_path, logs_dir, make_repo):
        make_repo("repo-a")

        outcome = make_task(fake_runner, base_path, logs_dir, skip_push=True).execute(
            Repository(name="repo-a", branch="feat/x"), TaskMode.INSTALL, ["lodash"]
        )

        assert outcome.status == OutcomeStatus.SUCCESS
        assert not any(c.startswith("git push") for c in fake_runner.commands)
        assert "[skip-push] Skipped pushing to remote" in outcome.log_path.read_text()

    def test_repository_remote_is_used_for_push(self, fake_runner, base_path, logs_dir, make_repo):
        make_repo("repo-a")

        make_task(fake_runner, base_path, logs_dir).execute(
            Repository(name="repo-a", branch="feat/x", remote="upstream"),
            TaskMode.INSTALL,
            ["lodash"],
        )

        assert fake_runner.commands[-1] == "git push --set-upstream upstream feat/x --no-verify"

    def test_without_declared_branch_pushes_current_branch(self, base_path, logs_dir, make_repo):
        make_repo("repo-a")
        runner = FakeRunner(
            {"git rev-parse --abbrev-ref HEAD": CommandResult(ok=True, stdout="develop\n")}
        )

        outcome = make_task(runner, base_path, logs_dir).execute(
            Repository(name="repo-a"), TaskMode.INSTALL, ["lodash"]
        )

        assert not any(c.startswith("git show-ref") for c in runner.commands)
        assert runner.commands[-1] == "git push --set-upstream origin develop --no-verify"
        assert outcome.message.startswith("Committed on develop")

    def test_detached_head_cannot_push(self, base_path, logs_dir, make_repo):
        make_repo("repo-a")
        runner = FakeRunner(
            {"git rev-parse --abbrev-ref HEAD": CommandResult(ok=True, stdout="HEAD\n")}
        )

        outcome = make_task(runner, base_path, logs_dir).execute(
            Repository(name="repo-a"), TaskMode.INSTALL, ["lodash"]
        )

        assert outcome.status == OutcomeStatus.ERROR
        assert not any(c.startswith("git push") for c in runner.commands)

    def test_branch_failure_is_an_error(self, base_path, logs_dir, make_repo):
        make_repo("repo-a")
        runner = FakeRunner(
            {"git show-ref": fail("", exit_code=1), "git fetch": fail("fatal: no remote")}
        )

        outcome = make_task(runner, base_path, logs_dir).execute(
            Repository(name="repo-a", branch="feat/x"), TaskMode.INSTALL, ["lodash"]
        )

        assert outcome.status == OutcomeStatus.ERROR
        assert outcome.message == "Could not check out branch feat/x (log: repo-a.log)"
        assert not any(c.startswith("npm") for c in runner.commands)
        assert "fatal: no remote" in outcome.log_path.read_text()


class TestGuards:
    def test_missing_path(self, fake_runner, base_path, logs_dir):
        outcome = make_task(fake_runner, base_path, logs_dir).execute(
            Repository(name="ghost"), TaskMode.INSTALL, ["lodash"]
        )

        assert outcome.status == OutcomeStatus.ERROR
        assert outcome.message == f"Path not found: {base_path / 'ghost'}"
        assert outcome.log_path is None
        assert fake_runner.calls == []

    def test_dry_run_runs_nothing(self, fake_runner, base_path, logs_dir, make_repo):
        repo_path = make_repo("repo-a")
        lock = repo_path / ".git" / "index.lock"
        lock.touch()

        outcome = make_task(fake_runner, base_path, logs_dir, dry_run=True).execute(
            Repository(name="repo-a", branch="feat/x"), TaskMode.INSTALL, ["lodash", "axios"]
        )

        assert outcome.status == OutcomeStatus.DRY_RUN
        assert outcome.message == "Would install lodash, axios on feat/x"
        assert fake_runner.calls == []
        assert lock.exists()
        assert not logs_dir.exists()

    def test_dry_run_exec_names_the_command(self, fake_runner, base_path, logs_dir, make_repo):
        make_repo("repo-a")

        outcome = make_task(fake_runner, base_path, logs_dir, dry_run=True).execute(
            Repository(name="repo-a"), TaskMode.EXEC, "npm test"
        )

        assert outcome.message == "Would execute: npm test"
        assert fake_runner.calls == []

    def test_stale_lock_is_removed_first(self, fake_runner, base_path, logs_dir, make_repo):
        repo_path = make_repo("repo-a")
        (repo_path / ".git" / "index.lock").touch()

        outcome = make_task(fake_runner, base_path, logs_dir).execute(
            Repository(name="repo-a"), TaskMode.INSTALL, ["lodash"]
        )

        assert not (repo_path / ".git" / "index.lock").exists()
        assert outcome.log_path.read_text().startswith("[cleanup] Removed stale .git/index.lock")

    def test_unexpected_exception_becomes_an_error(self, base_path, logs_dir, make_repo):
        make_repo("repo-a")

        def explode(command: str, cwd: Path) -> CommandResult:
            raise RuntimeError("runner exploded")

        runner = FakeRunner({"git add": explode})

        outcome = make_task(runner, base_path, logs_dir).execute(
            Repository(name="repo-a"), TaskMode.INSTALL, ["lodash"]
        )

        assert outcome.status == OutcomeStatus.ERROR
        assert outcome.message == "Unexpected error: runner exploded"
        assert "[error] runner exploded" in outcome.log_path.read_text()

    def test_path_overrides_name(self, fake_runner, base_path, logs_dir, make_repo):
        repo_path = make_repo("services/api")

        outcome = make_task(fake_runner, base_path, logs_dir).execute(
            Repository(name="api", path="services/api"), TaskMode.EXEC, "true"
        )

        assert outcome.repo == "api"
        assert fake_runner.calls == [("true", repo_path)]

    def test_verbose_echoes_commands(self, base_path, logs_dir, make_repo):
        make_repo("repo-a")
        seen: list[str] = []
        runner = FakeRunner({"npm": CommandResult(ok=True, stdout="added 1 package")})
        task = RepoTask(
            runner, base_path, logs_dir, TaskOptions(verbose=True), echo=seen.append
        )

        task.execute(Repository(name="repo-a"), TaskMode.INSTALL, ["lodash"])

        assert "[repo-a] $ npm install lodash\nadded 1 package" in seen


class TestExec:
    def test_success_writes_structured_log(self, base_path, logs_dir, make_repo):
        repo_path = make_repo("repo-a")
        runner = FakeRunner({"echo": CommandResult(ok=True, stdout="hello\n", exit_code=0)})

        outcome = make_task(runner, base_path, logs_dir).execute(
            Repository(name="repo-a"), TaskMode.EXEC, "echo hello"
        )

        assert outcome.status == OutcomeStatus.SUCCESS
        assert outcome.message == "Executed successfully (log: repo-a-exec.log)"
        assert outcome.log_path.read_text() == "\n".join(
            [
                "Command: echo hello",
                f"Directory: {repo_path}",
                "Exit code: 0",
                "",
                "--- stdout ---",
                "hello\n",
                "",
                "--- stderr ---",
                "(empty)",
            ]
        )

    def test_failure_records_exit_code(self, base_path, logs_dir, make_repo):
        make_repo("repo-a")
        runner = FakeRunner({"exit": fail("Command failed: exit 1", exit_code=1)})

        outcome = make_task(runner, base_path, logs_dir).execute(
            Repository(name="repo-a"), TaskMode.EXEC, "exit 1"
        )

        assert outcome.status == OutcomeStatus.ERROR
        assert outcome.message == "Command failed: exit 1 (log: repo-a-exec.log)"
        assert "Exit code: 1" in outcome.log_path.read_text()

    def test_never_commits_or_pushes(self, fake_runner, base_path, logs_dir, make_repo):
        make_repo("repo-a")

        make_task(fake_runner, base_path, logs_dir).execute(
            Repository(name="repo-a", branch="feat/x"), TaskMode.EXEC, "npm test"
        )

        assert fake_runner.commands == [
            "git show-ref --verify --quiet refs/heads/feat/x",
            "git checkout feat/x",
            "npm test",
        ]

    def test_format_exec_log_without_exit_status(self) -> None:
        content = format_exec_log("sleep 99", Path("/r"), CommandResult(ok=False, error="x"))

        assert "Exit code: none (the command did not exit on its own)" in content
        assert "--- stdout ---\n(empty)" in content

    def test_format_exec_log_keeps_real_exit_code_of_failed_command(self) -> None:
        result = CommandResult(ok=False, error="Output exceeded the 10 byte limit", exit_code=0)

        assert "Exit code: 0" in format_exec_log("cat big", Path("/r"), result)

    def test_timed_out_command_logs_no_exit_code(self, base_path, logs_dir, make_repo):
        make_repo("repo-a")
        timed_out = CommandResult(ok=False, error="Command timed out after 1s: npm test")
        runner = FakeRunner({"npm test": timed_out})

        outcome = make_task(runner, base_path, logs_dir).execute(
            Repository(name="repo-a"), TaskMode.EXEC, "npm test"
        )

        content = outcome.log_path.read_text()
        assert "Exit code: none" in content
        assert "Exit code: 1" not in content


class TestSync:
    def test_fetch_checkout_pull(self, fake_runner, base_path, logs_dir, make_repo):
        make_repo("repo-a")

        outcome = make_task(fake_runner, base_path, logs_dir, remote="upstream").execute(
            Repository(name="repo-a", branch="feat/x"), TaskMode.SYNC, "main"
        )

        assert outcome.status == OutcomeStatus.SUCCESS
        assert outcome.message == "Synced main (log: repo-a-sync.log)"
        assert fake_runner.commands == [
            "git fetch upstream --prune",
            "git checkout main",
            "git pull upstream main",
        ]

    def test_pull_failure(self, base_path, logs_dir, make_repo):
        make_repo("repo-a")
        runner = FakeRunner({"git pull": fail("fatal: Not possible to fast-forward, aborting.")})

        outcome = make_task(runner, base_path, logs_dir).execute(
            Repository(name="repo-a"), TaskMode.SYNC, "main"
        )

        assert outcome.status == OutcomeStatus.ERROR
        assert outcome.message.startswith("fatal: Not possible to fast-forward")


def test_log_file_names_are_per_repository() -> None:
    assert log_file_name("repo-a") == "repo-a.log"
    assert log_file_name("group/repo-a", "-exec") == "group__repo-a-exec.log"
    assert log_file_name("group/repo-a") != log_file_name("group-repo-a")
