"""
repo-batch: Apply one change across a fleet of repositories.

Installs or removes npm packages, or runs any shell command, in every
repository listed in a repos.json file, then commits and pushes the
result and reports what happened in each one.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
import signal
import subprocess
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
)

from ._version import __version__
from .formatters import OutputFormatter
from .schema import get_tool_schema

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT = 10 * 1024 * 1024
PARALLEL_LIMIT = 5
ERROR_EXIT_CODE = 2
DEFAULT_REMOTE = "origin"
DEFAULT_BASE_BRANCH = "main"
DEFAULT_CONFIG_FILE = "repos.json"
CONFIG_ENV_VAR = "REPO_BATCH_CONFIG"
MANIFEST_FILES = ("package.json", "package-lock.json")
NOTHING_TO_COMMIT_MARKERS = ("nothing to commit", "no changes added to commit")

# =============================================================================
# Domain Models
# =============================================================================


class OutcomeStatus(StrEnum):
    """Terminal status of one repository."""

    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"


class TaskMode(StrEnum):
    """What a batch run does in each repository."""

    INSTALL = "install"
    UNINSTALL = "uninstall"
    EXEC = "exec"
    SYNC = "sync"


class ConfigError(Exception):
    """Configuration or selection problem that aborts the run before dispatch."""

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class Repository:
    """One entry of the repositories list."""

    name: str = ""
    path: str = ""
    branch: str = ""
    remote: str = ""

    @property
    def key(self) -> str:
        """Identity of the repository: its name, or its path."""
        return self.name or self.path

    def resolve_path(self, base_path: Path) -> Path:
        return (base_path.expanduser() / (self.path or self.name)).resolve()

    @classmethod
    def from_dict(cls, data: Any, index: int = 0) -> Repository:
        if not isinstance(data, dict):
            raise ConfigError(f"Repository entry #{index} is not an object", "CONFIG_INVALID")
        repo = cls(
            name=str(data.get("name") or ""),
            path=str(data.get("path") or ""),
            branch=str(data.get("branch") or data.get("branchName") or ""),
            remote=str(data.get("remote") or ""),
        )
        if not repo.key:
            raise ConfigError(
                f"Repository entry #{index} has neither a name nor a path", "CONFIG_INVALID"
            )
        return repo


@dataclass
class RunConfig:
    """Loaded repos.json."""

    base_path: Path
    repositories: list[Repository]
    source: Path = Path(DEFAULT_CONFIG_FILE)


@dataclass
class TaskContext:
    """Per-repository state of a running task. Never shared between tasks."""

    repo_name: str
    repo_path: Path
    expected_branch: str
    remote: str
    mode: TaskMode
    dry_run: bool = False
    skip_push: bool = False
    verbose: bool = False


@dataclass
class CommandResult:
    """Result of one shell command."""

    ok: bool
    stdout: str = ""
    stderr: str = ""
    error: str = ""
    exit_code: int | None = None

    @property
    def output(self) -> str:
        """Combined stdout and stderr, as it would appear in a terminal."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)

    @property
    def first_error_line(self) -> str:
        lines = self.error.strip().splitlines()
        return lines[0] if lines else "Command failed"


@dataclass
class RepoOutcome:
    """Final result for one repository."""

    repo: str
    status: OutcomeStatus
    message: str = ""
    log_path: Path | None = None

    @property
    def is_error(self) -> bool:
        return self.status == OutcomeStatus.ERROR

    def to_dict(self) -> dict:
        return {
            "repo": self.repo,
            "status": self.status.value,
            "message": self.message,
            "log_path": str(self.log_path) if self.log_path else None,
        }


@dataclass
class BatchSummary:
    """Counts of outcomes by status."""

    total: int = 0
    success: int = 0
    skipped: int = 0
    dry_run: int = 0
    errors: int = 0

    @property
    def exit_code(self) -> int:
        return ERROR_EXIT_CODE if self.errors else 0

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "success": self.success,
            "skipped": self.skipped,
            "dry_run": self.dry_run,
            "errors": self.errors,
            "exit_code": self.exit_code,
        }

    @classmethod
    def from_outcomes(cls, outcomes: Sequence[RepoOutcome]) -> BatchSummary:
        return cls(
            total=len(outcomes),
            success=sum(1 for o in outcomes if o.status == OutcomeStatus.SUCCESS),
            skipped=sum(1 for o in outcomes if o.status == OutcomeStatus.SKIPPED),
            dry_run=sum(1 for o in outcomes if o.status == OutcomeStatus.DRY_RUN),
            errors=sum(1 for o in outcomes if o.is_error),
        )


class LogBuffer:
    """Ordered command log for one repository, written to disk exactly once."""

    def __init__(self, echo: Callable[[str], None] | None = None):
        self.entries: list[str] = []
        self.echo = echo
        self.flushed = False

    def record(self, command: str, output: str) -> None:
        entry = f"$ {command}\n{output}"
        self.entries.append(entry)
        if self.echo:
            self.echo(entry)

    def note(self, text: str) -> None:
        self.entries.append(text)
        if self.echo:
            self.echo(text)

    def flush(self, path: Path, content: str | None = None) -> Path:
        """Write the log file. `content` replaces the buffered entries when given."""
        if self.flushed:
            raise RuntimeError(f"Log for {path.name} was already written")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content if content is not None else "\n".join(self.entries), "utf-8")
        self.flushed = True
        return path


def is_nothing_to_commit(text: str) -> bool:
    """Check whether git's commit output means there was simply nothing to commit."""
    lowered = text.lower()
    return any(marker in lowered for marker in NOTHING_TO_COMMIT_MARKERS)


def format_exec_log(command: str, directory: Path, result: CommandResult) -> str:
    """Fixed-field log record for an exec run."""
    if result.exit_code is not None:
        exit_code = str(result.exit_code)
    elif result.ok:
        exit_code = "0"
    else:
        exit_code = "none (the command did not exit on its own)"
    return "\n".join(
        [
            f"Command: {command}",
            f"Directory: {directory}",
            f"Exit code: {exit_code}",
            "",
            "--- stdout ---",
            result.stdout or "(empty)",
            "",
            "--- stderr ---",
            result.stderr or "(empty)",
        ]
    )


def log_file_name(key: str, suffix: str = "") -> str:
    """Build a log file name that is unique per repository key."""
    safe = re.sub(r"[^\w.-]+", "__", key).strip("_") or "repo"
    return f"{safe}{suffix}.log"


# =============================================================================
# Command Runner (Low-level)
# =============================================================================


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class CommandRunner:
    """Run shell commands in an explicit directory, reporting failure as data."""

    def __init__(self, timeout: float | None = None, max_output: int = DEFAULT_MAX_OUTPUT):
        self.timeout = timeout
        self.max_output = max_output

    def run(self, command: str, *, cwd: Path) -> CommandResult:
        """Run `command` through the shell inside `cwd`. Never raises."""
        logger.debug("Running %r in %s", command, cwd)
        try:
            # Own process group so a timeout can kill everything the shell spawned
            proc = subprocess.Popen(
                command,
                shell=True,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            return CommandResult(ok=False, error=str(e))

        try:
            stdout, stderr = proc.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            _kill_group(proc)
            stdout, stderr = proc.communicate()
            return CommandResult(
                ok=False,
                stdout=_as_text(stdout),
                stderr=_as_text(stderr),
                error=f"Command timed out after {self.timeout}s: {command}",
            )

        size = len(stdout.encode("utf-8")) + len(stderr.encode("utf-8"))
        if size > self.max_output:
            return CommandResult(
                ok=False,
                stdout=_truncate(stdout, self.max_output),
                stderr=_truncate(stderr, self.max_output),
                error=f"Output exceeded the {self.max_output} byte limit: {command}",
                exit_code=proc.returncode,
            )

        if proc.returncode != 0:
            return CommandResult(
                ok=False,
                stdout=stdout,
                stderr=stderr,
                error=stderr.strip() or f"Command failed: {command}",
                exit_code=proc.returncode,
            )

        return CommandResult(ok=True, stdout=stdout, stderr=stderr, exit_code=0)


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def _truncate(text: str, limit: int) -> str:
    """Cut `text` to at most `limit` UTF-8 bytes."""
    return text.encode("utf-8")[:limit].decode("utf-8", errors="ignore")


def remove_stale_lock(repo_path: Path) -> bool:
    """Delete a leftover .git/index.lock. Returns True if one was removed."""
    lock_file = repo_path / ".git" / "index.lock"
    if not lock_file.exists():
        return False
    try:
        lock_file.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning("Could not remove stale lock %s: %s", lock_file, e)
        return False
    return True


# =============================================================================
# Branch Resolver
# =============================================================================


class BranchResolver:
    """Make sure a branch exists locally, creating it from remote or from main."""

    def __init__(self, runner: CommandRunner, base_branch: str = DEFAULT_BASE_BRANCH):
        self.runner = runner
        self.base_branch = base_branch

    def _git(self, repo_path: Path, args: str, log: LogBuffer | None) -> CommandResult:
        command = f"git {args}"
        result = self.runner.run(command, cwd=repo_path)
        if log is not None:
            log.record(command, result.output)
        return result

    def local_branch_exists(
        self, repo_path: Path, branch: str, log: LogBuffer | None = None
    ) -> bool:
        ref = shlex.quote(f"refs/heads/{branch}")
        return self._git(repo_path, f"show-ref --verify --quiet {ref}", log).ok

    def remote_branch_exists(
        self, repo_path: Path, branch: str, remote: str, log: LogBuffer | None = None
    ) -> bool:
        ref = shlex.quote(f"refs/remotes/{remote}/{branch}")
        return self._git(repo_path, f"show-ref --verify --quiet {ref}", log).ok

    def current_branch(self, repo_path: Path, log: LogBuffer | None = None) -> str:
        result = self._git(repo_path, "rev-parse --abbrev-ref HEAD", log)
        return result.stdout.strip() if result.ok else ""

    def ensure_branch(
        self,
        repo_path: Path,
        branch: str,
        remote: str = DEFAULT_REMOTE,
        log: LogBuffer | None = None,
    ) -> bool:
        """Ensure `branch` exists locally.

        Order: an existing local branch wins and nothing is touched; otherwise
        fetch `remote`, track `remote/branch` if it exists, and as a last
        resort fast-forward the base branch and branch off it.

        Returns:
            True if the branch now exists locally, False if it could not be made.
        """
        if self.local_branch_exists(repo_path, branch, log):
            logger.debug("%s: branch %s exists locally", repo_path.name, branch)
            return True

        if not self._git(repo_path, f"fetch {shlex.quote(remote)} --prune", log).ok:
            return False

        if self.remote_branch_exists(repo_path, branch, remote, log):
            upstream = shlex.quote(f"{remote}/{branch}")
            return self._git(
                repo_path, f"checkout --track -b {shlex.quote(branch)} {upstream}", log
            ).ok

        return self._branch_from_base(repo_path, branch, remote, log)

    def _branch_from_base(
        self, repo_path: Path, branch: str, remote: str, log: LogBuffer | None
    ) -> bool:
        base = shlex.quote(self.base_branch)
        if self.current_branch(repo_path, log) == self.base_branch:
            # fetch refuses to update the checked-out branch
            update = self._git(
                repo_path, f"merge --ff-only {shlex.quote(f'{remote}/{self.base_branch}')}", log
            )
        else:
            update = self._git(repo_path, f"fetch {shlex.quote(remote)} {base}:{base}", log)
        if not update.ok:
            return False

        return self._git(
            repo_path, f"checkout --no-track -b {shlex.quote(branch)} {base}", log
        ).ok


# =============================================================================
# Repo Task
# =============================================================================


@dataclass(frozen=True)
class TaskOptions:
    """Run-wide flags shared (read-only) by every task."""

    dry_run: bool = False
    skip_push: bool = False
    verbose: bool = False
    remote: str = DEFAULT_REMOTE
    base_branch: str = DEFAULT_BASE_BRANCH


class RepoTask:
    """The per-repository pipeline: branch, change, commit, push, log."""

    def __init__(
        self,
        runner: CommandRunner,
        base_path: Path,
        logs_dir: Path,
        options: TaskOptions | None = None,
        echo: Callable[[str], None] | None = None,
    ):
        self.runner = runner
        self.base_path = base_path
        self.logs_dir = logs_dir
        self.options = options or TaskOptions()
        self.echo = echo
        self.resolver = BranchResolver(runner, base_branch=self.options.base_branch)

    def context_for(self, repo: Repository, mode: TaskMode) -> TaskContext:
        return TaskContext(
            repo_name=repo.key,
            repo_path=repo.resolve_path(self.base_path),
            expected_branch=repo.branch,
            remote=repo.remote or self.options.remote,
            mode=mode,
            dry_run=self.options.dry_run,
            skip_push=self.options.skip_push,
            verbose=self.options.verbose,
        )

    def execute(
        self,
        repo: Repository,
        mode: TaskMode,
        payload: Sequence[str] | str | None = None,
    ) -> RepoOutcome:
        """Run the pipeline for one repository. Always returns an outcome."""
        ctx = self.context_for(repo, mode)
        log = LogBuffer(echo=self._echo_for(ctx) if ctx.verbose else None)
        try:
            return self._execute(ctx, payload, log)
        except Exception as e:
            logger.warning("%s: unexpected error", ctx.repo_name, exc_info=True)
            return RepoOutcome(
                repo=ctx.repo_name,
                status=OutcomeStatus.ERROR,
                message=f"Unexpected error: {e}",
                log_path=self._flush_after_crash(ctx, log, e),
            )

    def _flush_after_crash(
        self, ctx: TaskContext, log: LogBuffer, error: Exception
    ) -> Path | None:
        if log.flushed or not log.entries:
            return None
        log.note(f"[error] {error}")
        try:
            return log.flush(self._log_path(ctx))
        except OSError as e:
            logger.warning("%s: could not write log: %s", ctx.repo_name, e)
            return None

    def _echo_for(self, ctx: TaskContext) -> Callable[[str], None] | None:
        if self.echo is None:
            return None
        echo = self.echo
        return lambda text: echo(f"[{ctx.repo_name}] {text}")

    def _log_path(self, ctx: TaskContext) -> Path:
        suffix = {TaskMode.EXEC: "-exec", TaskMode.SYNC: "-sync"}.get(ctx.mode, "")
        return self.logs_dir / log_file_name(ctx.repo_name, suffix)

    def _run(self, ctx: TaskContext, command: str, log: LogBuffer) -> CommandResult:
        result = self.runner.run(command, cwd=ctx.repo_path)
        log.record(command, result.output)
        return result

    def _finish(
        self, ctx: TaskContext, log: LogBuffer, status: OutcomeStatus, message: str
    ) -> RepoOutcome:
        log_path = log.flush(self._log_path(ctx))
        return RepoOutcome(
            repo=ctx.repo_name,
            status=status,
            message=f"{message} (log: {log_path.name})",
            log_path=log_path,
        )

    def _execute(
        self, ctx: TaskContext, payload: Sequence[str] | str | None, log: LogBuffer
    ) -> RepoOutcome:
        if not ctx.repo_path.is_dir():
            return RepoOutcome(
                repo=ctx.repo_name,
                status=OutcomeStatus.ERROR,
                message=f"Path not found: {ctx.repo_path}",
            )

        if ctx.dry_run:
            return RepoOutcome(
                repo=ctx.repo_name,
                status=OutcomeStatus.DRY_RUN,
                message=self.describe(ctx, payload),
            )

        if remove_stale_lock(ctx.repo_path):
            log.note("[cleanup] Removed stale .git/index.lock")

        if ctx.mode == TaskMode.SYNC:
            return self._sync(ctx, str(payload or self.options.base_branch), log)

        if ctx.expected_branch and not self._checkout_expected_branch(ctx, log):
            return self._finish(
                ctx,
                log,
                OutcomeStatus.ERROR,
                f"Could not check out branch {ctx.expected_branch}",
            )

        if ctx.mode == TaskMode.EXEC:
            return self._exec(ctx, str(payload or ""), log)

        return self._change_packages(ctx, list(payload or []), log)

    def describe(self, ctx: TaskContext, payload: Sequence[str] | str | None) -> str:
        """Describe what the task would do, for dry runs."""
        if ctx.mode == TaskMode.EXEC:
            return f"Would execute: {payload}"
        if ctx.mode == TaskMode.SYNC:
            branch = payload or self.options.base_branch
            return f"Would fetch {ctx.remote}, checkout {branch} and pull {ctx.remote}/{branch}"
        packages = ", ".join(payload or [])
        branch = ctx.expected_branch or "the current branch"
        return f"Would {ctx.mode.value} {packages} on {branch}"

    def _checkout_expected_branch(self, ctx: TaskContext, log: LogBuffer) -> bool:
        branch = ctx.expected_branch
        if not self.resolver.ensure_branch(ctx.repo_path, branch, ctx.remote, log):
            return False
        return self._run(ctx, f"git checkout {shlex.quote(branch)}", log).ok

    def _exec(self, ctx: TaskContext, command: str, log: LogBuffer) -> RepoOutcome:
        result = self.runner.run(command, cwd=ctx.repo_path)
        if log.echo:
            log.echo(f"$ {command}\n{result.output}")
        # The fixed-field record replaces any buffered branch steps
        log_path = log.flush(
            self._log_path(ctx), format_exec_log(command, ctx.repo_path, result)
        )
        if result.ok:
            return RepoOutcome(
                repo=ctx.repo_name,
                status=OutcomeStatus.SUCCESS,
                message=f"Executed successfully (log: {log_path.name})",
                log_path=log_path,
            )
        return RepoOutcome(
            repo=ctx.repo_name,
            status=OutcomeStatus.ERROR,
            message=f"{result.first_error_line} (log: {log_path.name})",
            log_path=log_path,
        )

    def _change_packages(
        self, ctx: TaskContext, packages: list[str], log: LogBuffer
    ) -> RepoOutcome:
        npm = self._run(
            ctx, f"npm {ctx.mode.value} {' '.join(shlex.quote(p) for p in packages)}", log
        )
        if not npm.ok:
            return self._finish(ctx, log, OutcomeStatus.ERROR, npm.first_error_line)

        add = self._run(ctx, f"git add {' '.join(MANIFEST_FILES)}", log)
        if not add.ok:
            return self._finish(ctx, log, OutcomeStatus.ERROR, add.first_error_line)

        prefix = "Install" if ctx.mode == TaskMode.INSTALL else "Remove"
        message = f"{prefix}: {', '.join(packages)}"
        commit = self._run(ctx, f"git commit -m {shlex.quote(message)} --no-verify", log)
        if not commit.ok:
            if is_nothing_to_commit(f"{commit.stdout}\n{commit.stderr}\n{commit.error}"):
                return self._finish(ctx, log, OutcomeStatus.SKIPPED, "No changes to commit")
            return self._finish(ctx, log, OutcomeStatus.ERROR, commit.first_error_line)

        branch = ctx.expected_branch or self.resolver.current_branch(ctx.repo_path, log)
        if ctx.skip_push:
            log.note("[skip-push] Skipped pushing to remote")
            return self._finish(ctx, log, OutcomeStatus.SUCCESS, f"Committed on {branch}")

        if not branch or branch == "HEAD":
            return self._finish(
                ctx, log, OutcomeStatus.ERROR, "Cannot push: no branch is checked out"
            )

        push = self._run(
            ctx,
            f"git push --set-upstream {shlex.quote(ctx.remote)} {shlex.quote(branch)} --no-verify",
            log,
        )
        if not push.ok:
            return self._finish(ctx, log, OutcomeStatus.ERROR, push.first_error_line)

        return self._finish(ctx, log, OutcomeStatus.SUCCESS, f"Committed on {branch}")

    def _sync(self, ctx: TaskContext, branch: str, log: LogBuffer) -> RepoOutcome:
        remote = shlex.quote(ctx.remote)
        for command in (
            f"git fetch {remote} --prune",
            f"git checkout {shlex.quote(branch)}",
            f"git pull {remote} {shlex.quote(branch)}",
        ):
            result = self._run(ctx, command, log)
            if not result.ok:
                return self._finish(ctx, log, OutcomeStatus.ERROR, result.first_error_line)
        return self._finish(ctx, log, OutcomeStatus.SUCCESS, f"Synced {branch}")


# =============================================================================
# Batch Manager
# =============================================================================


class BatchManager:
    """Run a RepoTask over many repositories with a fixed concurrency ceiling."""

    def __init__(self, task: RepoTask, parallel: bool = False):
        self.task = task
        self.max_workers = PARALLEL_LIMIT if parallel else 1

    def _run_one(
        self,
        repo: Repository,
        mode: TaskMode,
        payload: Sequence[str] | str | None,
        on_start: Callable[[Repository], None] | None,
    ) -> RepoOutcome:
        if on_start:
            on_start(repo)
        return self.task.execute(repo, mode, payload)

    def run(
        self,
        repos: Sequence[Repository],
        mode: TaskMode,
        payload: Sequence[str] | str | None = None,
        on_start: Callable[[Repository], None] | None = None,
        on_complete: Callable[[RepoOutcome], None] | None = None,
    ) -> list[RepoOutcome]:
        """Run every repository and return one outcome each, in completion order."""
        results: list[RepoOutcome] = []

        def collect(outcome: RepoOutcome) -> None:
            results.append(outcome)
            if on_complete:
                on_complete(outcome)

        if self.max_workers == 1 or len(repos) <= 1:
            for repo in repos:
                try:
                    outcome = self._run_one(repo, mode, payload, on_start)
                except Exception as e:
                    outcome = _crashed(repo, e)
                collect(outcome)
            return results

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self._run_one, repo, mode, payload, on_start): repo
                for repo in repos
            }
            for future in as_completed(futures):
                try:
                    outcome = future.result()
                except Exception as e:
                    outcome = _crashed(futures[future], e)
                collect(outcome)

        return results


def _crashed(repo: Repository, error: Exception) -> RepoOutcome:
    logger.warning("%s: task crashed", repo.key, exc_info=error)
    return RepoOutcome(repo=repo.key, status=OutcomeStatus.ERROR, message=f"Task crashed: {error}")


def execution_mode_message(parallel: bool) -> str:
    if parallel:
        return f"Running in parallel mode: concurrent tasks limit is {PARALLEL_LIMIT}"
    return "Running in sequential mode"


# =============================================================================
# Configuration
# =============================================================================


def resolve_config_path(explicit: Path | None = None) -> Path:
    """Pick the config file.

    Priority order:
    1. --config option
    2. $REPO_BATCH_CONFIG environment variable
    3. ./repos.json
    """
    if explicit:
        return explicit.expanduser()
    env_config = os.environ.get(CONFIG_ENV_VAR)
    if env_config:
        return Path(env_config).expanduser()
    return Path(DEFAULT_CONFIG_FILE)


def load_config(config_path: Path) -> RunConfig:
    """Load and validate the repositories file."""
    try:
        raw = config_path.read_text("utf-8")
    except OSError as e:
        raise ConfigError(f"Could not read {config_path}: {e}", "CONFIG_READ_ERROR") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{config_path} is not valid JSON: {e}", "CONFIG_PARSE_ERROR") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a JSON object", "CONFIG_INVALID")

    base_path = data.get("basePath")
    if not base_path or not isinstance(base_path, str):
        raise ConfigError(f'Missing "basePath" in {config_path}', "CONFIG_MISSING_BASEPATH")

    entries = data.get("repositories") or []
    if not isinstance(entries, list):
        raise ConfigError(f'"repositories" in {config_path} must be a list', "CONFIG_INVALID")

    repositories = [Repository.from_dict(entry, i) for i, entry in enumerate(entries)]
    seen: set[str] = set()
    for repo in repositories:
        if repo.key in seen:
            raise ConfigError(
                f'Repository "{repo.key}" is listed more than once in {config_path}',
                "CONFIG_INVALID",
            )
        seen.add(repo.key)

    return RunConfig(base_path=Path(base_path), repositories=repositories, source=config_path)


def filter_repositories(
    repos: Sequence[Repository], only: str | None, source: str = DEFAULT_CONFIG_FILE
) -> tuple[list[Repository], list[str]]:
    """Apply the --only filter.

    Returns:
        tuple of (matched repositories in config order, names that matched nothing)
    """
    if not repos:
        raise ConfigError(f"No repositories defined in {source}", "NO_REPOSITORIES")

    if only is None:
        return list(repos), []

    wanted = [name.strip() for name in str(only).split(",") if name.strip()]
    if not wanted:
        raise ConfigError("--only provided but no repo names parsed", "FILTER_EMPTY")

    matched = [r for r in repos if r.name in wanted or (r.path and r.path in wanted)]
    if not matched:
        raise ConfigError(
            f"None of the names passed to --only matched {source}: {','.join(wanted)}",
            "FILTER_NO_MATCH",
        )

    found = {r.name for r in matched} | {r.path for r in matched if r.path}
    unknown = [name for name in wanted if name not in found]
    return matched, unknown


# =============================================================================
# CLI Application
# =============================================================================


app = typer.Typer(
    name="repo-batch",
    help="Apply one change across a fleet of repositories.",
    no_args_is_help=True,
)


def configure_logging(debug: bool = False) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=debug)
        ],
        force=True,
    )


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"repo-batch {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    schema: bool = typer.Option(
        False,
        "--schema",
        help="Output MCP-compatible tool schema for AI agents",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Log every command and show tracebacks",
    ),
):
    """repo-batch: Apply one change across a fleet of repositories."""
    configure_logging(debug)
    if schema:
        print(json.dumps(get_tool_schema(), indent=2))
        raise typer.Exit()


def get_console_and_formatter(json_output: bool) -> tuple[Console, OutputFormatter]:
    """Create console and formatter."""
    console = Console(force_terminal=not json_output)
    formatter = OutputFormatter(console, use_json=json_output)
    return console, formatter


def abort(message: str) -> NoReturn:
    """Report a pre-dispatch error on stderr and exit 1."""
    Console(stderr=True).print(f"[red]Error: {escape(message)}[/]", highlight=False)
    raise typer.Exit(1)


def run_batch(
    mode: TaskMode,
    payload: Sequence[str] | str,
    *,
    config_path: Path | None,
    only: str | None,
    dry_run: bool,
    parallel: bool,
    verbose: bool,
    json_output: bool,
    logs_dir: Path,
    timeout: float | None,
    skip_push: bool = False,
    remote: str = DEFAULT_REMOTE,
    base_branch: str = DEFAULT_BASE_BRANCH,
    banner: str | None = None,
) -> None:
    """Shared body of every batch command. Exits 1 on config errors, 2 on repo errors."""
    console, formatter = get_console_and_formatter(json_output)
    err_console = Console(stderr=True)

    try:
        config = load_config(resolve_config_path(config_path))
        selected, unknown = filter_repositories(config.repositories, only, str(config.source))
    except ConfigError as e:
        abort(str(e))

    if unknown:
        err_console.print(
            "[yellow]Warning: these names from --only were not found and will be ignored: "
            f"{escape(', '.join(unknown))}[/]"
        )

    if not json_output:
        if banner:
            console.print(banner, highlight=False)
        console.print(f"\n{execution_mode_message(parallel)}\n")

    echo = None
    if verbose and not json_output:
        echo = lambda text: console.print(text, markup=False, highlight=False)  # noqa: E731

    task = RepoTask(
        CommandRunner(timeout=timeout),
        config.base_path,
        logs_dir,
        TaskOptions(
            dry_run=dry_run,
            skip_push=skip_push,
            verbose=verbose,
            remote=remote,
            base_branch=base_branch,
        ),
        echo=echo,
    )
    manager = BatchManager(task, parallel=parallel)

    if json_output or verbose:
        outcomes = manager.run(selected, mode, payload)
    else:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TextColumn("[cyan]{task.fields[repo]}"),
            console=console,
        ) as progress:
            bar = progress.add_task(f"{mode.value.title()}...", total=len(selected), repo="")
            outcomes = manager.run(
                selected,
                mode,
                payload,
                on_start=lambda repo: progress.update(bar, repo=repo.key),
                on_complete=lambda outcome: progress.advance(bar),
            )

    summary = BatchSummary.from_outcomes(outcomes)
    formatter.print_outcomes(outcomes, summary, mode.value)

    if summary.exit_code:
        raise typer.Exit(summary.exit_code)


@app.command()
def install(
    packages: list[str] = typer.Argument(None, help="Packages to install"),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        "-n",
        help="Show what would be done without running any command",
    ),
    skip_push: bool = typer.Option(
        False,
        "--skip-push",
        help="Do everything except git push",
    ),
    parallel: bool = typer.Option(
        False,
        "--parallel",
        "-p",
        help=f"Run up to {PARALLEL_LIMIT} repositories at a time",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Print every command and its output",
    ),
    only: str = typer.Option(
        None,
        "--only",
        help="Comma-separated repo names/paths (as listed in repos.json) to process only",
    ),
    config: Path = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Repositories file (default: ${CONFIG_ENV_VAR} or ./{DEFAULT_CONFIG_FILE})",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
    logs_dir: Path = typer.Option(
        Path("logs"),
        "--logs-dir",
        help="Directory for per-repository log files",
    ),
    timeout: float = typer.Option(
        None,
        "--timeout",
        help="Kill any single command after this many seconds",
    ),
    base_branch: str = typer.Option(
        DEFAULT_BASE_BRANCH,
        "--base-branch",
        help="Branch new branches are created from when absent on the remote",
    ),
):
    """Install packages in all repos, commit and push."""
    if not packages:
        abort("You must specify at least one package to install.")

    run_batch(
        TaskMode.INSTALL,
        packages,
        config_path=config,
        only=only,
        dry_run=dry_run,
        parallel=parallel,
        verbose=verbose,
        json_output=json_output,
        logs_dir=logs_dir,
        timeout=timeout,
        skip_push=skip_push,
        base_branch=base_branch,
    )


@app.command()
def remove(
    packages: list[str] = typer.Argument(None, help="Packages to remove"),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        "-n",
        help="Show what would be done without running any command",
    ),
    skip_push: bool = typer.Option(
        False,
        "--skip-push",
        help="Do everything except git push",
    ),
    parallel: bool = typer.Option(
        False,
        "--parallel",
        "-p",
        help=f"Run up to {PARALLEL_LIMIT} repositories at a time",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Print every command and its output",
    ),
    only: str = typer.Option(
        None,
        "--only",
        help="Comma-separated repo names/paths (as listed in repos.json) to process only",
    ),
    config: Path = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Repositories file (default: ${CONFIG_ENV_VAR} or ./{DEFAULT_CONFIG_FILE})",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
    logs_dir: Path = typer.Option(
        Path("logs"),
        "--logs-dir",
        help="Directory for per-repository log files",
    ),
    timeout: float = typer.Option(
        None,
        "--timeout",
        help="Kill any single command after this many seconds",
    ),
    base_branch: str = typer.Option(
        DEFAULT_BASE_BRANCH,
        "--base-branch",
        help="Branch new branches are created from when absent on the remote",
    ),
):
    """Remove packages from all repos, commit and push."""
    if not packages:
        abort("You must specify at least one package to remove.")

    run_batch(
        TaskMode.UNINSTALL,
        packages,
        config_path=config,
        only=only,
        dry_run=dry_run,
        parallel=parallel,
        verbose=verbose,
        json_output=json_output,
        logs_dir=logs_dir,
        timeout=timeout,
        skip_push=skip_push,
        base_branch=base_branch,
    )


@app.command(name="exec")
def exec_command(
    command: list[str] = typer.Argument(
        None, help="Command to execute (quote it if it contains spaces)"
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        "-n",
        help="Show what would be done without running any command",
    ),
    parallel: bool = typer.Option(
        False,
        "--parallel",
        "-p",
        help=f"Run up to {PARALLEL_LIMIT} repositories at a time",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Print every command and its output",
    ),
    only: str = typer.Option(
        None,
        "--only",
        help="Comma-separated repo names/paths (as listed in repos.json) to process only",
    ),
    config: Path = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Repositories file (default: ${CONFIG_ENV_VAR} or ./{DEFAULT_CONFIG_FILE})",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
    logs_dir: Path = typer.Option(
        Path("logs"),
        "--logs-dir",
        help="Directory for per-repository log files",
    ),
    timeout: float = typer.Option(
        None,
        "--timeout",
        help="Kill the command after this many seconds",
    ),
):
    """Execute any shell command in all repos."""
    command_line = " ".join(command or []).strip()
    if not command_line:
        abort("You must specify a command to execute.")

    run_batch(
        TaskMode.EXEC,
        command_line,
        config_path=config,
        only=only,
        dry_run=dry_run,
        parallel=parallel,
        verbose=verbose,
        json_output=json_output,
        logs_dir=logs_dir,
        timeout=timeout,
        banner=f"\n[bold]Command:[/] {escape(command_line)}",
    )


@app.command()
def sync(
    branch: str = typer.Option(
        DEFAULT_BASE_BRANCH,
        "--branch",
        "-b",
        help="Branch to checkout and pull",
    ),
    remote: str = typer.Option(
        DEFAULT_REMOTE,
        "--remote",
        help="Remote to pull from (a repo's own remote in repos.json wins)",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        "-n",
        help="Show what would be done without running any command",
    ),
    parallel: bool = typer.Option(
        False,
        "--parallel",
        "-p",
        help=f"Run up to {PARALLEL_LIMIT} repositories at a time",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Print every command and its output",
    ),
    only: str = typer.Option(
        None,
        "--only",
        help="Comma-separated repo names/paths (as listed in repos.json) to process only",
    ),
    config: Path = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Repositories file (default: ${CONFIG_ENV_VAR} or ./{DEFAULT_CONFIG_FILE})",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
    logs_dir: Path = typer.Option(
        Path("logs"),
        "--logs-dir",
        help="Directory for per-repository log files",
    ),
    timeout: float = typer.Option(
        None,
        "--timeout",
        help="Kill any single command after this many seconds",
    ),
):
    """Checkout a branch and pull it from the remote in every repo."""
    run_batch(
        TaskMode.SYNC,
        branch,
        config_path=config,
        only=only,
        dry_run=dry_run,
        parallel=parallel,
        verbose=verbose,
        json_output=json_output,
        logs_dir=logs_dir,
        timeout=timeout,
        remote=remote,
    )


# Short aliases, kept out of --help
app.command(name="i", hidden=True)(install)
app.command(name="rm", hidden=True)(remove)
app.command(name="run", hidden=True)(exec_command)
