"""repo-batch: Apply one change across a fleet of repositories."""

# Guard against deleted CWD (e.g. directory removed by another process).
# rich crashes on import if os.getcwd() fails, so recover before any imports.
import os

try:
    os.getcwd()
except (OSError, PermissionError):
    os.chdir(os.path.expanduser("~"))

from ._version import __version__
from .core import (
    BatchManager,
    BatchSummary,
    BranchResolver,
    CommandResult,
    CommandRunner,
    ConfigError,
    LogBuffer,
    OutcomeStatus,
    RepoOutcome,
    RepoTask,
    Repository,
    RunConfig,
    TaskContext,
    TaskMode,
    TaskOptions,
    app,
    filter_repositories,
    is_nothing_to_commit,
    load_config,
    resolve_config_path,
)
from .formatters import OutputFormatter
from .schema import get_tool_schema

__all__ = [
    # Version
    "__version__",
    # CLI
    "app",
    # Models
    "BatchSummary",
    "CommandResult",
    "ConfigError",
    "OutcomeStatus",
    "RepoOutcome",
    "Repository",
    "RunConfig",
    "TaskContext",
    "TaskMode",
    "TaskOptions",
    # Operations
    "BatchManager",
    "BranchResolver",
    "CommandRunner",
    "LogBuffer",
    "RepoTask",
    # Functions
    "filter_repositories",
    "get_tool_schema",
    "is_nothing_to_commit",
    "load_config",
    "resolve_config_path",
    # Formatters
    "OutputFormatter",
]
