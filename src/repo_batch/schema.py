"""MCP-compatible tool schema for AI agents."""

from __future__ import annotations

from ._version import __version__

OUTCOME_OUTPUT_SCHEMA = {
    "type": "object",
    "properties": {
        "results": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "repo": {"type": "string"},
                    "status": {
                        "type": "string",
                        "enum": ["success", "error", "skipped", "dry_run"],
                    },
                    "message": {"type": "string"},
                    "log_path": {"type": ["string", "null"]},
                },
            },
        },
        "summary": {
            "type": "object",
            "properties": {
                "total": {"type": "integer"},
                "success": {"type": "integer"},
                "skipped": {"type": "integer"},
                "dry_run": {"type": "integer"},
                "errors": {"type": "integer"},
                "exit_code": {"type": "integer", "enum": [0, 2]},
            },
        },
    },
}


def _common_properties() -> dict:
    """Options shared by every batch command."""
    return {
        "config": {
            "type": "string",
            "description": "Path to repos.json (default: $REPO_BATCH_CONFIG or ./repos.json)",
        },
        "only": {
            "type": "string",
            "description": "Comma-separated repository names or paths to process; others are skipped",
        },
        "json": {
            "type": "boolean",
            "description": "Output as JSON for machine parsing",
            "default": False,
        },
        "dry_run": {
            "type": "boolean",
            "description": "Describe what would happen without running any command",
            "default": False,
        },
        "parallel": {
            "type": "boolean",
            "description": "Process up to 5 repositories at a time instead of one",
            "default": False,
        },
        "verbose": {
            "type": "boolean",
            "description": "Print each command and its output as it runs",
            "default": False,
        },
        "logs_dir": {
            "type": "string",
            "description": "Directory for per-repository log files",
            "default": "logs",
        },
        "timeout": {
            "type": "number",
            "description": "Kill any single command after this many seconds",
        },
    }


def _package_properties(verb: str) -> dict:
    return {
        "packages": {
            "type": "array",
            "items": {"type": "string"},
            "description": f"npm packages to {verb}",
        },
        "skip_push": {
            "type": "boolean",
            "description": "Commit but do not push",
            "default": False,
        },
        "base_branch": {
            "type": "string",
            "description": "Branch a missing branch is created from when the remote lacks it",
            "default": "main",
        },
        **_common_properties(),
    }


def get_tool_schema() -> dict:
    """Generate MCP-compatible tool schema for AI agents."""
    return {
        "name": "repo-batch",
        "version": __version__,
        "description": "Apply one change across a fleet of repositories listed in repos.json: install or remove npm packages (on each repository's declared branch, then commit and push), run any shell command, or sync a branch. Each repository gets its own log file and exactly one result.",
        "usage": "repo-batch <command> [arguments] [options]",
        "tools": [
            {
                "name": "install",
                "description": "Ensure each repository's branch exists (local, then remote, then created from main), run 'npm install <packages>', commit package.json and package-lock.json as 'Install: ...' and push. Repositories with nothing to commit are reported as skipped.",
                "inputSchema": {
                    "type": "object",
                    "properties": _package_properties("install"),
                    "required": ["packages"],
                },
                "outputSchema": OUTCOME_OUTPUT_SCHEMA,
                "examples": [
                    {
                        "description": "Install lodash everywhere, five repositories at a time",
                        "command": "repo-batch install lodash --parallel --json",
                    },
                    {
                        "description": "Preview an install on two repositories",
                        "command": "repo-batch install lodash --only web-home,api-service --dry-run --json",
                    },
                ],
            },
            {
                "name": "remove",
                "description": "Same pipeline as install, running 'npm uninstall <packages>' and committing as 'Remove: ...'.",
                "inputSchema": {
                    "type": "object",
                    "properties": _package_properties("remove"),
                    "required": ["packages"],
                },
                "outputSchema": OUTCOME_OUTPUT_SCHEMA,
                "examples": [
                    {
                        "description": "Remove moment without pushing",
                        "command": "repo-batch remove moment --skip-push --json",
                    },
                ],
            },
            {
                "name": "exec",
                "description": "Run a shell command in every repository. Nothing is committed or pushed; success follows the command's exit status and each log records command, directory, exit code, stdout and stderr.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "command": {
                            "type": "string",
                            "description": "Shell command to run in each repository directory",
                        },
                        **_common_properties(),
                    },
                    "required": ["command"],
                },
                "outputSchema": OUTCOME_OUTPUT_SCHEMA,
                "examples": [
                    {
                        "description": "Run the test suite everywhere",
                        "command": "repo-batch exec 'npm test' --parallel --json",
                    },
                ],
            },
            {
                "name": "sync",
                "description": "Fetch the remote, checkout a branch and pull it in every repository.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "branch": {
                            "type": "string",
                            "description": "Branch to checkout and pull",
                            "default": "main",
                        },
                        "remote": {
                            "type": "string",
                            "description": "Remote to pull from when the repository does not declare one",
                            "default": "origin",
                        },
                        **_common_properties(),
                    },
                    "required": [],
                },
                "outputSchema": OUTCOME_OUTPUT_SCHEMA,
                "examples": [
                    {
                        "description": "Bring every repository's main up to date",
                        "command": "repo-batch sync --parallel --json",
                    },
                ],
            },
        ],
        "configFileFormat": {
            "description": "JSON object with a base path and the repositories under it",
            "example": {
                "basePath": "~/work",
                "repositories": [
                    {"name": "web-home", "branch": "chore/deps"},
                    {"name": "api", "path": "services/api", "remote": "upstream"},
                ],
            },
        },
        "exitCodes": {
            "0": "Every repository ended as success, skipped or dry_run",
            "1": "Configuration error; no repository was touched",
            "2": "At least one repository ended in error",
        },
        "notes": [
            "All commands support --json for machine-readable output",
            "Sequential execution is the default; --parallel runs up to 5 repositories at once",
            "Use --dry-run first to see what would run",
            "Log files are written to ./logs by default, one per repository",
        ],
    }
