"""Source control collaborators: clone, config-only clone and diff.

All git invocations go through the ``CommandExecutor`` so they honor the
run's cancellation scope. Access tokens are embedded in the remote URL and
never appear in error messages.
"""

from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import quote, urlsplit, urlunsplit

from ci_pipeline.cancellation import CancelScope
from ci_pipeline.errors import CloneError, CommandError, DiffError
from ci_pipeline.execution.commands import CommandExecutor, CommandKind
from ci_pipeline.payload import JobDescriptor

logger = logging.getLogger(__name__)

# Username paired with an OAuth token for each provider's HTTPS remote
_TOKEN_USERS = {
    "github": "x-access-token",
    "gitlab": "oauth2",
    "bitbucket": "x-token-auth",
}


def authenticated_url(repo_link: str, provider: str, token: str | None) -> str:
    """Embed *token* into an HTTPS clone URL.

    Non-HTTPS links and empty tokens are returned unchanged.
    """
    parts = urlsplit(repo_link)
    if not token or parts.scheme != "https":
        return repo_link
    user = _TOKEN_USERS.get(provider, "oauth2")
    netloc = f"{user}:{quote(token, safe='')}@{parts.hostname}"
    if parts.port:
        netloc += f":{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def _is_empty_dir(path: Path) -> bool:
    return not path.exists() or (path.is_dir() and not any(path.iterdir()))


class GitManager:
    """Clones the repository under test."""

    def __init__(self, repo_dir: Path, commands: CommandExecutor) -> None:
        self.repo_dir = repo_dir
        self.commands = commands

    def _git(self, scope: CancelScope, *args: str, cwd: Path | None = None) -> str:
        return self.commands.run_internal(
            scope, CommandKind.GIT, ["git", *args], cwd=cwd
        ).output

    def clone(
        self, scope: CancelScope, descriptor: JobDescriptor, token: str | None
    ) -> None:
        """Clone the repository and check out the target commit.

        Raises:
            CloneError: If the repository directory is not empty or git fails.
        """
        if not _is_empty_dir(self.repo_dir):
            raise CloneError(f"repository directory {self.repo_dir} is not empty")
        self.repo_dir.parent.mkdir(parents=True, exist_ok=True)
        url = authenticated_url(descriptor.repo_link, descriptor.git_provider, token)
        try:
            self._git(scope, "clone", "--quiet", url, str(self.repo_dir))
            self._git(
                scope, "checkout", "--quiet", "--force", descriptor.target_commit,
                cwd=self.repo_dir,
            )
        except CommandError as e:
            raise CloneError(
                f"unable to clone {descriptor.repo_link} at "
                f"{descriptor.target_commit}: {e}"
            ) from e
        logger.info("Cloned %s at %s", descriptor.repo_link, descriptor.target_commit)

    def clone_config_file(
        self, scope: CancelScope, descriptor: JobDescriptor, token: str | None
    ) -> Path:
        """Fetch only the pipeline config file at the target commit.

        Returns:
            Path of the checked-out config file.

        Raises:
            CloneError: If git fails or the file is absent at that commit.
        """
        if not _is_empty_dir(self.repo_dir):
            raise CloneError(f"repository directory {self.repo_dir} is not empty")
        self.repo_dir.mkdir(parents=True, exist_ok=True)
        url = authenticated_url(descriptor.repo_link, descriptor.git_provider, token)
        try:
            self._git(scope, "init", "--quiet", cwd=self.repo_dir)
            self._git(scope, "remote", "add", "origin", url, cwd=self.repo_dir)
            self._git(
                scope, "fetch", "--quiet", "--depth", "1", "--filter=blob:none",
                "origin", descriptor.target_commit,
                cwd=self.repo_dir,
            )
            self._git(
                scope, "checkout", "--quiet", "FETCH_HEAD", "--",
                descriptor.tas_file_name,
                cwd=self.repo_dir,
            )
        except CommandError as e:
            raise CloneError(
                f"unable to fetch {descriptor.tas_file_name} from "
                f"{descriptor.repo_link}: {e}"
            ) from e
        return self.repo_dir / descriptor.tas_file_name


class DiffManager:
    """Lists the files changed by the commit under test."""

    def __init__(self, repo_dir: Path, commands: CommandExecutor) -> None:
        self.repo_dir = repo_dir
        self.commands = commands

    def changed_files(
        self, scope: CancelScope, descriptor: JobDescriptor
    ) -> list[str]:
        """Return changed file paths relative to the repository root.

        Pull requests diff against the merge base with ``base_commit``;
        pushes without a base list the files touched by the target commit.

        Raises:
            DiffError: If git fails.
        """
        if descriptor.base_commit:
            args = [
                "diff", "--name-only",
                f"{descriptor.base_commit}...{descriptor.target_commit}",
            ]
        else:
            args = [
                "diff-tree", "--no-commit-id", "--name-only", "-r",
                descriptor.target_commit,
            ]
        try:
            result = self.commands.run_internal(
                scope, CommandKind.GIT, ["git", *args], cwd=self.repo_dir
            )
        except CommandError as e:
            raise DiffError(f"git diff failed: {e}") from e
        files = [f.strip() for f in result.output.splitlines() if f.strip()]
        logger.info("Identified %d changed files", len(files))
        return files
