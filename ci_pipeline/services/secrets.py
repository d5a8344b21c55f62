"""Secrets mounted into the runner as JSON files."""

from __future__ import annotations

import json
from pathlib import Path

from ci_pipeline.errors import SecretError


class SecretStore:
    """Reads the OAuth token and repository secrets."""

    def __init__(self, oauth_path: Path, repo_secret_path: Path) -> None:
        self.oauth_path = oauth_path
        self.repo_secret_path = repo_secret_path

    def oauth_token(self) -> str:
        """Read the git provider access token.

        The file holds ``{"data": {"access_token": "..."}}``.

        Raises:
            SecretError: If the file is missing, malformed or has no token.
        """
        try:
            data = json.loads(self.oauth_path.read_text())
        except OSError as e:
            raise SecretError(f"cannot read oauth secret: {e}") from e
        except json.JSONDecodeError as e:
            raise SecretError(f"invalid oauth secret: {e}") from e
        token = (data.get("data") or {}).get("access_token") if isinstance(data, dict) else None
        if not token:
            raise SecretError("oauth secret has no access token")
        return str(token)

    def repo_secrets(self) -> dict[str, str]:
        """Read repository secrets as a flat name -> value map.

        A missing file means the repository has no secrets.

        Raises:
            SecretError: If the file exists but is malformed.
        """
        if not self.repo_secret_path.exists():
            return {}
        try:
            data = json.loads(self.repo_secret_path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise SecretError(f"cannot read repo secrets: {e}") from e
        if not isinstance(data, dict):
            raise SecretError("repo secrets must be a JSON object")
        return {str(k): str(v) for k, v in data.items()}
