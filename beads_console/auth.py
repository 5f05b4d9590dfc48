"""Stored agent CLI credentials."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from .config import settings

logger = logging.getLogger(__name__)


class CredentialStore:
    """OAuth token for the agent CLI, kept in a user-only file."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or settings.credentials_file

    def get_token(self) -> str | None:
        if not self.path.exists():
            return None
        token = self.path.read_text().strip()
        return token or None

    def save_token(self, token: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(token.strip())
        os.chmod(self.path, 0o600)

    def clear(self) -> bool:
        """Forget the stored token. Returns True if one was removed."""
        if not self.path.exists():
            return False
        self.path.unlink()
        logger.warning("Cleared stored agent credentials at %s", self.path)
        return True
