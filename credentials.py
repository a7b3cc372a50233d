"""Credential resolution from the process environment and an optional .env file."""

import logging
import os
from pathlib import Path
from typing import List, MutableMapping, Optional, Union

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

EMAIL_ENV = "EMAIL"
PASSWORD_ENV = "PASSWORD"
DIRECT_TOKEN_ENV_KEYS = ("MONEYLOVER_TOKEN", "MONEY_LOVER_TOKEN")
ENV_FILE_DISABLE_FLAG = "MONEYLOVER_MCP_DISABLE_ENV_FILE"
ENV_FILE_PATH_ENV = "MONEYLOVER_MCP_ENV_FILE"

PROJECT_DIR = Path(__file__).resolve().parent


class DirectToken(BaseModel):
    """Pre-authenticated token from MONEYLOVER_TOKEN / MONEY_LOVER_TOKEN."""
    model_config = ConfigDict(frozen=True)

    token: str


class IdentityCredential(BaseModel):
    """EMAIL/PASSWORD pair that must be exchanged for a token."""
    model_config = ConfigDict(frozen=True)

    email: str
    password: str = Field(repr=False)


class EnvSettings:
    """Live view over the process environment.

    Values are read on every access so changes made while the server runs
    take effect immediately. The first access also merges a ``.env`` file
    into the environment without overriding keys that are already set.
    """

    def __init__(
        self,
        environ: Optional[MutableMapping[str, str]] = None,
        project_dir: Optional[Path] = None,
    ) -> None:
        self.environ = environ if environ is not None else os.environ
        self.project_dir = project_dir or PROJECT_DIR
        self.env_file_loaded = False

    def reset(self) -> None:
        self.env_file_loaded = False

    def get(self, key: str) -> str:
        self.load_env_file_if_needed()
        return (self.environ.get(key) or "").strip()

    @property
    def email(self) -> str:
        return self.get(EMAIL_ENV)

    @property
    def password(self) -> str:
        return self.get(PASSWORD_ENV)

    @property
    def direct_token(self) -> str:
        for key in DIRECT_TOKEN_ENV_KEYS:
            value = self.get(key)
            if value:
                return value
        return ""

    def env_file_candidates(self) -> List[Path]:
        candidates: List[Path] = []
        custom_path = (self.environ.get(ENV_FILE_PATH_ENV) or "").strip()
        if custom_path:
            candidates.append(Path(custom_path))
        candidates.append(self.project_dir / ".env")
        candidates.append(Path.cwd() / ".env")

        unique: List[Path] = []
        for candidate in candidates:
            resolved = candidate.expanduser().resolve()
            if resolved not in unique:
                unique.append(resolved)
        return unique

    def load_env_file_if_needed(self) -> Optional[Path]:
        """Merge the first readable .env candidate into the environment once.

        Returns the path that was applied, if any. Unreadable files are
        logged and skipped; they never stop the server.
        """
        if self.env_file_loaded:
            return None
        self.env_file_loaded = True
        if self.environ.get(ENV_FILE_DISABLE_FLAG) == "1":
            return None

        for candidate in self.env_file_candidates():
            if not candidate.is_file():
                continue
            try:
                values = dotenv_values(candidate)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Failed to load environment file {candidate}: {e}")
                continue
            for key, value in values.items():
                if key and key not in self.environ and value is not None:
                    self.environ[key] = value
            logger.info(f"Loaded environment file {candidate}")
            return candidate
        return None


def resolve_credentials(settings: EnvSettings) -> Optional[Union[DirectToken, IdentityCredential]]:
    """Pick the credential source to use right now.

    A direct token wins over EMAIL/PASSWORD; with neither configured the
    result is None.
    """
    direct_token = settings.direct_token
    if direct_token:
        return DirectToken(token=direct_token)

    email = settings.email
    password = settings.password
    if email and password:
        return IdentityCredential(email=email, password=password)
    return None


def has_env_credentials(settings: EnvSettings) -> bool:
    return resolve_credentials(settings) is not None
