"""On-disk token cache, one JSON file per Money Lover account."""

import base64
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = Path.home() / ".moneylover-mcp"


def encode_identity(identity: str) -> str:
    """URL-safe base64 of the identity without padding, usable as a file name."""
    return base64.urlsafe_b64encode(identity.encode("utf-8")).decode("ascii").rstrip("=")


class TokenCache:
    """Read/write/delete a persisted token per identity.

    No locking: concurrent writers for the same identity race and the last
    writer wins.
    """

    def __init__(self, cache_dir: Union[str, Path, None] = None) -> None:
        self.cache_dir = Path(cache_dir) if cache_dir is not None else DEFAULT_CACHE_DIR

    def token_path(self, identity: str) -> Path:
        return self.cache_dir / f"{encode_identity(identity)}.json"

    def ensure_cache_dir(self) -> None:
        self.cache_dir.mkdir(mode=0o700, parents=True, exist_ok=True)

    def read(self, identity: str) -> Optional[str]:
        """Return the stored token, or None when no usable record exists.

        A missing file is never an error. Permission problems and corrupt JSON
        propagate to the caller.
        """
        if not identity:
            return None
        try:
            raw = self.token_path(identity).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

        data = json.loads(raw)
        token = data.get("token") if isinstance(data, dict) else None
        if isinstance(token, str) and token:
            return token
        return None

    def write(self, identity: str, token: str) -> None:
        if not identity or not token:
            return
        self.ensure_cache_dir()
        payload = {
            "token": token,
            "updatedAt": datetime.now(timezone.utc).isoformat(),
        }
        path = self.token_path(identity)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        # O_CREAT mode is ignored for pre-existing files
        path.chmod(0o600)
        logger.debug(f"[CACHE] Stored token for {identity} at {path}")

    def delete(self, identity: str) -> None:
        if not identity:
            return
        try:
            self.token_path(identity).unlink()
            logger.debug(f"[CACHE] Removed cached token for {identity}")
        except FileNotFoundError:
            pass
