"""Token lifecycle: resolve credentials, cache tokens, refresh once on auth failure."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from credentials import DirectToken, EnvSettings, IdentityCredential, resolve_credentials
from errors import CredentialsRequiredError, MoneyloverError, is_auth_error
from moneylover_client import MoneyloverClient
from token_cache import TokenCache

log = structlog.get_logger(__name__)
logger = logging.getLogger(__name__)

T = TypeVar("T")

Authenticator = Callable[[str, str], Awaitable[str]]
ClientFactory = Callable[[str], Any]

# Identity recorded while a configured direct token is in use
DIRECT_TOKEN_IDENTITY = "<direct-token>"

MISSING_TOKEN_MESSAGE = (
    "Token is required. Provide a token parameter or set EMAIL/PASSWORD, "
    "MONEYLOVER_TOKEN, or a .env file for automatic authentication."
)


def _best_effort(action: str, identity: str, fn: Callable[..., None], *args: Any) -> bool:
    """Run a token cache side effect whose failure must not change the outcome.

    Returns False when the call failed; the failure is logged here and
    nowhere else.
    """
    try:
        fn(*args)
        return True
    except Exception as e:
        log.warning("Token cache operation failed", action=action, identity=identity, error=str(e))
        return False


class TokenManager:
    """Owns the in-memory token state for the configured Money Lover account.

    At most one authentication exchange is in flight at a time; concurrent
    callers await the same task. ``reset()`` returns the manager to its
    initial state.
    """

    def __init__(
        self,
        settings: Optional[EnvSettings] = None,
        cache: Optional[TokenCache] = None,
        authenticator: Optional[Authenticator] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.settings = settings if settings is not None else EnvSettings()
        self.cache = cache if cache is not None else TokenCache()
        self.authenticator: Authenticator = authenticator or MoneyloverClient.get_token
        self.client_factory: ClientFactory = client_factory or MoneyloverClient
        self.reset()

    def reset(self) -> None:
        self.identity = ""
        self.token = ""
        self.pending: Optional["asyncio.Task[str]"] = None
        self.loaded = False
        self.uses_direct_token = False

    def _invalidate(self) -> None:
        self.token = ""
        self.pending = None
        self.loaded = False

    async def get_usable_token(self, force_refresh: bool = False) -> Optional[str]:
        """Return a token for the configured account, logging in if needed.

        Returns None when neither a direct token nor EMAIL/PASSWORD is
        configured. A direct token is returned as-is and never cached or
        refreshed. Exchange failures propagate to every waiter.
        """
        credential = resolve_credentials(self.settings)

        if isinstance(credential, DirectToken):
            if not self.uses_direct_token:
                logger.info("[AUTH] Using direct token from environment")
            self.uses_direct_token = True
            self.identity = DIRECT_TOKEN_IDENTITY
            self.token = credential.token
            self.pending = None
            self.loaded = True
            return credential.token

        if self.uses_direct_token:
            logger.info("[AUTH] Direct token no longer configured, clearing cached state")
            self.uses_direct_token = False
            self._invalidate()

        if credential is None:
            return None

        email = credential.email
        if email != self.identity:
            if self.identity:
                log.info("Configured identity changed", previous=self.identity, current=email)
            self.identity = email
            self._invalidate()

        if force_refresh:
            if self.pending is not None:
                log.info("Refresh requested while exchange in flight, joining it", identity=email)
                return await asyncio.shield(self.pending)
            log.info("Forcing token refresh", identity=email)
            self._invalidate()
            _best_effort("delete", email, self.cache.delete, email)
            # The stored record is the rejected token, even if the delete failed
            self.loaded = True

        if not self.loaded:
            stored = self.cache.read(email)
            if stored:
                log.info("Loaded cached token", identity=email)
                self.token = stored
            self.loaded = True

        if self.token and not force_refresh:
            return self.token

        if self.pending is None:
            log.info("Starting authentication exchange", identity=email)
            self.pending = asyncio.ensure_future(self._authenticate(credential))
        else:
            log.debug("Joining in-flight authentication exchange", identity=email)

        return await asyncio.shield(self.pending)

    async def _authenticate(self, credential: IdentityCredential) -> str:
        task = asyncio.current_task()
        email = credential.email
        try:
            token = await self.authenticator(email, credential.password)
        except Exception as e:
            log.error("Authentication exchange failed", identity=email, error=str(e))
            raise
        finally:
            if self.pending is task:
                self.pending = None

        _best_effort("write", email, self.cache.write, email, token)
        if self.identity == email and not self.uses_direct_token:
            self.token = token
            self.loaded = True
        log.info("Authentication exchange complete", identity=email)
        return token

    def record_login(self, email: str, token: str) -> bool:
        """Persist a token obtained by an explicit login and adopt it if it
        belongs to the configured EMAIL.

        Returns whether the in-memory state now holds this token.
        """
        _best_effort("write", email, self.cache.write, email, token)
        configured = self.settings.email
        if not email or not token or email != configured:
            return False
        self.identity = email
        self.token = token
        self.loaded = True
        self.uses_direct_token = False
        return True

    async def run_with_resolved_token(
        self,
        explicit_token: Optional[str],
        operation: Callable[[str], Awaitable[T]],
    ) -> T:
        """Run ``operation`` with a usable token, refreshing once on auth failure.

        A non-blank ``explicit_token`` is used as-is with no refresh. Otherwise
        the managed token is used; if the call fails with an authentication
        error, the token is refreshed and the call retried exactly once. When
        no fresh token can be obtained the original error is raised.
        """
        explicit = (explicit_token or "").strip()
        if explicit:
            return await operation(explicit)

        token = await self.get_usable_token()
        if not token:
            raise CredentialsRequiredError(MISSING_TOKEN_MESSAGE)

        try:
            return await operation(token)
        except MoneyloverError as error:
            if not is_auth_error(error):
                raise
            log.warning("API rejected token, refreshing", identity=self.identity, error=str(error))

            try:
                refreshed = await self.get_usable_token(force_refresh=True)
            except Exception as refresh_error:
                raise error from refresh_error

            if not refreshed:
                raise

            logger.info("[AUTH] Retrying API call with refreshed token")
            return await operation(refreshed)

    async def run_with_client(
        self,
        explicit_token: Optional[str],
        fn: Callable[[Any], Awaitable[T]],
    ) -> T:
        async def call(token: str) -> T:
            return await fn(self.client_factory(token))

        return await self.run_with_resolved_token(explicit_token, call)
