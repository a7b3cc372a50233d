#!/usr/bin/env python3
"""Money Lover MCP Server - Provides access to Money Lover wallets and transactions via MCP protocol."""

import asyncio
import functools
import json
import logging
import sys
import time
from typing import Any, Dict, List, Optional

import structlog
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import BaseModel, Field, ValidationError

from errors import MoneyloverError
from token_manager import TokenManager


# Pydantic models for tool arguments
class LoginArgs(BaseModel):  # type: ignore[misc]
    """Arguments for login tool."""
    email: str = Field(min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=1)

class GetCategoriesArgs(BaseModel):  # type: ignore[misc]
    """Arguments for get_categories tool."""
    wallet_id: str = Field(min_length=1)

class GetTransactionsArgs(BaseModel):  # type: ignore[misc]
    """Arguments for get_transactions tool."""
    wallet_id: str = Field(min_length=1)
    start_date: str = Field(pattern=r'^\d{4}-\d{2}-\d{2}$')
    end_date: str = Field(pattern=r'^\d{4}-\d{2}-\d{2}$')

class AddTransactionArgs(BaseModel):  # type: ignore[misc]
    """Arguments for add_transaction tool."""
    wallet_id: str = Field(min_length=1)
    category_id: str = Field(min_length=1)
    amount: str = Field(min_length=1)
    date: str = Field(pattern=r'^\d{4}-\d{2}-\d{2}$')
    note: Optional[str] = None
    with_: Optional[List[str]] = None


# Configure standard logging (stderr only to avoid interfering with MCP stdio)
class SafeStreamHandler(logging.StreamHandler):  # type: ignore[type-arg]
    """Stream handler that gracefully handles broken pipes."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            super().emit(record)
        except (BrokenPipeError, ConnectionResetError):
            # Client went away; nothing left to write to
            pass
        except Exception:
            self.handleError(record)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[SafeStreamHandler(sys.stderr)]
)

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

log = structlog.get_logger(__name__)
logger = logging.getLogger(__name__)

# Request logs from the HTTP stack would otherwise include every call
logging.getLogger('httpx').setLevel(logging.WARNING)
logging.getLogger('httpcore').setLevel(logging.WARNING)

SENSITIVE_ARGS = ('password', 'token')


def log_tool_call(func: Any) -> Any:
    """Decorator logging each tool call, its duration and outcome, with secrets redacted."""
    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        start_time = time.time()
        tool_name = func.__name__
        safe_kwargs = {k: ('***' if k in SENSITIVE_ARGS and v else v) for k, v in kwargs.items()}

        logger.info(f"[TOOL_CALL] {tool_name} | args: {safe_kwargs}")

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            execution_time = time.time() - start_time
            logger.error(f"[TOOL_CALL] {tool_name} failed | time: {execution_time:.3f}s | error: {e}")
            raise

        execution_time = time.time() - start_time
        result_chars = len(result) if isinstance(result, str) else 0
        logger.info(f"[TOOL_CALL] {tool_name} ok | time: {execution_time:.3f}s | chars: {result_chars:,}")
        return result

    return wrapper


def format_success(data: Any) -> str:
    return json.dumps(data, indent=2, default=str)


def format_error(error: BaseException) -> Dict[str, Any]:
    """Build the structured error description returned to MCP clients.

    Always carries the error class and message; ``code`` and ``detail`` are
    added when the error has them.
    """
    if isinstance(error, ValidationError):
        return {
            "error": "ValidationError",
            "message": "Invalid arguments",
            "detail": [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in error.errors()
            ],
        }

    envelope: Dict[str, Any] = {
        "error": type(error).__name__,
        "message": str(error),
    }
    if isinstance(error, MoneyloverError):
        if error.code is not None:
            envelope["code"] = error.code
        if error.detail:
            envelope["detail"] = error.detail
    return envelope


def tool_error(error: BaseException) -> ToolError:
    return ToolError(json.dumps(format_error(error), default=str))


# Initialize the FastMCP server
mcp = FastMCP("moneylover")

# Token state for the configured account; tools share it
token_manager = TokenManager()


@mcp.tool()
@log_tool_call
async def login(email: str, password: str) -> str:
    """Authenticate using Money Lover credentials to retrieve a JWT token.

    The token is cached on disk and, when the email matches the configured
    EMAIL, reused for later calls that omit the token parameter.
    """
    try:
        args = LoginArgs(email=email, password=password)
        token = await token_manager.authenticator(args.email, args.password)
        if token_manager.record_login(args.email, token):
            logger.info(f"[AUTH] Login for configured account {args.email} adopted as active token")
        return format_success({"token": token})
    except Exception as e:
        logger.error(f"Login failed: {e}")
        raise tool_error(e) from e


@mcp.tool()
@log_tool_call
async def get_user_info(token: Optional[str] = None) -> str:
    """Retrieve the Money Lover user profile associated with the token.

    Args:
        token: JWT token returned by the login tool. Optional when EMAIL/PASSWORD
               or MONEYLOVER_TOKEN are configured.
    """
    try:
        data = await token_manager.run_with_client(token, lambda client: client.get_user_info())
        return format_success(data or {})
    except Exception as e:
        logger.error(f"Failed to fetch user info: {e}")
        raise tool_error(e) from e


@mcp.tool()
@log_tool_call
async def get_wallets(token: Optional[str] = None) -> str:
    """List all wallets accessible to the authenticated user."""
    try:
        wallets = await token_manager.run_with_client(token, lambda client: client.get_wallets())
        logger.info(f"Wallets retrieved successfully, count: {len(wallets) if isinstance(wallets, list) else 'unknown'}")
        return format_success({"wallets": wallets or []})
    except Exception as e:
        logger.error(f"Failed to fetch wallets: {e}")
        raise tool_error(e) from e


@mcp.tool()
@log_tool_call
async def get_categories(wallet_id: str, token: Optional[str] = None) -> str:
    """Retrieve categories for a specific wallet.

    Args:
        wallet_id: Wallet identifier (from get_wallets)
        token: Optional JWT token; see get_user_info
    """
    try:
        args = GetCategoriesArgs(wallet_id=wallet_id)
        categories = await token_manager.run_with_client(
            token, lambda client: client.get_categories(args.wallet_id)
        )
        return format_success({"categories": categories or []})
    except Exception as e:
        logger.error(f"Failed to fetch categories: {e} (wallet_id={wallet_id})")
        raise tool_error(e) from e


@mcp.tool()
@log_tool_call
async def get_transactions(
    wallet_id: str,
    start_date: str,
    end_date: str,
    token: Optional[str] = None
) -> str:
    """Fetch transactions for a wallet between two dates.

    Args:
        wallet_id: Wallet identifier (from get_wallets)
        start_date: Start date in YYYY-MM-DD format
        end_date: End date in YYYY-MM-DD format
        token: Optional JWT token; see get_user_info

    Returns:
        JSON string containing the transaction payload
    """
    try:
        args = GetTransactionsArgs(wallet_id=wallet_id, start_date=start_date, end_date=end_date)
        if args.start_date > args.end_date:
            raise ValueError(f"Start date ({args.start_date}) cannot be after end date ({args.end_date})")

        data = await token_manager.run_with_client(
            token,
            lambda client: client.get_transactions(args.wallet_id, args.start_date, args.end_date),
        )
        return format_success(data or {})
    except Exception as e:
        logger.error(f"Failed to fetch transactions: {e} (wallet_id={wallet_id}, start_date={start_date})")
        raise tool_error(e) from e


@mcp.tool()
@log_tool_call
async def add_transaction(
    wallet_id: str,
    category_id: str,
    amount: str,
    date: str,
    note: Optional[str] = None,
    with_: Optional[List[str]] = None,
    token: Optional[str] = None
) -> str:
    """Create a new transaction in a wallet.

    Args:
        wallet_id: Wallet identifier
        category_id: Category identifier (from get_categories)
        amount: Transaction amount as a string, e.g. "12.50"
        date: Display date in YYYY-MM-DD format
        note: Optional transaction note
        with_: Optional list of related parties
        token: Optional JWT token; see get_user_info
    """
    try:
        args = AddTransactionArgs(
            wallet_id=wallet_id,
            category_id=category_id,
            amount=amount,
            date=date,
            note=note,
            with_=with_,
        )
        result = await token_manager.run_with_client(
            token,
            lambda client: client.add_transaction(
                wallet_id=args.wallet_id,
                category_id=args.category_id,
                amount=args.amount,
                display_date=args.date,
                note=args.note,
                with_=args.with_,
            ),
        )
        return format_success(result or {})
    except Exception as e:
        logger.error(f"Failed to add transaction: {e}")
        raise tool_error(e) from e


async def main() -> None:
    """Main entry point for the server.

    The server starts immediately without authentication. A token is
    obtained lazily on the first tool call that needs one.
    """
    logger.info("=" * 70)
    logger.info("[AUTH] MCP Server starting - LAZY AUTHENTICATION MODE")
    logger.info(f"[AUTH] Token cache location: {token_manager.cache.cache_dir}")
    logger.info("=" * 70)

    try:
        logger.info("Starting MCP server with stdio transport")
        await mcp.run_stdio_async()
    except BrokenPipeError:
        logger.info("Client disconnected (broken pipe) - shutting down gracefully")
    except ConnectionResetError:
        logger.info("Connection reset by client - shutting down gracefully")


def _is_shutdown_error(exc: BaseException) -> bool:
    return (
        isinstance(exc, (BrokenPipeError, ConnectionResetError, EOFError)) or
        any(err_str in str(exc).lower() for err_str in ["broken pipe", "connection reset", "[errno 32]", "eof"])
    )


def run() -> None:
    """Console entry point."""
    try:
        asyncio.run(main())
    except ExceptionGroup as eg:  # type: ignore[misc]
        # anyio task groups wrap shutdown errors; only re-raise real failures
        remaining_exceptions = [exc for exc in eg.exceptions if not _is_shutdown_error(exc)]
        if remaining_exceptions:
            logger.error(f"Fatal error: {eg}")
            raise
        logger.info("Shutdown complete (broken pipe expected during client disconnect)")
    except (BrokenPipeError, ConnectionResetError):
        logger.info("Connection closed during shutdown - exiting quietly")
    except KeyboardInterrupt:
        logger.info("Interrupted by user - exiting")


if __name__ == "__main__":
    run()
