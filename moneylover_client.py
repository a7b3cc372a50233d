"""Thin async client for the Money Lover web API."""

import json
import logging
import re
from datetime import date, datetime
from enum import IntEnum
from typing import Any, Dict, List, Optional, Union
from urllib.parse import parse_qs, urlparse

import httpx

from errors import (
    AuthenticationExchangeError,
    MoneyloverApiError,
    MoneyloverHTTPError,
    MoneyloverTransportError,
)

logger = logging.getLogger(__name__)

BASE_URL = "https://web.moneylover.me/api"
LOGIN_URL = f"{BASE_URL}/user/login-url"
TOKEN_URL = "https://oauth.moneylover.me/token"
REQUEST_TIMEOUT = 30.0
NO_CACHE = "no-cache, max-age=0, no-store, no-transform, must-revalidate"

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class CategoryType(IntEnum):
    INCOME = 1
    EXPENSE = 2


def ensure_string(value: Any, name: str) -> str:
    """Return the trimmed value, rejecting non-strings and blanks."""
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} is required")
    return value.strip()


def ensure_date_string(value: Union[str, date, None]) -> str:
    """Normalize a date or ``YYYY-MM-DD`` string to ``YYYY-MM-DD``."""
    if not value:
        raise ValueError("date is required")
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        trimmed = value.strip()
        if not DATE_PATTERN.match(trimmed):
            raise ValueError("date must be in YYYY-MM-DD format")
        return trimmed
    raise ValueError("date must be a date or YYYY-MM-DD string")


def read_json(response: httpx.Response) -> Dict[str, Any]:
    """Decode a response body, treating an empty body as an empty object."""
    text = response.text
    if not text:
        return {}
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise MoneyloverTransportError(f"Failed to parse JSON response: {e}") from e
    return payload if isinstance(payload, dict) else {"data": payload}


def parse_api_payload(payload: Dict[str, Any]) -> Any:
    """Return ``data`` from a Money Lover envelope or raise its error.

    The API reports failures in the body with a non-zero ``error`` (older
    endpoints use ``e``) plus a ``msg``.
    """
    error_code = payload.get("error")
    if error_code is None:
        error_code = payload.get("e", 0)
    if error_code:
        message = payload.get("msg") or payload.get("message") or "Money Lover API error"
        code = error_code if isinstance(error_code, int) else None
        raise MoneyloverApiError(str(message), code=code, detail=payload)
    return payload.get("data")


def _client_param(login_url: str) -> str:
    try:
        query = parse_qs(urlparse(login_url).query)
    except ValueError as e:
        raise AuthenticationExchangeError(f"Unable to parse login URL: {e}") from e
    values = query.get("client") or [""]
    return values[0]


class MoneyloverClient:
    """Authenticated Money Lover API client bound to one access token."""

    def __init__(self, token: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.token = ensure_string(token, "token")
        self._transport = transport

    @staticmethod
    async def get_token(
        email: str,
        password: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> str:
        """Exchange an email/password pair for a Money Lover access token.

        Step one asks ``/user/login-url`` for a short-lived request token and
        the OAuth ``client`` parameter; step two posts the credentials to the
        OAuth token endpoint with that grant.

        Raises:
            AuthenticationExchangeError: on a non-success status, undecodable
                body or missing field in either step.
            MoneyloverTransportError: when the network request itself fails.
        """
        email = ensure_string(email, "email")
        password = ensure_string(password, "password")

        async with httpx.AsyncClient(transport=transport, timeout=REQUEST_TIMEOUT) as http:
            try:
                login_response = await http.post(LOGIN_URL)
            except httpx.HTTPError as e:
                raise MoneyloverTransportError(f"Failed to initiate login: {e}") from e
            if not login_response.is_success:
                raise AuthenticationExchangeError(
                    f"Failed to initiate login: HTTP {login_response.status_code}"
                )

            login_payload = _decode_exchange_body(login_response)
            data = login_payload.get("data") or {}
            request_token = data.get("request_token") if isinstance(data, dict) else None
            login_url = data.get("login_url") if isinstance(data, dict) else None
            if not request_token or not login_url:
                raise AuthenticationExchangeError("Login response missing request_token or login_url")

            client_param = _client_param(login_url)
            if not client_param:
                raise AuthenticationExchangeError("Login URL missing client parameter")

            try:
                token_response = await http.post(
                    TOKEN_URL,
                    headers={
                        "Authorization": f"Bearer {request_token}",
                        "Client": client_param,
                    },
                    data={"email": email, "password": password},
                )
            except httpx.HTTPError as e:
                raise MoneyloverTransportError(f"Failed to retrieve access token: {e}") from e
            if not token_response.is_success:
                raise AuthenticationExchangeError(
                    f"Failed to retrieve access token: HTTP {token_response.status_code}"
                )

            access_token = _decode_exchange_body(token_response).get("access_token")
            if not access_token:
                raise AuthenticationExchangeError("Access token not present in response")

        logger.info(f"[AUTH] Obtained access token for {email}")
        return str(access_token)

    async def get_user_info(self) -> Any:
        return await self._post("/user/info")

    async def get_wallets(self) -> Any:
        return await self._post("/wallet/list")

    async def get_categories(self, wallet_id: str) -> Any:
        return await self._post(
            "/category/list",
            data={"walletId": ensure_string(wallet_id, "walletId")},
        )

    async def get_transactions(self, wallet_id: str, start_date: str, end_date: str) -> Any:
        payload = {
            "walletId": ensure_string(wallet_id, "walletId"),
            "startDate": ensure_string(start_date, "startDate"),
            "endDate": ensure_string(end_date, "endDate"),
        }
        return await self._post("/transaction/list", json_body=payload)

    async def add_transaction(
        self,
        wallet_id: str,
        category_id: str,
        amount: Union[str, int, float],
        display_date: Union[str, date],
        note: Optional[str] = None,
        with_: Optional[List[str]] = None,
    ) -> Any:
        """Create a transaction. ``amount`` is sent as a string, as the web app does."""
        payload = {
            "with": list(with_) if with_ else [],
            "account": ensure_string(wallet_id, "walletId"),
            "category": ensure_string(category_id, "categoryId"),
            "amount": ensure_string(str(amount) if amount is not None else None, "amount"),
            "note": note if isinstance(note, str) else "",
            "displayDate": ensure_date_string(display_date),
        }
        return await self._post("/transaction/add", json_body=payload)

    async def _post(
        self,
        path: str,
        data: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        headers = {
            "Authorization": f"AuthJWT {self.token}",
            "Cache-Control": NO_CACHE,
        }
        async with httpx.AsyncClient(transport=self._transport, timeout=REQUEST_TIMEOUT) as http:
            try:
                response = await http.post(f"{BASE_URL}{path}", headers=headers, data=data, json=json_body)
            except httpx.HTTPError as e:
                raise MoneyloverTransportError(f"Money Lover API request failed: {e}") from e

        if not response.is_success:
            detail = response.text
            raise MoneyloverHTTPError(
                f"Money Lover API request failed: HTTP {response.status_code} - {detail}",
                status_code=response.status_code,
                detail=detail or None,
            )

        return parse_api_payload(read_json(response))


def _decode_exchange_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        return read_json(response)
    except MoneyloverTransportError as e:
        raise AuthenticationExchangeError(e.message) from e
