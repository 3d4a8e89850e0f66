# preflight/auth.py
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from preflight.config import settings
from preflight.errors import Unauthorized

logger = logging.getLogger(__name__)

# auto_error=False: a missing token means an anonymous caller, not a 401
http_bearer_auth = HTTPBearer(auto_error=False)

_httpx_client: Optional[httpx.AsyncClient] = None


@dataclass
class Account:
    id: str
    email: Optional[str] = None


def get_httpx_client() -> httpx.AsyncClient:
    global _httpx_client
    if _httpx_client is None:
        _httpx_client = httpx.AsyncClient(timeout=settings.auth_timeout)
    return _httpx_client


async def close_httpx_client() -> None:
    global _httpx_client
    if _httpx_client is not None:
        await _httpx_client.aclose()
        _httpx_client = None


async def fetch_account(token: str, client: httpx.AsyncClient = None) -> Optional[Account]:
    """
    Resolve a bearer token with the auth server's user endpoint.
    Returns None when the server rejects the token.
    """
    if not settings.auth_url:
        raise Unauthorized("Authentication is not configured")

    client = client or get_httpx_client()
    headers = {"Authorization": f"Bearer {token}"}
    if settings.auth_api_key:
        headers["apikey"] = settings.auth_api_key

    try:
        resp = await client.get(f"{settings.auth_url.rstrip('/')}/auth/v1/user", headers=headers)
    except httpx.HTTPError as e:
        logger.exception("Auth server request failed")
        raise Unauthorized("Could not verify credentials") from e

    if resp.status_code in (401, 403):
        return None
    if resp.status_code < 200 or resp.status_code >= 300:
        logger.error("Auth server non-2xx (status=%d). Body snippet: %.300s", resp.status_code, resp.text)
        raise Unauthorized("Could not verify credentials")

    try:
        body = resp.json()
    except ValueError as e:
        raise Unauthorized("Could not verify credentials") from e

    account_id = body.get("id") if isinstance(body, dict) else None
    if not account_id:
        return None
    return Account(id=str(account_id), email=body.get("email"))


# FastAPI dependency
async def get_current_account(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer_auth),
) -> Optional[Account]:
    if creds is None:
        return None
    account = await fetch_account(creds.credentials)
    if account is None:
        raise Unauthorized("Invalid or expired token")
    return account
