"""GitHub access: installation credentials, the REST calls the pipeline needs,
and webhook signature verification.

Only four endpoints are used: installation token exchange, list pulls,
list pull request files and create issue comment. The client never retries;
callers decide whether a failed call is fatal (single PR) or counted (batch).
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

import httpx
import jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from bountyscore.config import Settings, get_settings
from bountyscore.models import GithubConnection
from bountyscore.utils import parse_github_datetime, utcnow

log = logging.getLogger(__name__)

_TOKEN_SKEW = timedelta(seconds=60)


class NoActiveConnectionError(Exception):
    """No usable GitHub credential for the organization."""


class GitHubAPIError(Exception):
    """A GitHub REST call failed (non-2xx status or transport error)."""
    def __init__(self, message: str, status: int | None = None, path: str = ""):
        super().__init__(message)
        self.status = status
        self.path = path

    @property
    def rate_limited(self) -> bool:
        return self.status in (403, 429)


# ---------------------------------------------------------------------------
# Credential exchange
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InstallationToken:
    token: str
    expires_at: datetime | None = None

    @property
    def expired(self) -> bool:
        if self.expires_at is None:
            return False
        return utcnow() >= self.expires_at - _TOKEN_SKEW


class TokenProvider(Protocol):
    async def get_token(self, installation_id: int | None) -> InstallationToken: ...


class StaticTokenProvider:
    """Personal access token connections: one token, no exchange."""

    def __init__(self, token: str):
        if not token:
            raise NoActiveConnectionError("No GitHub token configured (set GITHUB_TOKEN)")
        self._token = InstallationToken(token)

    async def get_token(self, installation_id: int | None = None) -> InstallationToken:
        return self._token


class AppTokenProvider:
    """Exchanges a GitHub App installation id for a short-lived access token.

    Tokens live in memory for the lifetime of the provider (one pipeline run
    or one server process) and are re-requested once expired.
    """

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or get_settings()
        self._transport = transport
        self._cache: dict[int, InstallationToken] = {}

    def _app_jwt(self) -> str:
        key = self.settings.read_private_key()
        if not self.settings.github_app_id or not key:
            raise NoActiveConnectionError(
                "GitHub App credentials missing (GITHUB_APP_ID / GITHUB_APP_PRIVATE_KEY)"
            )
        now = int(time.time())
        payload = {"iat": now - 60, "exp": now + 540, "iss": self.settings.github_app_id}
        try:
            return jwt.encode(payload, key, algorithm="RS256")
        except (ValueError, TypeError, jwt.PyJWTError) as exc:
            raise NoActiveConnectionError(f"Could not sign GitHub App JWT: {exc}") from exc

    async def get_token(self, installation_id: int | None) -> InstallationToken:
        if installation_id is None:
            raise NoActiveConnectionError("Connection has no installation id")
        cached = self._cache.get(installation_id)
        if cached is not None and not cached.expired:
            return cached

        path = f"/app/installations/{installation_id}/access_tokens"
        headers = {
            "Authorization": f"Bearer {self._app_jwt()}",
            "Accept": "application/vnd.github+json",
            "User-Agent": self.settings.user_agent,
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.settings.github_api_url,
                timeout=httpx.Timeout(self.settings.github_timeout_seconds),
                transport=self._transport,
            ) as client:
                resp = await client.post(path, headers=headers)
        except httpx.HTTPError as exc:
            raise NoActiveConnectionError(f"Token exchange failed for installation {installation_id}: {exc}") from exc
        if resp.status_code not in (200, 201):
            raise NoActiveConnectionError(
                f"Token exchange failed for installation {installation_id}: HTTP {resp.status_code}"
            )
        data = resp.json()
        if not isinstance(data, dict) or not data.get("token"):
            raise NoActiveConnectionError("Token exchange returned no token")

        token = InstallationToken(data["token"], parse_github_datetime(data.get("expires_at")))
        self._cache[installation_id] = token
        log.info("Obtained installation token for %s (expires %s)", installation_id, token.expires_at)
        return token


def get_active_connection(session: Session, org_id: int) -> GithubConnection:
    conn = session.execute(
        select(GithubConnection)
        .where(GithubConnection.org_id == org_id, GithubConnection.is_active.is_(True))
        .order_by(GithubConnection.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if conn is None:
        raise NoActiveConnectionError(f"Organization {org_id} has no active GitHub connection")
    return conn


def provider_for(conn: GithubConnection, settings: Settings | None = None) -> TokenProvider:
    settings = settings or get_settings()
    if conn.installation_type == "token":
        return StaticTokenProvider(settings.github_token)
    return AppTokenProvider(settings)


# ---------------------------------------------------------------------------
# REST client
# ---------------------------------------------------------------------------


class GitHubClient:
    """Async GitHub REST client scoped to one installation."""

    def __init__(
        self,
        token_provider: TokenProvider,
        installation_id: int | None = None,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self._tokens = token_provider
        self._installation_id = installation_id
        self._http = httpx.AsyncClient(
            base_url=self.settings.github_api_url,
            timeout=httpx.Timeout(self.settings.github_timeout_seconds),
            headers={"Accept": "application/vnd.github+json", "User-Agent": self.settings.user_agent},
            transport=transport,
        )

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        token = await self._tokens.get_token(self._installation_id)
        headers = {"Authorization": f"Bearer {token.token}"}
        try:
            resp = await self._http.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise GitHubAPIError(f"GitHub {method} {path} failed: {exc}", path=path) from exc
        if resp.status_code >= 400:
            raise GitHubAPIError(
                f"GitHub {method} {path} failed: {resp.status_code} {resp.text[:200]}",
                status=resp.status_code, path=path,
            )
        return resp.json() if resp.content else None

    async def list_pulls(
        self,
        full_name: str,
        page: int = 1,
        per_page: int = 30,
        state: str = "closed",
        sort: str = "updated",
        direction: str = "desc",
    ) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/repos/{full_name}/pulls", params={
            "state": state, "sort": sort, "direction": direction,
            "page": page, "per_page": per_page,
        })
        return data if isinstance(data, list) else []

    async def list_files(self, full_name: str, number: int, per_page: int = 100) -> list[dict[str, Any]]:
        data = await self._request(
            "GET", f"/repos/{full_name}/pulls/{number}/files", params={"per_page": per_page},
        )
        return data if isinstance(data, list) else []

    async def create_comment(self, full_name: str, number: int, body: str) -> dict[str, Any]:
        data = await self._request("POST", f"/repos/{full_name}/issues/{number}/comments", json={"body": body})
        return data or {}


# ---------------------------------------------------------------------------
# Paging helpers
# ---------------------------------------------------------------------------


def filter_merged_since(pulls: list[dict[str, Any]], cutoff: datetime | None) -> list[dict[str, Any]]:
    """Pull requests that were merged at or after *cutoff*."""
    out = []
    for pr in pulls:
        merged_at = parse_github_datetime(pr.get("merged_at"))
        if merged_at is None:
            continue
        if cutoff is not None and merged_at < cutoff:
            continue
        out.append(pr)
    return out


def should_fetch_next_page(page: int, page_len: int, qualifying: int, per_page: int, max_pages: int) -> bool:
    """Keep paging while the page had qualifying PRs or was full, up to *max_pages*."""
    if page >= max_pages:
        return False
    return qualifying > 0 or page_len >= per_page


# ---------------------------------------------------------------------------
# Webhook signatures
# ---------------------------------------------------------------------------


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, body: bytes, header: str | None) -> bool:
    """Check an ``X-Hub-Signature-256`` header against the raw request body."""
    if not secret or not header or not header.startswith("sha256="):
        return False
    return hmac.compare_digest(sign_payload(secret, body), header)
