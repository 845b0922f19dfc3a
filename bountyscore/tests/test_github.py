from __future__ import annotations

import json
from datetime import timedelta

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from bountyscore.config import Settings
from bountyscore.github import (
    AppTokenProvider,
    GitHubAPIError,
    GitHubClient,
    InstallationToken,
    NoActiveConnectionError,
    StaticTokenProvider,
    filter_merged_since,
    get_active_connection,
    should_fetch_next_page,
    sign_payload,
    verify_signature,
)
from bountyscore.tests.conftest import gh_time, make_pull
from bountyscore.utils import utcnow

# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


class TestSignature:
    BODY = b'{"action":"closed","number":7}'

    def test_accepts_correct_signature(self):
        assert verify_signature("s3cret", self.BODY, sign_payload("s3cret", self.BODY))

    def test_rejects_one_bit_flip_in_payload(self):
        header = sign_payload("s3cret", self.BODY)
        tampered = bytearray(self.BODY)
        tampered[5] ^= 0x01
        assert not verify_signature("s3cret", bytes(tampered), header)

    def test_rejects_one_bit_flip_in_signature(self):
        header = sign_payload("s3cret", self.BODY)
        digest = bytearray(bytes.fromhex(header[len("sha256="):]))
        digest[0] ^= 0x01
        assert not verify_signature("s3cret", self.BODY, "sha256=" + digest.hex())

    def test_rejects_wrong_secret(self):
        assert not verify_signature("other", self.BODY, sign_payload("s3cret", self.BODY))

    @pytest.mark.parametrize("header", [None, "", "sha1=abc", "deadbeef"])
    def test_rejects_missing_or_malformed_header(self, header):
        assert not verify_signature("s3cret", self.BODY, header)


# ---------------------------------------------------------------------------
# Paging helpers
# ---------------------------------------------------------------------------


class TestPaging:
    def test_filter_merged_since(self):
        now = utcnow()
        pulls = [
            make_pull(1, merged_at=now - timedelta(days=2)),
            make_pull(2, merged=False),
            make_pull(3, merged_at=now - timedelta(days=200)),
        ]
        kept = filter_merged_since(pulls, now - timedelta(days=30))
        assert [p["number"] for p in kept] == [1]

    def test_continue_on_full_page_without_qualifying(self):
        assert should_fetch_next_page(page=1, page_len=30, qualifying=0, per_page=30, max_pages=50)

    def test_continue_on_short_page_with_qualifying(self):
        assert should_fetch_next_page(page=2, page_len=12, qualifying=3, per_page=30, max_pages=50)

    def test_stop_on_short_page_without_qualifying(self):
        assert not should_fetch_next_page(page=2, page_len=12, qualifying=0, per_page=30, max_pages=50)

    def test_stop_at_ceiling(self):
        assert not should_fetch_next_page(page=50, page_len=30, qualifying=30, per_page=30, max_pages=50)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def rsa_keys() -> tuple[str, str]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private = key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption(),
    ).decode()
    public = key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private, public


def _app_settings(private_key: str) -> Settings:
    return Settings(github_api_url="https://api.github.test", github_app_id="123",
                    github_private_key=private_key.replace("\n", "\\n"))


class TestInstallationToken:
    def test_not_expired_without_expiry(self):
        assert not InstallationToken("t").expired

    def test_expiry_skew(self):
        assert InstallationToken("t", utcnow() + timedelta(seconds=30)).expired
        assert not InstallationToken("t", utcnow() + timedelta(minutes=10)).expired


class TestAppTokenProvider:
    @pytest.mark.asyncio
    async def test_exchanges_and_caches(self, rsa_keys):
        private, public = rsa_keys
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"token": "ghs_abc", "expires_at": gh_time(utcnow() + timedelta(hours=1))})

        provider = AppTokenProvider(_app_settings(private), transport=httpx.MockTransport(handler))
        first = await provider.get_token(77)
        second = await provider.get_token(77)

        assert first.token == "ghs_abc"
        assert second is first
        assert len(seen) == 1
        assert seen[0].url.path == "/app/installations/77/access_tokens"
        app_jwt = seen[0].headers["authorization"].removeprefix("Bearer ")
        claims = jwt.decode(app_jwt, public, algorithms=["RS256"])
        assert claims["iss"] == "123"

    @pytest.mark.asyncio
    async def test_re_requests_when_expired(self, rsa_keys):
        private, _ = rsa_keys
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(201, json={"token": f"t{len(calls)}", "expires_at": gh_time(utcnow())})

        provider = AppTokenProvider(_app_settings(private), transport=httpx.MockTransport(handler))
        assert (await provider.get_token(77)).token == "t1"
        assert (await provider.get_token(77)).token == "t2"

    @pytest.mark.asyncio
    async def test_revoked_installation_is_no_active_connection(self, rsa_keys):
        private, _ = rsa_keys
        provider = AppTokenProvider(
            _app_settings(private),
            transport=httpx.MockTransport(lambda r: httpx.Response(404, json={"message": "Not Found"})),
        )
        with pytest.raises(NoActiveConnectionError):
            await provider.get_token(77)

    @pytest.mark.asyncio
    async def test_network_error_is_no_active_connection(self, rsa_keys):
        private, _ = rsa_keys

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        provider = AppTokenProvider(_app_settings(private), transport=httpx.MockTransport(handler))
        with pytest.raises(NoActiveConnectionError):
            await provider.get_token(77)

    @pytest.mark.asyncio
    async def test_missing_key_is_no_active_connection(self):
        provider = AppTokenProvider(Settings(github_app_id="", github_private_key=""))
        with pytest.raises(NoActiveConnectionError):
            await provider.get_token(77)


def test_static_provider_requires_token():
    with pytest.raises(NoActiveConnectionError):
        StaticTokenProvider("")


def test_get_active_connection(session, acme):
    org, _ = acme
    assert get_active_connection(session, org.id).github_installation_id == 42
    with pytest.raises(NoActiveConnectionError):
        get_active_connection(session, org.id + 100)


# ---------------------------------------------------------------------------
# REST client
# ---------------------------------------------------------------------------


class TestRestClient:
    @pytest.mark.asyncio
    async def test_list_pulls_sends_query_and_token(self, settings):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[make_pull(1)])

        async with GitHubClient(StaticTokenProvider("tok"), settings=settings,
                                transport=httpx.MockTransport(handler)) as client:
            pulls = await client.list_pulls("acme/widgets", page=3, per_page=30)

        assert pulls[0]["number"] == 1
        params = seen[0].url.params
        assert (params["state"], params["sort"], params["direction"]) == ("closed", "updated", "desc")
        assert (params["page"], params["per_page"]) == ("3", "30")
        assert seen[0].headers["authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_create_comment_posts_body(self, settings):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append((request.url.path, json.loads(request.content)))
            return httpx.Response(201, json={"id": 9})

        async with GitHubClient(StaticTokenProvider("tok"), settings=settings,
                                transport=httpx.MockTransport(handler)) as client:
            await client.create_comment("acme/widgets", 7, "hello")
        assert bodies == [("/repos/acme/widgets/issues/7/comments", {"body": "hello"})]

    @pytest.mark.asyncio
    async def test_error_status_raises(self, settings):
        async with GitHubClient(StaticTokenProvider("tok"), settings=settings,
                                transport=httpx.MockTransport(lambda r: httpx.Response(429))) as client:
            with pytest.raises(GitHubAPIError) as err:
                await client.list_files("acme/widgets", 7)
        assert err.value.status == 429
        assert err.value.rate_limited
