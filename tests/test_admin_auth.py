"""
Unit Tests for admin verification.

Tests the AdminVerifier:
- Bearer header parsing
- Supabase Auth user lookup over a mock transport
- admin_users allowlist lookup
"""

import httpx
import pytest

from conftest import ADMIN_ID, SUPABASE_URL
from indexing_control.errors import AuthError, ErrorCode, code_for_exception, status_for_exception
from indexing_control.services import AdminVerifier, InMemoryStore
from indexing_control.services.admin_auth import ADMIN_USERS_TABLE


def auth_transport(status=200, body=None, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler)


def make_verifier(store=None, **transport_kwargs) -> AdminVerifier:
    if store is None:
        store = InMemoryStore({ADMIN_USERS_TABLE: [{"user_id": ADMIN_ID}]})
    transport_kwargs.setdefault("body", {"id": ADMIN_ID, "email": "admin@example.com"})
    return AdminVerifier(SUPABASE_URL, "anon-key", store, transport=auth_transport(**transport_kwargs))


class TestAdminVerifier:
    """Bearer token to admin user"""

    @pytest.mark.asyncio
    async def test_admin_verified(self):
        seen = []
        admin = await make_verifier(seen=seen).verify("Bearer user-token")

        assert admin.id == ADMIN_ID
        assert admin.email == "admin@example.com"
        assert admin.access_token == "user-token"

        request = seen[0]
        assert str(request.url) == f"{SUPABASE_URL}/auth/v1/user"
        assert request.headers["Authorization"] == "Bearer user-token"
        assert request.headers["apikey"] == "anon-key"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", [None, "", "Basic abc", "bearer token"])
    async def test_malformed_header(self, header):
        with pytest.raises(AuthError, match="Missing or invalid Authorization header"):
            await make_verifier().verify(header)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,body",
        [(401, {"message": "JWT expired"}), (200, {"email": "no-id@example.com"}), (200, "not json")],
    )
    async def test_invalid_token(self, status, body):
        with pytest.raises(AuthError, match="Invalid or expired token"):
            await make_verifier(status=status, body=body).verify("Bearer t")

    @pytest.mark.asyncio
    async def test_auth_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        verifier = AdminVerifier(
            SUPABASE_URL, "anon-key", InMemoryStore(), transport=httpx.MockTransport(handler)
        )
        with pytest.raises(AuthError, match="Invalid or expired token"):
            await verifier.verify("Bearer t")

    @pytest.mark.asyncio
    async def test_not_an_admin(self):
        with pytest.raises(AuthError) as exc_info:
            await make_verifier(store=InMemoryStore()).verify("Bearer t")
        assert str(exc_info.value) == "User is not an admin"
        assert status_for_exception(exc_info.value) == 403
        assert code_for_exception(exc_info.value) == ErrorCode.FORBIDDEN

    @pytest.mark.asyncio
    async def test_admin_lookup_failure(self):
        store = InMemoryStore()
        store.inject_error("select", ADMIN_USERS_TABLE, "relation missing")
        with pytest.raises(AuthError, match="Admin lookup failed: relation missing"):
            await make_verifier(store=store).verify("Bearer t")

    @pytest.mark.asyncio
    async def test_missing_configuration(self):
        verifier = AdminVerifier("", "", InMemoryStore())
        with pytest.raises(AuthError) as exc_info:
            await verifier.verify("Bearer t")
        assert str(exc_info.value) == "Missing Supabase environment variables"
        assert status_for_exception(exc_info.value) == 500


class TestStatusMapping:
    """Auth failures to HTTP statuses"""

    @pytest.mark.parametrize(
        "message,status,code",
        [
            ("Missing or invalid Authorization header", 401, ErrorCode.UNAUTHORIZED),
            ("Invalid or expired token", 401, ErrorCode.UNAUTHORIZED),
            ("User is not an admin", 403, ErrorCode.FORBIDDEN),
            ("Admin lookup failed: boom", 500, ErrorCode.UNEXPECTED_ERROR),
        ],
    )
    def test_auth_errors(self, message, status, code):
        error = AuthError(message)
        assert status_for_exception(error) == status
        assert code_for_exception(error) == code

    def test_plain_exception(self):
        assert status_for_exception(ValueError("boom")) == 500
        assert code_for_exception(ValueError("boom")) == ErrorCode.UNEXPECTED_ERROR
