"""Admin verification against Supabase Auth and the ``admin_users`` allowlist."""

import logging
from typing import Optional

import httpx

from ..errors import AuthError
from ..models import AdminUser
from .store import StoreClient

logger = logging.getLogger(__name__)

ADMIN_USERS_TABLE = "admin_users"


class AdminVerifier:
    """Resolves a bearer token to an allowlisted admin user."""

    def __init__(
        self,
        supabase_url: str,
        anon_key: str,
        store: StoreClient,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.supabase_url = (supabase_url or "").rstrip("/")
        self.anon_key = anon_key or ""
        self.store = store
        self.timeout = timeout
        self._transport = transport

    async def _fetch_user(self, token: str) -> Optional[dict]:
        if not self.supabase_url or not self.anon_key:
            raise AuthError("Missing Supabase environment variables")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(
                    f"{self.supabase_url}/auth/v1/user",
                    headers={"Authorization": f"Bearer {token}", "apikey": self.anon_key},
                )
        except httpx.HTTPError as e:
            logger.error(f"Auth user lookup failed: {e}")
            return None

        if response.status_code != 200:
            return None
        try:
            user = response.json()
        except ValueError:
            return None
        return user if isinstance(user, dict) and user.get("id") else None

    async def verify(self, authorization: Optional[str]) -> AdminUser:
        """Verify an ``Authorization`` header value.

        Raises:
            AuthError: when the header is malformed, the token is not valid,
                or the user is not on the allowlist
        """
        if not authorization or not authorization.startswith("Bearer "):
            raise AuthError("Missing or invalid Authorization header")

        token = authorization[len("Bearer "):]
        user = await self._fetch_user(token)
        if not user:
            raise AuthError("Invalid or expired token")

        user_id = str(user["id"])
        lookup = await self.store.select_one(
            ADMIN_USERS_TABLE, columns="user_id", filters={"user_id": user_id}
        )
        if lookup.error:
            raise AuthError(f"Admin lookup failed: {lookup.error_message}")
        if not lookup.data:
            raise AuthError("User is not an admin")

        return AdminUser(id=user_id, access_token=token, email=user.get("email"))
