"""Bearer-token authentication for portal users."""

from __future__ import annotations

import logging
import uuid
from typing import Optional, Union

from fastapi import HTTPException
from supabase import Client

from .models import AuthUser
from .storage import Store

logger = logging.getLogger(__name__)

TOKENS_TABLE = "api_tokens"
ROLES_TABLE = "user_roles"
PROFILES_TABLE = "profiles"


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="No authorization header provided")
    token = authorization.replace("Bearer ", "", 1).strip()
    if not token:
        raise HTTPException(status_code=401, detail="No authorization header provided")
    return token


class SupabaseAuth:
    """Validates Supabase access tokens against Supabase Auth."""

    def __init__(self, client: Client) -> None:
        self.client = client

    def get_user(self, token: str) -> AuthUser:
        try:
            response = self.client.auth.get_user(token)
        except Exception as exc:
            logger.info("Supabase rejected access token: %s", exc)
            raise HTTPException(status_code=401, detail=f"Authentication error: {exc}") from exc
        user = response.user if response else None
        if not user:
            raise HTTPException(status_code=401, detail="Invalid user token")
        metadata = user.user_metadata or {}
        return AuthUser(id=user.id, email=user.email, name=metadata.get("name"))

    def create_user(self, email: str, password: str, name: str) -> AuthUser:
        """Create a confirmed Supabase Auth user with ``name`` in its metadata."""
        try:
            response = self.client.auth.admin.create_user(
                {"email": email, "password": password, "email_confirm": True, "user_metadata": {"name": name}}
            )
        except Exception as exc:
            logger.warning("Supabase refused to create user %s: %s", email, exc)
            raise HTTPException(status_code=400, detail=f"Failed to create user: {exc}") from exc
        user = response.user if response else None
        if not user:
            raise HTTPException(status_code=500, detail="User creation failed - no user returned")
        return AuthUser(id=user.id, email=user.email, name=name)


class TokenTableAuth:
    """Resolves tokens from the ``api_tokens`` table when Supabase Auth is absent."""

    def __init__(self, store: Store) -> None:
        self.store = store

    def get_user(self, token: str) -> AuthUser:
        row = self.store.select_one(TOKENS_TABLE, filters={"token": token})
        if not row:
            raise HTTPException(status_code=401, detail="Invalid user token")
        return AuthUser(id=row["user_id"], email=row.get("email"), name=row.get("name"))

    def create_user(self, email: str, password: str, name: str) -> AuthUser:
        """Record a profile for a new local user.

        There is no credential store in this mode, so ``password`` is not
        kept; the user signs in with a row added to ``api_tokens``.
        """
        if self.store.select_one(PROFILES_TABLE, filters={"email": email}):
            raise HTTPException(status_code=400, detail="Failed to create user: email already registered")
        user_id = str(uuid.uuid4())
        self.store.insert(PROFILES_TABLE, {"id": user_id, "email": email, "name": name})
        return AuthUser(id=user_id, email=email, name=name)


Authenticator = Union[SupabaseAuth, TokenTableAuth]


def has_role(store: Store, user_id: str, role: str) -> bool:
    return store.count(ROLES_TABLE, filters={"user_id": user_id, "role": role}) > 0


def build_authenticator(store: Store) -> Authenticator:
    client = getattr(store, "client", None)
    if client is not None:
        return SupabaseAuth(client)
    return TokenTableAuth(store)
