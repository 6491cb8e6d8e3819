"""
Authentication Module

Bearer-token authentication and role-based permission checks for the API.
Tokens are HS256 JWTs carrying `sub` (user ID) and optionally `roles`; users
and role permissions are configured in access_control.yaml.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from budget.config import default_config_dir, load_yaml_config

logger = logging.getLogger(__name__)

ACCESS_CONTROL_FILE = "access_control.yaml"
ACCESS_TOKEN_EXPIRE_MINUTES = 60

DEFAULT_ACCESS_CONTROL = {
    "users": [
        {"user_id": "dev", "name": "Developer", "roles": ["ADMIN"]},
    ],
    "permissions": {
        "ADMIN": ["*"],
        "PROJECT_MANAGER": ["view", "budget_create", "budget_edit", "transaction_create", "approval_submit"],
        "EQUIPMENT_OFFICER": ["view", "transaction_create", "approval_submit"],
        "FINANCE_CONTROLLER": [
            "view",
            "budget_create",
            "budget_edit",
            "budget_close",
            "transaction_create",
            "transaction_decide",
            "approval_submit",
            "approval_decide",
        ],
        "SUPERVISOR": ["view", "transaction_decide", "approval_submit", "approval_decide"],
        "VIEWER": ["view"],
    },
}

bearer_scheme = HTTPBearer(auto_error=False)


class User(BaseModel):
    """Authenticated user model."""

    user_id: str
    name: str
    roles: list[str]
    permissions: list[str]


class AuthConfig:
    """Users and role permissions loaded from access_control.yaml."""

    def __init__(self, config_dir: Path | str | None = None):
        """Initialize auth config.

        Args:
            config_dir: Directory holding access_control.yaml
        """
        self.config_dir = Path(config_dir) if config_dir else default_config_dir()
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from YAML."""
        self.config = load_yaml_config(self.config_dir, ACCESS_CONTROL_FILE, DEFAULT_ACCESS_CONTROL)

    def roles_for(self, user_id: str) -> list[str]:
        """Roles configured for a user, empty if unknown."""
        for user_data in self.config.get("users", []):
            if str(user_data.get("user_id")) == str(user_id):
                return [str(role).upper() for role in user_data.get("roles", [])]
        return []

    def permissions_for(self, roles: list[str]) -> list[str]:
        permissions = self.config.get("permissions", {})
        granted: list[str] = []
        for role in roles:
            for permission in permissions.get(role, []):
                if permission not in granted:
                    granted.append(permission)
        return granted

    def get_user(self, user_id: str, roles: list[str] | None = None) -> User | None:
        """Build a User from token claims and configuration.

        Args:
            user_id: Subject of the token
            roles: Roles claimed by the token (config roles are used when None)

        Returns:
            User object or None if the user has no roles
        """
        name = "Unknown"
        for user_data in self.config.get("users", []):
            if str(user_data.get("user_id")) == str(user_id):
                name = user_data.get("name", name)
                break

        if roles is None:
            roles = self.roles_for(user_id)
        roles = [str(role).upper() for role in roles]
        if not roles:
            return None

        return User(
            user_id=str(user_id),
            name=name,
            roles=roles,
            permissions=self.permissions_for(roles),
        )

    def has_permission(self, user: User, permission: str) -> bool:
        if "*" in user.permissions:
            return True
        return permission in user.permissions


@lru_cache
def get_auth_config() -> AuthConfig:
    return AuthConfig()


def _secret_key() -> str:
    return os.getenv("JWT_SECRET_KEY", "change-this-secret-key-in-production")


def _algorithm() -> str:
    return os.getenv("JWT_ALGORITHM", "HS256")


def create_access_token(
    user_id: str,
    roles: list[str] | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Issue a signed access token.

    Args:
        user_id: Token subject
        roles: Roles to embed (omit to resolve from config at request time)
        expires_delta: Lifetime (default ACCESS_TOKEN_EXPIRE_MINUTES)

    Returns:
        Encoded JWT
    """
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    claims = {"sub": user_id, "exp": expire}
    if roles is not None:
        claims["roles"] = roles
    return jwt.encode(claims, _secret_key(), algorithm=_algorithm())


def decode_access_token(token: str) -> dict:
    """Decode and validate an access token.

    Raises:
        HTTPException: 401 if the token is expired or invalid
    """
    try:
        payload = jwt.decode(token, _secret_key(), algorithms=[_algorithm()])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no subject",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> User:
    """Get current authenticated user from the bearer token.

    Raises:
        HTTPException: If authentication fails
    """
    # Development mode: requests without a token act as an admin
    if os.getenv("ENVIRONMENT", "development") == "development" and credentials is None:
        return User(user_id="dev", name="Developer", roles=["ADMIN"], permissions=["*"])

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_access_token(credentials.credentials)
    user = get_auth_config().get_user(payload["sub"], payload.get("roles"))

    if not user:
        logger.warning(f"Token subject {payload['sub']} has no configured roles")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User not authorized",
        )

    return user


def require_permission(permission: str):
    """Dependency factory for permission checks.

    Args:
        permission: Required permission

    Returns:
        Dependency function
    """
    async def check_permission(user: User = Depends(get_current_user)) -> User:
        if not get_auth_config().has_permission(user, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission '{permission}' required",
            )
        return user

    return check_permission


# Common permission dependencies
require_view = require_permission("view")
