"""Caller identity and dashboard API key authentication.

Two separate concerns live here:

- ``resolve_identity`` reads the user id and roles established by upstream
  authentication. The governance layer never authenticates end users itself.
- ``verify_api_key`` protects this service's own analytics endpoints.
  Keys are validated against a comma-separated list from environment variables.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Annotated, Any

from fastapi import Header, HTTPException, Request, status

from gatekeeper.core.config import GovernorSettings, settings
from gatekeeper.core.errors import AuthenticationAppError

logger = logging.getLogger(__name__)


def parse_api_keys(keys_string: str | None) -> set[str]:
    """Parse comma-separated API keys into a set.

    Examples:
        >>> parse_api_keys("key1, key2 , key3 ")
        {'key1', 'key2', 'key3'}
        >>> parse_api_keys(None)
        set()
    """
    if not keys_string:
        return set()

    return {key.strip() for key in keys_string.split(",") if key.strip()}


def parse_roles(roles_string: str | None) -> tuple[str, ...]:
    if not roles_string:
        return ()
    return tuple(role.strip().lower() for role in roles_string.split(",") if role.strip())


def _roles_of(roles: Any) -> tuple[str, ...]:
    if isinstance(roles, str):
        return parse_roles(roles)
    if isinstance(roles, (list, tuple, set, frozenset)):
        return tuple(str(role).strip().lower() for role in roles if str(role).strip())
    return ()


def _user_from_state(user: Any) -> tuple[str | None, tuple[str, ...]]:
    if isinstance(user, dict):
        user_id = user.get("id") or user.get("user_id")
        roles = user.get("roles")
    else:
        user_id = getattr(user, "id", None) or getattr(user, "user_id", None)
        roles = getattr(user, "roles", None)
    return (str(user_id) if user_id else None), _roles_of(roles)


def resolve_identity(request: Request, governor_settings: GovernorSettings) -> tuple[str | None, tuple[str, ...]]:
    """Return ``(user_id, roles)`` for the request.

    ``request.state.user`` (set by an upstream auth middleware) is the only
    source of roles. When it is absent and ``trust_identity_headers`` is on,
    the user id header selects the principal; header identities carry no roles.
    """
    user = getattr(request.state, "user", None)
    if user is not None:
        return _user_from_state(user)

    if not governor_settings.trust_identity_headers:
        return None, ()

    user_id = request.headers.get(governor_settings.user_id_header)
    return ((user_id.strip() or None) if user_id else None), ()


def validate_api_key(provided_key: str) -> None:
    """Validate that provided API key matches configured keys.

    Raises:
        AuthenticationAppError: If the key is invalid or no keys are configured.
    """
    if not settings.app.api_key_required:
        return

    valid_keys = parse_api_keys(settings.app.api_keys)

    if not valid_keys:
        logger.error(
            "api_key_validation_failed",
            extra={
                "reason": "api_keys_not_configured",
                "auth_required": settings.app.api_key_required,
            },
        )
        raise AuthenticationAppError(
            code="api_keys_not_configured",
            message="API key authentication is enabled but no valid keys are configured",
            details={"hint": "Set APP_API_KEYS or disable auth with APP_API_KEY_REQUIRED=false"},
        )

    if provided_key not in valid_keys:
        logger.warning(
            "api_key_validation_failed",
            extra={
                "reason": "invalid_api_key",
                "api_key_hash": hashlib.sha256(provided_key.encode()).hexdigest()[:16],
                "auth_required": settings.app.api_key_required,
            },
        )
        raise AuthenticationAppError(
            code="invalid_api_key",
            message="Invalid or missing API key",
        )


async def verify_api_key(
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> None:
    """FastAPI dependency for API key authentication.

    Usage:
        @router.get("/analytics/dashboard", dependencies=[Depends(verify_api_key)])

    Raises:
        HTTPException: 403 Forbidden if authentication fails.
    """
    if not settings.app.api_key_required:
        logger.debug("auth.skipped", extra={"reason": "auth_required_false"})
        return

    if not x_api_key:
        logger.warning("auth.missing_key", extra={"auth_required": True, "api_key_present": False})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing API key. Provide X-API-Key header.",
        )

    try:
        validate_api_key(x_api_key)
    except AuthenticationAppError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=exc.message,
        ) from exc

    logger.info(
        "auth.success",
        extra={
            "auth_required": True,
            "api_key_present": True,
            "api_key_hash": hashlib.sha256(x_api_key.encode()).hexdigest()[:16],
        },
    )
