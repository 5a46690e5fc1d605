import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional, Tuple

import jwt
from jwt import InvalidTokenError, PyJWKClient, PyJWKClientError
from django.conf import settings
from rest_framework.authentication import BaseAuthentication
from rest_framework.exceptions import AuthenticationFailed

logger = logging.getLogger(__name__)


@dataclass
class Principal:
    user_id: Optional[str]
    username: Optional[str]
    roles: list[str] = field(default_factory=list)
    is_authenticated: bool = True


@lru_cache(maxsize=4)
def _jwk_client(jwks_url: str) -> PyJWKClient:
    return PyJWKClient(jwks_url)


def _verify_jwt_with_jwks(token: str, jwks_url: str) -> dict:
    if not jwks_url:
        raise AuthenticationFailed("JWKS URL is not configured.")
    try:
        header = jwt.get_unverified_header(token)
        alg = header.get("alg")
        if not alg:
            raise AuthenticationFailed("JWT alg is missing.")
        if settings.AUTH_ALGORITHMS and alg not in settings.AUTH_ALGORITHMS:
            raise AuthenticationFailed("JWT alg is not allowed.")

        signing_key = _jwk_client(jwks_url).get_signing_key_from_jwt(token)

        options = {
            "verify_aud": bool(settings.AUTH_AUDIENCE),
            "verify_iss": bool(settings.AUTH_ISSUER),
        }
        kwargs = {
            "algorithms": [alg],
            "options": options,
        }
        if settings.AUTH_ISSUER:
            kwargs["issuer"] = settings.AUTH_ISSUER
        if settings.AUTH_AUDIENCE:
            kwargs["audience"] = settings.AUTH_AUDIENCE

        payload = jwt.decode(token, signing_key.key, **kwargs)
        if not isinstance(payload, dict):
            raise AuthenticationFailed("Invalid JWT payload.")
        return payload
    except (PyJWKClientError, InvalidTokenError, AuthenticationFailed, ValueError) as exc:
        logger.warning("JWT verification failed: %s", exc)
        if isinstance(exc, AuthenticationFailed):
            raise
        raise AuthenticationFailed("Invalid bearer token.") from exc


def _parse_roles(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(role) for role in value]
    if isinstance(value, str):
        if "," in value:
            return [role.strip() for role in value.split(",") if role.strip()]
        return [value]
    return [str(value)]


def _principal_from_claims(payload: dict) -> Principal:
    user_id = payload.get(settings.AUTH_USER_ID_CLAIM) if settings.AUTH_USER_ID_CLAIM else None
    username = payload.get(settings.AUTH_USERNAME_CLAIM) if settings.AUTH_USERNAME_CLAIM else None
    roles = _parse_roles(payload.get(settings.AUTH_ROLES_CLAIM)) if settings.AUTH_ROLES_CLAIM else []
    return Principal(
        user_id=str(user_id) if user_id is not None else None,
        username=str(username) if username is not None else None,
        roles=roles,
    )


class LmisAuthentication(BaseAuthentication):
    """
    Bearer JWT authentication verified against the configured JWKS endpoint.

    With ``DEV_AUTH_ENABLED`` every request runs as the configured dev
    principal instead.
    """

    def authenticate(self, request) -> Optional[Tuple[Principal, None]]:
        if settings.DEV_AUTH_ENABLED:
            principal = Principal(
                user_id=str(settings.DEV_AUTH_USER_ID),
                username=str(settings.DEV_AUTH_USER_ID),
                roles=list(settings.DEV_AUTH_ROLES),
            )
            return principal, None

        if not settings.AUTH_ENABLED:
            return None

        auth_header = request.META.get("HTTP_AUTHORIZATION", "")
        if not auth_header.startswith("Bearer "):
            raise AuthenticationFailed("Missing bearer token.")

        token = auth_header.replace("Bearer ", "", 1).strip()
        if not token:
            raise AuthenticationFailed("Missing bearer token.")

        payload = _verify_jwt_with_jwks(token, settings.AUTH_JWKS_URL)
        return _principal_from_claims(payload), None

    def authenticate_header(self, request) -> str:
        return "Bearer"
