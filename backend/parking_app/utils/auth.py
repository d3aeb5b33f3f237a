from datetime import datetime, timedelta, timezone
from typing import Sequence

import jwt
from jwt import InvalidTokenError

DEFAULT_TOKEN_TTL = timedelta(minutes=30)


class AccessTokenError(ValueError):
    pass


def create_access_token(
    *,
    user_id: int,
    secret: str,
    algorithm: str = "HS256",
    expires_delta: timedelta | None = None,
) -> str:
    now = datetime.now(timezone.utc)
    payload = {"sub": str(user_id), "iat": now, "exp": now + (expires_delta or DEFAULT_TOKEN_TTL)}
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_access_token(
    token: str,
    *,
    secret: str,
    algorithms: Sequence[str],
) -> int:
    """Return the user id carried in `sub`. Raises AccessTokenError on anything unusable."""
    try:
        payload = jwt.decode(token, secret, algorithms=list(algorithms), options={"require": ["sub", "exp"]})
    except InvalidTokenError as exc:  # includes ExpiredSignatureError and missing claims
        raise AccessTokenError("invalid token") from exc

    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError) as exc:
        raise AccessTokenError("token sub is not an integer") from exc
    if user_id < 1:
        raise AccessTokenError("token sub is not a user id")
    return user_id


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
