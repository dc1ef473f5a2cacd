"""Client identity derived from the broker auth token.

The token is a JWT issued by the broker operator.  Only its ``id`` claim
is needed here, as the MQTT client id; the broker verifies the signature
itself when the token is presented as the username.
"""

from __future__ import annotations

import jwt

from otapush.errors import BadCredential


def resolve_client_id(token: str) -> str:
    """Return the ``id`` claim of *token*.  Raises ``BadCredential``."""
    if not token:
        raise BadCredential("no auth token configured")
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as exc:
        raise BadCredential(f"cannot decode auth token: {exc}") from exc
    client_id = claims.get("id")
    if not isinstance(client_id, str) or not client_id:
        raise BadCredential("auth token has no string 'id' claim")
    return client_id
