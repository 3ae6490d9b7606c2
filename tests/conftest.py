import base64
import json
import time
from typing import Any, Callable, Dict, Optional

import pytest
from cryptography.hazmat.primitives import hashes, hmac

JWT_SECRET = "test-secret"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def sign_hs256(
    claims: Dict[str, Any],
    secret: str = JWT_SECRET,
    header: Optional[Dict[str, Any]] = None,
) -> str:
    header = header or {"alg": "HS256", "typ": "JWT"}
    signing_input = (
        f"{_b64url(json.dumps(header).encode())}.{_b64url(json.dumps(claims).encode())}"
    )
    mac = hmac.HMAC(secret.encode("utf-8"), hashes.SHA256())
    mac.update(signing_input.encode("ascii"))
    return f"{signing_input}.{_b64url(mac.finalize())}"


@pytest.fixture
def make_token() -> Callable[..., str]:
    """Build HS256 tokens signed with the shared test secret."""

    def factory(
        *,
        secret: str = JWT_SECRET,
        expires_in: Optional[float] = 3600,
        **claims: Any,
    ) -> str:
        payload: Dict[str, Any] = {"userId": 1, "username": "operator"}
        payload.update(claims)
        if expires_in is not None:
            payload["exp"] = int(time.time() + expires_in)
        return sign_hs256(payload, secret=secret)

    return factory
