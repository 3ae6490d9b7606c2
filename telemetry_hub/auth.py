"""Bearer token verification for realtime admission and command dispatch.

Tokens are issued elsewhere; this module only verifies them. Verification
happens once per admission, an accepted connection is never re-checked.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional, Protocol

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from .config import AuthConfig

LOGGER = logging.getLogger(__name__)

_HMAC_ALGORITHMS: Dict[str, Callable[[], hashes.HashAlgorithm]] = {
    "HS256": hashes.SHA256,
    "HS384": hashes.SHA384,
    "HS512": hashes.SHA512,
}


class TokenError(ValueError):
    """Raised internally when a token fails a verification step."""


@dataclass(frozen=True, slots=True)
class AuthResult:
    valid: bool
    claims: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None


class AuthorizationGate(Protocol):
    """Contract for components that verify bearer credentials."""

    def verify(self, token: Optional[str]) -> AuthResult:
        """Return validity and claims for ``token``; never raises for bad input."""
        ...


class JWTAuthorizationGate:
    """Verifies compact JWS tokens signed with HMAC-SHA2 or Ed25519."""

    def __init__(
        self,
        *,
        secret: Optional[str] = None,
        public_key_b64: Optional[str] = None,
        algorithms: Iterable[str] = ("HS256",),
        leeway_seconds: float = 0.0,
        require_exp: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret.encode("utf-8") if secret else None
        self._public_key: Optional[Ed25519PublicKey] = None
        if public_key_b64:
            self._public_key = Ed25519PublicKey.from_public_bytes(
                base64.b64decode(public_key_b64)
            )
        self._algorithms = frozenset(algorithms)
        self._leeway = leeway_seconds
        self._require_exp = require_exp
        self._clock = clock

        if self._secret is None and self._public_key is None:
            LOGGER.warning(
                "No JWT secret or public key configured; every token will be rejected"
            )

    @classmethod
    def from_config(cls, config: AuthConfig) -> "JWTAuthorizationGate":
        return cls(
            secret=config.jwt_secret,
            public_key_b64=config.public_key,
            algorithms=config.algorithms,
            leeway_seconds=config.leeway_seconds,
            require_exp=config.require_exp,
        )

    def verify(self, token: Optional[str]) -> AuthResult:
        if not token:
            return AuthResult(valid=False, reason="missing token")
        try:
            claims = self._decode(token)
        except (TypeError, ValueError) as exc:
            LOGGER.debug("Rejected bearer token: %s", exc)
            return AuthResult(valid=False, reason=str(exc))
        return AuthResult(valid=True, claims=claims)

    def _decode(self, token: str) -> Dict[str, Any]:
        parts = token.split(".")
        if len(parts) != 3:
            raise TokenError("malformed token")

        header_segment, payload_segment, signature_segment = parts
        header = _decode_json_segment(header_segment, "header")
        claims = _decode_json_segment(payload_segment, "payload")
        signature = _b64url_decode(signature_segment)

        algorithm = header.get("alg")
        if not isinstance(algorithm, str):
            raise TokenError("alg header must be a string")
        if algorithm not in self._algorithms:
            raise TokenError(f"algorithm {algorithm!r} not allowed")

        signing_input = f"{header_segment}.{payload_segment}".encode("ascii")
        self._verify_signature(algorithm, signing_input, signature)
        self._verify_claims(claims)
        return claims

    def _verify_signature(
        self, algorithm: str, signing_input: bytes, signature: bytes
    ) -> None:
        try:
            if algorithm in _HMAC_ALGORITHMS:
                if self._secret is None:
                    raise TokenError("no secret configured for HMAC tokens")
                mac = hmac.HMAC(self._secret, _HMAC_ALGORITHMS[algorithm]())
                mac.update(signing_input)
                mac.verify(signature)
            elif algorithm == "EdDSA":
                if self._public_key is None:
                    raise TokenError("no public key configured for EdDSA tokens")
                self._public_key.verify(signature, signing_input)
            else:
                raise TokenError(f"unsupported algorithm {algorithm!r}")
        except InvalidSignature as exc:
            raise TokenError("signature mismatch") from exc

    def _verify_claims(self, claims: Dict[str, Any]) -> None:
        now = self._clock()

        exp = claims.get("exp")
        if exp is None:
            if self._require_exp:
                raise TokenError("token has no expiry")
        elif not _is_number(exp):
            raise TokenError("exp claim must be numeric")
        elif now > exp + self._leeway:
            raise TokenError("token expired")

        nbf = claims.get("nbf")
        if nbf is not None:
            if not _is_number(nbf):
                raise TokenError("nbf claim must be numeric")
            if now + self._leeway < nbf:
                raise TokenError("token not yet valid")


def bearer_token(header_value: Optional[str]) -> Optional[str]:
    """Extract the credential from an ``Authorization: Bearer`` header."""

    if not header_value:
        return None
    scheme, _, credential = header_value.strip().partition(" ")
    if scheme.lower() != "bearer" or not credential.strip():
        return None
    return credential.strip()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    try:
        return base64.urlsafe_b64decode(segment + padding)
    except (binascii.Error, ValueError) as exc:
        raise TokenError("invalid base64url segment") from exc


def _decode_json_segment(segment: str, name: str) -> Dict[str, Any]:
    raw = _b64url_decode(segment)
    try:
        value = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as exc:
        raise TokenError(f"{name} is not valid JSON") from exc
    if not isinstance(value, dict):
        raise TokenError(f"{name} must be a JSON object")
    return value
