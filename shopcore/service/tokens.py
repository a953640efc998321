from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

from shopcore.logging import get_logger
from shopcore.service.errors import TokenExpiredError, TokenInvalidError

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

# Claims the codec owns; callers cannot override them through extra claims
_RESERVED_CLAIMS = frozenset({"iss", "aud", "iat", "exp", "jti", "token_type"})


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    expires_at: int
    token_type: str


def token_digest(token: str) -> str:
    """Stable non-reversible reference to a token for storage and revocation."""
    return hashlib.sha256(token.encode()).hexdigest()


class TokenCodec:
    """HS256 signer/verifier for access and refresh tokens.

    Tokens are compact JWTs. The ``token_type`` claim is the class
    discriminator; :meth:`verify` reports it but never decides whether a
    class is acceptable for a given use. Callers pass ``expected_type``.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=30),
        leeway_seconds: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway_seconds = leeway_seconds
        self.clock = clock

    def issue_access_token(
        self, claims: dict[str, Any], ttl: Optional[timedelta] = None
    ) -> IssuedToken:
        if not claims.get("sub"):
            raise ValueError("access token claims require 'sub'")
        extra = {k: v for k, v in claims.items() if k not in _RESERVED_CLAIMS}
        return self._issue(extra, ACCESS, ttl or self.access_ttl)

    def issue_refresh_token(
        self, account_id: str, ttl: Optional[timedelta] = None
    ) -> IssuedToken:
        return self._issue({"sub": account_id}, REFRESH, ttl or self.refresh_ttl)

    def verify(self, token: str, *, expected_type: Optional[str] = None) -> dict[str, Any]:
        """Return the claims of a valid token.

        Raises:
            TokenExpiredError: signature is good but the token has expired
            TokenInvalidError: anything else, including a class mismatch
        """
        payload = self._decode(token)
        exp = payload["exp"]
        if exp <= self.clock() - self.leeway_seconds:
            raise TokenExpiredError("token expired", detail={"reason": "expired"})
        if expected_type is not None and payload.get("token_type") != expected_type:
            logger.warning(
                "token_class_mismatch",
                expected=expected_type,
                presented=payload.get("token_type"),
            )
            raise TokenInvalidError(
                f"{expected_type} token required", detail={"reason": "wrong_token_type"}
            )
        return payload

    def peek_expiry(self, token: str) -> Optional[int]:
        """Expiry of a correctly signed token, ignoring whether it has passed."""
        try:
            return int(self._decode(token)["exp"])
        except TokenInvalidError:
            return None

    def _issue(self, claims: dict[str, Any], token_type: str, ttl: timedelta) -> IssuedToken:
        now = int(self.clock())
        exp = now + int(ttl.total_seconds())
        jti = str(uuid.uuid4())
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "token_type": token_type,
            "jti": jti,
            "iat": now,
            "exp": exp,
        }
        return IssuedToken(
            token=self._encode_jwt(payload), jti=jti, expires_at=exp, token_type=token_type
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str) -> dict[str, Any]:
        invalid = TokenInvalidError("invalid token", detail={"reason": "invalid"})
        if not token or not isinstance(token, str):
            raise invalid
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise invalid

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise invalid
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise invalid

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise invalid
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise invalid
        if not isinstance(payload, dict):
            raise invalid
        if payload.get("iss") != self.issuer:
            raise invalid
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise invalid
        if payload.get("token_type") not in (ACCESS, REFRESH) or not payload.get("sub"):
            raise invalid
        try:
            payload["exp"] = int(float(payload["exp"]))
        except (KeyError, TypeError, ValueError):
            raise invalid
        return payload
