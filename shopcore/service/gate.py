from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from shopcore.logging import get_logger
from shopcore.service.errors import AuthenticationError, ForbiddenError, TokenInvalidError
from shopcore.service.retry import call_upstream
from shopcore.service.revocation import RevocationRegistry
from shopcore.service.tokens import ACCESS, TokenCodec
from shopcore.storage.models import Account
from shopcore.storage.repositories import AccountRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class AccessContext:
    account: Account
    claims: Dict[str, Any]
    token: str


def extract_bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("missing bearer token")
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("authorization header must be 'Bearer <token>'")
    return token.strip()


class AccessGate:
    """Per-request authorization; each check short-circuits without side effects."""

    def __init__(
        self,
        codec: TokenCodec,
        revocation: RevocationRegistry,
        accounts: AccountRepository,
        *,
        required_module: str = "shop",
        retry_attempts: int = 3,
    ) -> None:
        self.codec = codec
        self.revocation = revocation
        self.accounts = accounts
        self.required_module = required_module
        self.retry_attempts = retry_attempts

    async def authorize(
        self, authorization: Optional[str], *, require_module: bool = True
    ) -> AccessContext:
        token = extract_bearer(authorization)
        claims = self.codec.verify(token, expected_type=ACCESS)
        if await self.revocation.is_revoked(token):
            logger.info("access_token_revoked", account_id=claims.get("sub"))
            raise AuthenticationError("token has been revoked")
        if require_module:
            self._check_module(claims)
        account = await call_upstream(
            self.accounts.get_account, claims["sub"], attempts=self.retry_attempts
        )
        if account is None:
            raise TokenInvalidError("account not found")
        if account.is_blocked:
            logger.warning("blocked_account_request", account_id=account.id)
            raise ForbiddenError("account is blocked")
        return AccessContext(account=account, claims=claims, token=token)

    def _check_module(self, claims: Dict[str, Any]) -> None:
        module = self.required_module
        modules = claims.get("modules") or []
        if module not in modules:
            raise ForbiddenError(f"{module} module not enabled for this account")
        if claims.get(f"{module}_enabled") is False:
            raise ForbiddenError(f"{module} access disabled for this account")
