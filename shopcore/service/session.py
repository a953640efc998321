from __future__ import annotations

import hmac
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from shopcore.logging import get_correlation_id, get_logger
from shopcore.service.challenges import ChallengeStore, IssuedChallenge
from shopcore.service.errors import (
    ForbiddenError,
    InvalidCodeError,
    InvalidPhoneError,
    NotFoundError,
    RateLimitedError,
    RefreshRevokedError,
    ServiceError,
    TokenExpiredError,
    TokenInvalidError,
    UpstreamError,
    ValidationError,
)
from shopcore.service.messaging import OtpSender, SessionNotifier
from shopcore.service.rate_limit import RateLimiter
from shopcore.service.retry import call_upstream
from shopcore.service.revocation import RevocationRegistry
from shopcore.service.tokens import ACCESS, REFRESH, IssuedToken, TokenCodec, token_digest
from shopcore.storage.errors import ConstraintViolation
from shopcore.storage.models import Account, utcnow
from shopcore.storage.repositories import AccountRepository

logger = get_logger(__name__)

PHONE_PATTERN = re.compile(r"^[6-9]\d{9}$")
KNOWN_MODULES = ("shop", "fantasy")
_PROFILE_FIELDS = ("first_name", "last_name", "email")


def normalize_phone(raw: Optional[str]) -> str:
    """Reduce user input to a bare 10-digit mobile number or raise."""
    digits = re.sub(r"\D", "", raw or "")
    if len(digits) == 12 and digits.startswith("91"):
        digits = digits[2:]
    if not PHONE_PATTERN.match(digits):
        raise InvalidPhoneError(
            "phone number must be 10 digits starting with 6-9", detail={"field": "phone"}
        )
    return digits


@dataclass(frozen=True)
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken
    token_type: str = "bearer"


@dataclass(frozen=True)
class LoginResult:
    account: Account
    tokens: TokenPair
    is_new_account: bool


class SessionManager:
    """OTP login, token issuance, refresh and logout for phone accounts.

    A login moves through ChallengeSent -> Verified -> AccountResolved ->
    TokensIssued; any failing step leaves accounts untouched.
    """

    def __init__(
        self,
        accounts: AccountRepository,
        challenges: ChallengeStore,
        codec: TokenCodec,
        revocation: RevocationRegistry,
        rate_limiter: RateLimiter,
        sender: OtpSender,
        notifier: Optional[SessionNotifier] = None,
        *,
        default_modules: Sequence[str] = ("shop",),
        rate_limit_count: int = 5,
        rate_limit_window_seconds: int = 900,
        retry_attempts: int = 3,
    ) -> None:
        self.accounts = accounts
        self.challenges = challenges
        self.codec = codec
        self.revocation = revocation
        self.rate_limiter = rate_limiter
        self.sender = sender
        self.notifier = notifier
        self.default_modules = list(default_modules)
        self.rate_limit_count = rate_limit_count
        self.rate_limit_window_seconds = rate_limit_window_seconds
        self.retry_attempts = retry_attempts

    async def _read(self, fn, *args, **kwargs):
        # Reads are safe to replay
        return await call_upstream(fn, *args, attempts=self.retry_attempts, **kwargs)

    async def _write(self, fn, *args, **kwargs):
        return await call_upstream(fn, *args, attempts=1, **kwargs)

    # -- login ------------------------------------------------------------

    async def send(self, phone: str) -> IssuedChallenge:
        """Issue and deliver a challenge for ``phone``."""
        normalized = normalize_phone(phone)
        allowed, _, reset_seconds = await self.rate_limiter.check(
            f"otp:send:{normalized}", self.rate_limit_count, self.rate_limit_window_seconds
        )
        if not allowed:
            logger.info("otp_rate_limited", phone=normalized, retry_after=reset_seconds)
            raise RateLimitedError(
                "too many code requests, try again later",
                detail={"retry_after": reset_seconds},
            )
        issued = await self.challenges.issue(normalized, correlation_id=get_correlation_id())
        try:
            await self.sender.send_code(normalized, issued.code)
        except Exception as exc:
            # The user never received this code, so it must not stay redeemable
            logger.warning(
                "otp_delivery_failed",
                phone=normalized,
                challenge_id=issued.challenge_id,
                error_type=type(exc).__name__,
            )
            await self.challenges.discard(issued.challenge_id, normalized)
            if isinstance(exc, ServiceError):
                raise
            raise UpstreamError("could not deliver verification code") from exc
        return issued

    async def verify(self, phone: str, code: str, challenge_id: Optional[str] = None) -> str:
        """Consume the challenge or raise ``InvalidCodeError``; returns the normalized phone."""
        normalized = normalize_phone(phone)
        result = await self.challenges.verify(normalized, code, challenge_id)
        if not result.verified:
            raise InvalidCodeError()
        return normalized

    async def resolve_account(self, phone: str) -> tuple[Account, bool]:
        """Find the account for ``phone`` or create it with default modules.

        Duplicate creation is prevented by the store's unique phone
        constraint; losing that race falls back to the winner's record.
        """
        account = await self._read(self.accounts.get_account_by_phone, phone)
        if account is not None:
            return account, False
        flags = {module: module in self.default_modules for module in KNOWN_MODULES}
        try:
            account = await self._write(
                self.accounts.create_account,
                phone,
                modules=self.default_modules,
                module_flags=flags,
            )
        except ConstraintViolation:
            account = await self._read(self.accounts.get_account_by_phone, phone)
            if account is None:
                raise
            return account, False
        logger.info("account_created", account_id=account.id, phone=phone)
        return account, True

    def access_claims(self, account: Account) -> Dict[str, Any]:
        claims: Dict[str, Any] = {
            "sub": account.id,
            "ext": account.external_ref,
            "phone": account.phone,
            "modules": list(account.modules),
        }
        for module in sorted(set(KNOWN_MODULES) | set(account.modules)):
            claims[f"{module}_enabled"] = account.module_enabled(module)
        return claims

    async def issue_tokens(self, account: Account, *, device_id: Optional[str] = None) -> TokenPair:
        """Issue a token pair and make its refresh token the account's only valid one."""
        access = self.codec.issue_access_token(self.access_claims(account))
        refresh = self.codec.issue_refresh_token(account.id)
        fields: Dict[str, Any] = {
            "refresh_token_hash": token_digest(refresh.token),
            "refresh_token_expires_at": datetime.fromtimestamp(refresh.expires_at, timezone.utc),
            "last_login_at": utcnow(),
        }
        if device_id:
            fields["device_id"] = device_id
        updated = await self._write(self.accounts.update_account, account.id, **fields)
        if updated is None:
            raise NotFoundError("account not found")
        return TokenPair(access=access, refresh=refresh)

    async def login(
        self,
        phone: str,
        code: str,
        challenge_id: Optional[str] = None,
        *,
        device_id: Optional[str] = None,
    ) -> LoginResult:
        normalized = await self.verify(phone, code, challenge_id)
        account, created = await self.resolve_account(normalized)
        if account.is_blocked:
            logger.warning("login_blocked_account", account_id=account.id)
            raise ForbiddenError("account is blocked")
        tokens = await self.issue_tokens(account, device_id=device_id)
        account = await self._read(self.accounts.get_account, account.id) or account
        logger.info("login_succeeded", account_id=account.id, new_account=created)
        if self.notifier is not None:
            self.notifier.notify_login(account)
        return LoginResult(account=account, tokens=tokens, is_new_account=created)

    # -- refresh / validate ----------------------------------------------

    async def refresh(self, refresh_token: str) -> IssuedToken:
        """Exchange the account's current refresh token for a new access token.

        The refresh token itself is not rotated.
        """
        claims = self.codec.verify(refresh_token, expected_type=REFRESH)
        if await self.revocation.is_revoked(refresh_token):
            logger.warning("refresh_rejected", reason="revoked", account_id=claims["sub"])
            raise RefreshRevokedError("refresh token revoked")
        account = await self._read(self.accounts.get_account, claims["sub"])
        if account is None:
            raise TokenInvalidError("account not found")
        stored = account.refresh_token_hash or ""
        if not hmac.compare_digest(stored.encode(), token_digest(refresh_token).encode()):
            logger.warning("refresh_rejected", reason="superseded", account_id=account.id)
            raise RefreshRevokedError("refresh token revoked")
        if account.is_blocked:
            raise ForbiddenError("account is blocked")
        return self.codec.issue_access_token(self.access_claims(account))

    async def validate_token(self, token: str) -> Dict[str, Any]:
        """Describe ``token`` without raising."""
        try:
            claims = self.codec.verify(token)
        except TokenExpiredError:
            return {"valid": False, "reason": "expired"}
        except TokenInvalidError:
            return {"valid": False, "reason": "invalid"}
        if await self.revocation.is_revoked(token):
            return {"valid": False, "reason": "revoked"}
        result: Dict[str, Any] = {
            "valid": True,
            "token_type": claims.get("token_type"),
            "account_id": claims.get("sub"),
            "exp": claims.get("exp"),
        }
        if claims.get("token_type") == ACCESS:
            result.update(
                {
                    "external_ref": claims.get("ext"),
                    "phone": claims.get("phone"),
                    "modules": claims.get("modules", []),
                }
            )
            result.update({k: v for k, v in claims.items() if k.endswith("_enabled")})
        return result

    # -- logout / profile -------------------------------------------------

    async def logout(self, access_token: str, account: Account) -> None:
        await self.revocation.revoke(access_token)
        current = await self._read(self.accounts.get_account, account.id) or account
        if current.refresh_token_hash and current.refresh_token_expires_at:
            await self.revocation.revoke_digest(
                current.refresh_token_hash, current.refresh_token_expires_at.timestamp()
            )
        await self._write(
            self.accounts.update_account,
            account.id,
            refresh_token_hash=None,
            refresh_token_expires_at=None,
        )
        logger.info("logout_completed", account_id=account.id)
        if self.notifier is not None:
            self.notifier.notify_logout(current)

    async def update_profile(self, account: Account, **fields: Any) -> Account:
        changes = {k: v for k, v in fields.items() if k in _PROFILE_FIELDS and v is not None}
        if not changes:
            raise ValidationError("no profile fields to update")
        updated = await self._write(self.accounts.update_account, account.id, **changes)
        if updated is None:
            raise NotFoundError("account not found")
        return updated
