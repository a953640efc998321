from __future__ import annotations

import hashlib
import hmac
import json
import math
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from redis.exceptions import RedisError

from shopcore.logging import get_logger
from shopcore.service.errors import CooldownError, UpstreamError
from shopcore.storage.models import OtpChallenge
from shopcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)

CODE_DIGITS = 6
FAILURE_REASON = "invalid_or_expired"


def derive_otp_key(secret: str) -> str:
    """Key for OTP code hashes, derived so it never equals the signing key."""
    return hmac.new(secret.encode(), b"shopcore-otp-hash", hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class IssuedChallenge:
    challenge_id: str
    code: str
    expires_at: float
    ttl_seconds: int


@dataclass(frozen=True)
class VerifyResult:
    verified: bool
    reason: str
    challenge_id: Optional[str] = None


class ChallengeStore:
    """Outstanding OTP challenges with cooldown, attempt limit and one-time use.

    At most one challenge is outstanding per phone: issuing a new one
    replaces the old. Verification without a challenge id relies on that
    invariant, and the cooldown window keeps it from being churned.

    Codes are never stored in clear; the store keeps an HMAC bound to the
    challenge id and phone.
    """

    def __init__(
        self,
        hash_key: str,
        cache: Optional[RedisCache] = None,
        *,
        ttl_seconds: int = 600,
        cooldown_seconds: int = 30,
        max_attempts: int = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._hash_key = hash_key.encode()
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.cooldown_seconds = cooldown_seconds
        self.max_attempts = max_attempts
        self.clock = clock
        self._challenges: Dict[str, OtpChallenge] = {}
        self._attempts: Dict[str, int] = {}
        self._phone_index: Dict[str, str] = {}
        self._cooldowns: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _hash_code(self, challenge_id: str, phone: str, code: str) -> str:
        message = f"{challenge_id}:{phone}:{code}".encode()
        return hmac.new(self._hash_key, message, hashlib.sha256).hexdigest()

    @staticmethod
    def _generate_code() -> str:
        return str(secrets.randbelow(9 * 10 ** (CODE_DIGITS - 1)) + 10 ** (CODE_DIGITS - 1))

    async def issue(self, phone: str, *, correlation_id: Optional[str] = None) -> IssuedChallenge:
        """Create a challenge for ``phone``.

        Raises:
            CooldownError: a challenge was issued for this phone too recently
            UpstreamError: the cache could not be reached
        """
        now = self.clock()
        challenge_id = secrets.token_hex(16)
        code = self._generate_code()
        challenge = OtpChallenge(
            id=challenge_id,
            phone=phone,
            code_hash=self._hash_code(challenge_id, phone, code),
            created_at=now,
            expires_at=now + self.ttl_seconds,
            correlation_id=correlation_id,
        )
        try:
            if self.cache is None:
                self._issue_local(challenge, now)
            else:
                await self._issue_cached(challenge)
        except RedisError as exc:
            logger.error("otp_store_failed", error=str(exc))
            raise UpstreamError("challenge store unavailable") from exc
        logger.info("otp_issued", phone=phone, challenge_id=challenge_id)
        return IssuedChallenge(
            challenge_id=challenge_id,
            code=code,
            expires_at=challenge.expires_at,
            ttl_seconds=self.ttl_seconds,
        )

    def _issue_local(self, challenge: OtpChallenge, now: float) -> None:
        with self._lock:
            self._purge_expired(now)
            until = self._cooldowns.get(challenge.phone)
            if until is not None and until > now:
                retry_after = max(1, math.ceil(until - now))
                logger.info("otp_cooldown", phone=challenge.phone, retry_after=retry_after)
                raise CooldownError(retry_after)
            self._cooldowns[challenge.phone] = now + self.cooldown_seconds
            previous = self._phone_index.get(challenge.phone)
            if previous:
                self._challenges.pop(previous, None)
                self._attempts.pop(previous, None)
            self._challenges[challenge.id] = challenge
            self._phone_index[challenge.phone] = challenge.id

    async def _issue_cached(self, challenge: OtpChallenge) -> None:
        retry_after = await self.cache.acquire_otp_cooldown(
            challenge.phone, self.cooldown_seconds
        )
        if retry_after is not None:
            logger.info("otp_cooldown", phone=challenge.phone, retry_after=retry_after)
            raise CooldownError(retry_after)
        await self.cache.store_otp_challenge(
            challenge.id,
            challenge.phone,
            json.dumps(challenge.to_dict()),
            self.ttl_seconds,
        )

    async def verify(
        self, phone: str, code: str, challenge_id: Optional[str] = None
    ) -> VerifyResult:
        """Check ``code`` against the outstanding challenge.

        Success consumes the challenge. A wrong code leaves it in place
        until ``max_attempts`` failures have been recorded. Expired, unknown
        and mismatched challenges all report the same failure reason.
        """
        try:
            if self.cache is None:
                return self._verify_local(phone, code, challenge_id)
            return await self._verify_cached(phone, code, challenge_id)
        except RedisError as exc:
            logger.error("otp_verify_store_failed", error=str(exc))
            raise UpstreamError("challenge store unavailable") from exc

    def _check(self, challenge: Optional[OtpChallenge], phone: str, code: str) -> Optional[bool]:
        """None when the challenge is unusable, otherwise whether the code matches."""
        if challenge is None or challenge.phone != phone:
            return None
        if challenge.expires_at <= self.clock():
            return None
        expected = self._hash_code(challenge.id, phone, str(code or ""))
        return hmac.compare_digest(expected, challenge.code_hash)

    def _verify_local(
        self, phone: str, code: str, challenge_id: Optional[str]
    ) -> VerifyResult:
        with self._lock:
            resolved_id = challenge_id or self._phone_index.get(phone)
            challenge = self._challenges.get(resolved_id) if resolved_id else None
            matched = self._check(challenge, phone, code)
            if matched is None:
                if challenge is not None and challenge.phone == phone:
                    self._drop_local(challenge)
                logger.info("otp_verify_failed", phone=phone, reason="missing_or_expired")
                return VerifyResult(False, FAILURE_REASON, resolved_id)
            if matched:
                self._drop_local(challenge)
                return VerifyResult(True, "verified", challenge.id)
            attempts = self._attempts.get(challenge.id, 0) + 1
            self._attempts[challenge.id] = attempts
            if attempts >= self.max_attempts:
                self._drop_local(challenge)
                logger.warning("otp_attempts_exhausted", phone=phone, attempts=attempts)
            else:
                logger.info("otp_verify_failed", phone=phone, reason="mismatch", attempts=attempts)
            return VerifyResult(False, FAILURE_REASON, challenge.id)

    def _purge_expired(self, now: float) -> None:
        for phone in [p for p, until in self._cooldowns.items() if until <= now]:
            del self._cooldowns[phone]
        for challenge in [c for c in self._challenges.values() if c.expires_at <= now]:
            self._drop_local(challenge)

    def _drop_local(self, challenge: OtpChallenge) -> None:
        self._challenges.pop(challenge.id, None)
        self._attempts.pop(challenge.id, None)
        if self._phone_index.get(challenge.phone) == challenge.id:
            del self._phone_index[challenge.phone]

    async def _verify_cached(
        self, phone: str, code: str, challenge_id: Optional[str]
    ) -> VerifyResult:
        resolved_id = challenge_id or await self.cache.get_otp_challenge_id(phone)
        if not resolved_id:
            logger.info("otp_verify_failed", phone=phone, reason="missing_or_expired")
            return VerifyResult(False, FAILURE_REASON, None)
        raw = await self.cache.get_otp_challenge(resolved_id)
        challenge = OtpChallenge.from_dict(json.loads(raw)) if raw else None
        matched = self._check(challenge, phone, code)
        if matched is None:
            logger.info("otp_verify_failed", phone=phone, reason="missing_or_expired")
            return VerifyResult(False, FAILURE_REASON, resolved_id)
        if matched:
            # Only the caller whose delete removed the key wins a concurrent race
            if await self.cache.delete_otp_challenge(challenge.id, phone):
                return VerifyResult(True, "verified", challenge.id)
            logger.info("otp_verify_failed", phone=phone, reason="already_consumed")
            return VerifyResult(False, FAILURE_REASON, challenge.id)
        remaining_ttl = max(1, int(challenge.expires_at - self.clock()))
        attempts = await self.cache.record_otp_attempt(challenge.id, remaining_ttl)
        if attempts >= self.max_attempts:
            await self.cache.delete_otp_challenge(challenge.id, phone)
            logger.warning("otp_attempts_exhausted", phone=phone, attempts=attempts)
        else:
            logger.info("otp_verify_failed", phone=phone, reason="mismatch", attempts=attempts)
        return VerifyResult(False, FAILURE_REASON, challenge.id)

    async def discard(self, challenge_id: str, phone: str) -> None:
        """Roll back an issued challenge, including its cooldown window."""
        if self.cache is None:
            with self._lock:
                challenge = self._challenges.get(challenge_id)
                if challenge is not None:
                    self._drop_local(challenge)
                self._cooldowns.pop(phone, None)
            return
        try:
            await self.cache.delete_otp_challenge(challenge_id, phone)
            await self.cache.release_otp_cooldown(phone)
        except RedisError as exc:
            logger.error("otp_discard_failed", challenge_id=challenge_id, error=str(exc))
            raise UpstreamError("challenge store unavailable") from exc
