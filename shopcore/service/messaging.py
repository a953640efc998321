from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Protocol, Set

import httpx

from shopcore.logging import get_logger
from shopcore.service.errors import UpstreamError
from shopcore.storage.models import Account

logger = get_logger(__name__)


class OtpSender(Protocol):
    async def send_code(self, phone: str, code: str) -> None:
        ...


class LogOtpSender:
    """Sender used when no SMS provider is configured; never logs the code."""

    async def send_code(self, phone: str, code: str) -> None:
        logger.info("otp_delivery_skipped", phone=phone, reason="sms_provider_not_configured")


class HttpOtpSender:
    """Delivers codes through an SMS provider's JSON API."""

    def __init__(
        self,
        provider_url: str,
        auth_key: str,
        *,
        template_id: Optional[str] = None,
        country_code: str = "91",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.provider_url = provider_url
        self.auth_key = auth_key
        self.template_id = template_id
        self.country_code = country_code
        self.timeout = timeout
        self._transport = transport

    async def send_code(self, phone: str, code: str) -> None:
        payload: Dict[str, Any] = {"mobile": f"{self.country_code}{phone}", "otp": code}
        if self.template_id:
            payload["template_id"] = self.template_id
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self.provider_url,
                    json=payload,
                    headers={"authkey": self.auth_key},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "otp_delivery_failed",
                phone=phone,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise UpstreamError("could not deliver verification code") from exc


class SessionNotifier:
    """Best-effort login/logout sync with a partner app sharing the account.

    Notifications run as background tasks; failures are logged and never
    reach the request that triggered them.
    """

    def __init__(
        self,
        sync_url: Optional[str],
        api_key: Optional[str] = None,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.sync_url = sync_url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.sync_url)

    def notify_login(self, account: Account) -> Optional[asyncio.Task]:
        return self._schedule("login", account)

    def notify_logout(self, account: Account) -> Optional[asyncio.Task]:
        return self._schedule("logout", account)

    def _schedule(self, event: str, account: Account) -> Optional[asyncio.Task]:
        if not self.enabled:
            return None
        task = asyncio.create_task(self._post(event, account))
        # Keep a strong reference until the task finishes
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _post(self, event: str, account: Account) -> bool:
        payload = {
            "event": event,
            "account_id": account.id,
            "external_ref": account.external_ref,
            "mobile": account.phone,
            "modules": list(account.modules),
        }
        headers = {"x-api-key": self.api_key} if self.api_key else {}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(self.sync_url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "partner_notify_failed",
                notify_event=event,
                account_id=account.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("partner_notified", notify_event=event, account_id=account.id)
        return True

    async def drain(self) -> None:
        """Wait for outstanding notifications; used at shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
