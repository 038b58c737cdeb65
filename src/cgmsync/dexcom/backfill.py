"""
Downstream backfill trigger.

After a run stores new readings, a correlation job links them to meals and
insulin doses logged earlier. That job is outside this service: we only
notify it. Callers treat the notification as fire-and-forget and swallow
its failures.
"""
import logging
from datetime import datetime
from typing import Optional

import httpx

from cgmsync.dexcom.client import format_dexcom_time

logger = logging.getLogger(__name__)


class NullBackfillTrigger:
    """Used when no backfill endpoint is configured."""

    async def __call__(self, user_id: str, since: datetime) -> None:
        logger.debug("Backfill disabled; skipping for user %s", user_id)


class HttpBackfillTrigger:
    """POSTs {userId, since} to the backfill endpoint."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        service_key: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = url
        self._timeout = timeout
        self._service_key = service_key
        self._transport = transport

    async def __call__(self, user_id: str, since: datetime) -> None:
        headers = {}
        if self._service_key:
            headers["Authorization"] = f"Bearer {self._service_key}"
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as http:
            response = await http.post(
                self._url,
                json={"userId": user_id, "since": format_dexcom_time(since)},
                headers=headers,
            )
            response.raise_for_status()


def build_backfill_trigger(settings):
    """Pick the trigger implementation from settings."""
    if not settings.backfill_url:
        return NullBackfillTrigger()
    return HttpBackfillTrigger(
        settings.backfill_url,
        timeout=settings.backfill_timeout_seconds,
        service_key=settings.service_role_key,
    )
