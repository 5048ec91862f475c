"""Sync-action handlers.

Supports two backends:
- Log-only (development / testing): logs the action and reports success
- HTTP: forwards the action to the storefront backend with an
  Idempotency-Key header so a replayed action is applied once

Set SYNC_BACKEND=http and SYNC_BACKEND_URL for production.
"""

import logging
from typing import Any, Protocol

import httpx

from relay.config import settings
from relay.models.queue_item import SyncActionType
from relay.worker.retry import DeliveryError, error_for_status

logger = logging.getLogger(__name__)


class SyncActionError(DeliveryError):
    """The handler rejected the action. Terminal unless marked retryable."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = False) -> None:
        super().__init__(message, status_code=status_code, retryable=retryable)


class SyncBackend(Protocol):
    async def apply(
        self,
        action_type: SyncActionType,
        owner_id: str,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> None: ...


class LogSyncBackend:
    """Development backend: logs the action instead of applying it."""

    async def apply(
        self,
        action_type: SyncActionType,
        owner_id: str,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> None:
        logger.info(
            "SYNC %s owner=%s key=%s payload=%s", action_type.value, owner_id, idempotency_key, payload
        )


class HttpSyncBackend:
    def __init__(self, client: httpx.AsyncClient, url: str) -> None:
        self._client = client
        self.url = url

    async def apply(
        self,
        action_type: SyncActionType,
        owner_id: str,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> None:
        response = await self._client.post(
            self.url,
            json={
                "action_type": action_type.value,
                "store_id": owner_id,
                "payload": payload,
            },
            headers={"Idempotency-Key": idempotency_key},
        )
        if response.status_code == 422:
            raise SyncActionError(f"Action rejected: {response.text[:200]}", status_code=422)
        if not response.is_success:
            raise error_for_status(response.status_code, response.text)


def get_sync_backend(client: httpx.AsyncClient) -> SyncBackend:
    if settings.sync_backend == "http":
        return HttpSyncBackend(client, settings.sync_backend_url)
    return LogSyncBackend()
