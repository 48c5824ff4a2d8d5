"""
Push fan-out to every subscription registered in a namespace.

Delivery is a plain JSON POST to each subscription endpoint over httpx. Endpoints that
answer 404/410 are treated as expired and removed. Failures are logged, never raised:
a lost push is not retried.
"""
import asyncio
import logging
from dataclasses import asdict
from typing import Optional

import aiosqlite
import httpx

from relayhub.config import PUSH_TIMEOUT
from relayhub.db import crud
from relayhub.db.models import PushPayload, PushSubscription

logger = logging.getLogger(__name__)

_EXPIRED_STATUSES = {404, 410}


class PushService:
    def __init__(
        self,
        db: aiosqlite.Connection,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = PUSH_TIMEOUT,
    ) -> None:
        self._db = db
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send_to_namespace(self, namespace: str, payload: PushPayload) -> int:
        """Deliver `payload` to every subscription in `namespace`. Returns the number delivered."""
        subscriptions = await crud.push_list_by_namespace(self._db, namespace)
        if not subscriptions:
            return 0
        body = asdict(payload)
        results = await asyncio.gather(*(self._send(sub, body) for sub in subscriptions))
        return sum(1 for ok in results if ok)

    async def _send(self, subscription: PushSubscription, body: dict) -> bool:
        try:
            resp = await self._client.post(subscription.endpoint, json=body, headers={"TTL": "60"})
        except httpx.HTTPError as e:
            logger.warning(f"Push delivery to {subscription.endpoint} failed: {type(e).__name__}: {e}")
            return False

        if resp.status_code in _EXPIRED_STATUSES:
            await crud.push_remove(self._db, subscription.namespace, subscription.endpoint)
            logger.info(f"Removed expired push subscription {subscription.endpoint} ({resp.status_code})")
            return False
        if resp.status_code >= 400:
            logger.warning(f"Push endpoint {subscription.endpoint} rejected delivery: HTTP {resp.status_code}")
            return False
        return True
