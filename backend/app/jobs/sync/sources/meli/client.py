import logging
import time
from typing import Any, Callable, Optional

import httpx

from app.jobs.sync.errors import NoCredential
from app.jobs.sync.rate_limit import RateLimiter
from app.jobs.sync.sources.base import CarrierClient, Credential, TokenProvider

from .config import MeliConfig
from .http import Unauthorized, get_with_retry

logger = logging.getLogger(__name__)


class MeliCarrierClient(CarrierClient):
    """
    Mercado Libre shipment reads for one seller account:
      - GET /shipments/{id}            snapshot
      - GET /shipments/{id}/history    history feed (list or {"results": [...]})
      - GET /shipments/{id}/tracking   carrier checkpoints
      - GET /orders/{id}               order -> shipping.id

    Every HTTP attempt, retries included, takes a slot from the shared limiter.
    A 401 triggers one retry with a force-refreshed credential; a second 401 means
    the account is effectively unlinked.
    """

    def __init__(
        self,
        cfg: MeliConfig,
        http: httpx.Client,
        tokens: TokenProvider,
        credential: Credential,
        *,
        limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cfg = cfg
        self.http = http
        self.tokens = tokens
        self.credential = credential
        self._sleep = sleep
        self._acquire = limiter.acquire if limiter is not None else None

    def _fetch(self, path: str) -> Optional[Any]:
        return get_with_retry(
            self.cfg,
            self.http,
            path,
            token=self.credential.access_token,
            sleep=self._sleep,
            acquire=self._acquire,
        )

    def _get(self, path: str) -> Optional[Any]:
        try:
            return self._fetch(path)
        except Unauthorized:
            logger.info("401 on %s for account %s; refreshing credential", path, self.credential.account_id)
            self.credential = self.tokens.get_credential(self.credential.account_id, force_refresh=True)
            try:
                return self._fetch(path)
            except Unauthorized as e:
                raise NoCredential(f"credential rejected for account {self.credential.account_id}") from e

    def get_snapshot(self, external_id: str) -> Optional[dict]:
        return self._get(f"/shipments/{external_id}")

    def get_history(self, external_id: str) -> list[Any]:
        data = self._get(f"/shipments/{external_id}/history")
        if data is None:
            return []
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            return data.get("results") or []
        return [data]

    def get_checkpoints(self, external_id: str) -> Optional[Any]:
        return self._get(f"/shipments/{external_id}/tracking")

    def resolve_shipment_id_from_order(self, order_id: str) -> Optional[str]:
        order = self._get(f"/orders/{order_id}")
        if not isinstance(order, dict):
            return None
        shipping = order.get("shipping") or {}
        sid = shipping.get("id") if isinstance(shipping, dict) else None
        return str(sid) if sid else None
