from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


@dataclass(frozen=True)
class Credential:
    account_id: str
    access_token: str
    expires_at: Optional[datetime] = None


class TokenProvider(ABC):
    @abstractmethod
    def get_credential(self, account_id: str, *, force_refresh: bool = False) -> Credential:
        """
        Return a usable bearer credential for the account. Raise NoCredential if there is none.
        """
        raise NotImplementedError


class CarrierClient(ABC):
    """
    Raw carrier reads for one account. Payloads are returned as the vendor sends them;
    normalization happens in app.jobs.sync.normalize.
    """

    @abstractmethod
    def get_snapshot(self, external_id: str) -> Optional[dict]:
        raise NotImplementedError

    @abstractmethod
    def get_history(self, external_id: str) -> list[Any]:
        raise NotImplementedError

    @abstractmethod
    def get_checkpoints(self, external_id: str) -> Optional[Any]:
        raise NotImplementedError

    @abstractmethod
    def resolve_shipment_id_from_order(self, order_id: str) -> Optional[str]:
        raise NotImplementedError
