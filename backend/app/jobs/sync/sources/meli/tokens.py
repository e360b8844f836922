import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from app.jobs.sync.errors import NoCredential
from app.jobs.sync.sources.base import Credential, TokenProvider
from app.jobs.sync.utils.time import as_utc, utcnow
from app.models.carrier_accounts import CarrierAccount

logger = logging.getLogger(__name__)

# Treat tokens as expired slightly early to avoid racing the expiry.
EXPIRY_BUFFER = timedelta(seconds=60)


class DbTokenProvider(TokenProvider):
    """
    Reads the access token the account service keeps in carrier_accounts.
    Refreshing is that service's job; force_refresh just re-reads the row.
    """

    def __init__(self, session_factory: Callable[[], Session], *, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def get_credential(self, account_id: str, *, force_refresh: bool = False) -> Credential:
        if not account_id:
            raise NoCredential("record has no account")

        with self.session_factory() as db:
            row = db.get(CarrierAccount, account_id)
            if force_refresh and row is not None:
                db.refresh(row)

            if row is None or not row.access_token:
                raise NoCredential(f"account {account_id} has no linked carrier credential")

            expires_at = as_utc(row.expires_at)
            if expires_at is not None and self.clock() >= expires_at - EXPIRY_BUFFER:
                raise NoCredential(f"credential for account {account_id} expired at {expires_at.isoformat()}")

            return Credential(account_id=account_id, access_token=row.access_token, expires_at=expires_at)
