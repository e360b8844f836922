from datetime import timedelta

import pytest

from app.jobs.sync.errors import NoCredential
from app.jobs.sync.sources.meli.tokens import DbTokenProvider
from app.models.carrier_accounts import CarrierAccount

from conftest import NOW, FixedClock, hours


@pytest.fixture
def provider(session_factory):
    with session_factory() as db:
        db.add_all(
            [
                CarrierAccount(account_id="A1", access_token="tok-a1", expires_at=NOW + hours(6)),
                CarrierAccount(account_id="A2", access_token="tok-a2", expires_at=NOW + timedelta(seconds=30)),
                CarrierAccount(account_id="A3", access_token=None),
                CarrierAccount(account_id="A4", access_token="tok-a4", expires_at=None),
            ]
        )
        db.commit()
    return DbTokenProvider(session_factory, clock=FixedClock(NOW))


def test_valid_credential(provider):
    cred = provider.get_credential("A1")
    assert cred.access_token == "tok-a1"
    assert cred.expires_at == NOW + hours(6)


def test_token_without_expiry_is_usable(provider):
    assert provider.get_credential("A4", force_refresh=True).access_token == "tok-a4"


@pytest.mark.parametrize("account_id", ["A2", "A3", "missing", ""])
def test_unusable_credentials(provider, account_id):
    with pytest.raises(NoCredential):
        provider.get_credential(account_id)


def test_force_refresh_sees_rotated_token(provider, session_factory):
    provider.get_credential("A1")
    with session_factory() as db:
        db.get(CarrierAccount, "A1").access_token = "rotated"
        db.commit()

    assert provider.get_credential("A1", force_refresh=True).access_token == "rotated"
