from datetime import datetime, timedelta

import pytest

from attsync.ledger import Ledger
from attsync.models import DeviceUser, RawPunchRecord

from fake_terminal import FakeNetwork, FakeTerminal

BASE_TIME = datetime(2024, 3, 4, 8, 0, 0)


def make_users(*user_ids):
    return [DeviceUser(uid=i + 1, user_id=uid, name=f"User {uid}", card=1000 + i)
            for i, uid in enumerate(user_ids)]


def punch(user_id, offset_seconds=0.0, verify_code=1, status=0):
    return RawPunchRecord(user_id=user_id,
                          timestamp=BASE_TIME + timedelta(seconds=offset_seconds),
                          verify_code=verify_code, status=status)


@pytest.fixture
def ledger(tmp_path):
    return Ledger(f"sqlite:///{tmp_path / 'ledger.db'}")


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def terminal(network):
    users = make_users("101", "102")
    punches = [punch("101", 0), punch("102", 60), punch("101", 3600)]
    return network.add("10.0.0.5", FakeTerminal(users=users, punches=punches))
