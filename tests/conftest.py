import os
import tempfile
from pathlib import Path

# Configure the app before anything imports duet.config
_tmp = Path(tempfile.mkdtemp(prefix="duet-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_tmp / 'test.db'}"
os.environ["SCHEDULER_ENABLED"] = "FALSE"
os.environ.pop("VAPID_PRIVATE_KEY", None)
os.environ.pop("REMINDER_ADMINS", None)

import json  # noqa: E402

import pytest  # noqa: E402

from duet import db  # noqa: E402
from duet.notifications import DeliveryError  # noqa: E402

SETTER = "alice"
SOLVER = "bob"


class FakeTransport:
    """Records deliveries; endpoints listed in `failures` raise with that status code."""

    def __init__(self, failures=None):
        self.failures = failures or {}
        self.sent = []

    def send(self, subscription, data):
        status = self.failures.get(subscription.endpoint)
        if status is not None:
            raise DeliveryError(f"push service answered {status}", status_code=status)
        self.sent.append((subscription.endpoint, json.loads(data)))

    @property
    def endpoints(self):
        return sorted(e for e, _ in self.sent)


@pytest.fixture(autouse=True)
def fresh_db():
    db.init_db()
    db.reset_db()
    yield


@pytest.fixture
def couple():
    db.upsert_profile(SETTER, email="alice@example.com", username="alice", partner_id=SOLVER, timezone="UTC")
    db.upsert_profile(SOLVER, email="bob@example.com", username="bob", partner_id=SETTER, timezone="UTC")
    return SETTER, SOLVER


@pytest.fixture
def puzzle(couple):
    return db.create_puzzle(
        setter_id=SETTER,
        solver_id=SOLVER,
        date="2026-02-14",
        target_word="BRAVE",
        secret_message="Dinner at eight?",
        hint="Courageous",
    )


@pytest.fixture
def make_transport():
    return FakeTransport
