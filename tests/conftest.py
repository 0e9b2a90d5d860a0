import os
import sys
from datetime import date
from pathlib import Path

import pytest
from starlette.testclient import TestClient

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# static test configuration, read when config.settings is created
os.environ["LEDGER_BACKEND"] = "memory"
os.environ["RESYNC_INTERVAL_MINUTES"] = "0"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["GITHUB_TOKEN"] = "test-token"

from ledger_store import LedgerStore  # noqa: E402  (import after sys.path tweak)
from main import create_app  # noqa: E402
from remote_store import InMemoryRemoteStore, RemoteLocator  # noqa: E402

TODAY = date(2026, 10, 18)


@pytest.fixture
def locator():
    return RemoteLocator(owner="acme", repo="licenses", path="database.csv", branch="main")


@pytest.fixture
def remote():
    return InMemoryRemoteStore()


@pytest.fixture
def store(remote, locator):
    """Ledger store with a fixed clock and an isolated in-memory remote."""
    return LedgerStore(remote, locator, clock=lambda: TODAY)


@pytest.fixture
def client(store):
    with TestClient(create_app(store)) as c:
        yield c


@pytest.fixture
def today():
    return TODAY
