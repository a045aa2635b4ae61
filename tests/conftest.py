# tests/conftest.py
import os, sys
from datetime import datetime, timezone
from dotenv import load_dotenv

# project root on path
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# load env once
load_dotenv()

import pytest

from parceltrack.ingest import IngestService
from parceltrack.settings import Settings
from parceltrack.store import InMemoryStore

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    def notify(self, user_id, old_status, new_status, tracking_number):
        self.calls.append((user_id, old_status, new_status, tracking_number))


class FakeTracker:
    """Returns canned results per tracking number; records every call."""

    def __init__(self, results=None, name="fake", fail=()):
        self.name = name
        self.results = dict(results or {})
        self.fail = set(fail)
        self.calls = []

    def fetch(self, tracking_number, carrier=None):
        self.calls.append(tracking_number)
        if tracking_number in self.fail:
            raise RuntimeError("upstream exploded")
        return self.results.get(tracking_number)


@pytest.fixture
def cfg():
    # explicit values so a local .env can't change test expectations
    return Settings(
        email_confidence_threshold=0.2,
        event_dedup_window_s=2.0,
        rate_limit_window_s=300,
        resync_delay_s=2.0,
        aggregator_enable=False,
        aggregator_batch_size=10,
        aggregator_timeout_s=20.0,
        aggregator_partial_after_s=12.0,
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def tracker():
    return FakeTracker()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def service(store, notifier, tracker, cfg, sleeps):
    return IngestService(
        store=store,
        notifier=notifier,
        trackers=[tracker],
        cfg=cfg,
        sleep=sleeps.append,
        clock=lambda: NOW,
    )


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_tracker():
    return FakeTracker
