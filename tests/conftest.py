import random
import threading
from datetime import datetime, timedelta, timezone

import pytest

from optqueue.config import Config
from optqueue.db import connect_db, init_db
from optqueue.dispatcher import Dispatcher
from optqueue.events import EventBus
from optqueue.models import DeliveryResult, ACCEPTED
from optqueue.processor import QueueProcessor
from optqueue.reconciler import CallbackReconciler
from optqueue.retry import RetryPolicy

ENDPOINT = "http://n8n.test/webhook/optimize"
SECRET = "s3cret"


class FakeClock:
    def __init__(self, start=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeClient:
    """Stands in for WebhookClient; returns queued results, then `accepted`."""

    def __init__(self, results=None, on_send=None):
        self.results = list(results or [])
        self.on_send = on_send
        self.calls = []
        self._lock = threading.Lock()

    def send(self, endpoint, payload, secret=None, timeout_ms=None):
        with self._lock:
            self.calls.append({"endpoint": endpoint, "payload": payload, "secret": secret})
            result = self.results.pop(0) if self.results else DeliveryResult(kind=ACCEPTED, status_code=202)
        if self.on_send:
            self.on_send(payload)
        return result

    def sent_job_ids(self):
        return [c["payload"]["metadata"]["jobId"] for c in self.calls]


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "queue.db")
    init_db(path)
    return path


@pytest.fixture
def conn(db_path):
    c = connect_db(db_path)
    yield c
    c.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return Config(endpoint=ENDPOINT, secret=SECRET, callback_base_url="https://wp.test/optqueue")


@pytest.fixture
def retry_policy(config, clock):
    return RetryPolicy.from_config(config, clock=clock, rng=random.Random(7))


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def dispatcher(config, db_path, client, retry_policy, events, clock):
    return Dispatcher(config, db_path, client=client, retry_policy=retry_policy, events=events, clock=clock)


@pytest.fixture
def reconciler(config, db_path, retry_policy, events, clock):
    return CallbackReconciler(config, db_path, retry_policy=retry_policy, events=events, clock=clock)


@pytest.fixture
def processor(config, db_path, dispatcher, retry_policy, events, clock):
    return QueueProcessor(config, db_path, dispatcher=dispatcher, retry_policy=retry_policy,
                          events=events, clock=clock)
