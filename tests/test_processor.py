import threading
from collections import Counter

from optqueue.config import Config
from optqueue.dispatcher import Dispatcher
from optqueue.processor import STUCK_ERROR, QueueProcessor
from optqueue.reconciler import parse_callback
from optqueue.models import PENDING, PROCESSING, FAILED, ABANDONED, COMPLETED
from optqueue.utils import parse_iso, sign_body

from conftest import ENDPOINT, FakeClient


def test_tick_on_empty_queue(processor, client):
    report = processor.tick()
    assert (report.reaped, report.due, report.dispatched, report.skipped) == (0, 0, 0, 0)
    assert client.calls == []


def test_tick_dispatches_at_most_one_batch(processor, dispatcher, client):
    ids = [dispatcher.enqueue(f"post-{i}", {"title": str(i)}) for i in range(7)]

    report = processor.tick(batch_size=5)

    assert report.due == 5
    assert report.dispatched == 5
    statuses = Counter(dispatcher.get_status(i)["status"] for i in ids)
    assert statuses == Counter({PROCESSING: 5, PENDING: 2})
    assert sorted(client.sent_job_ids()) == sorted(ids[:5])


def test_tick_prefers_high_priority(processor, dispatcher, client, clock):
    low = dispatcher.enqueue("post-low", {"title": "l"}, priority="low")
    clock.advance(seconds=1)
    high = dispatcher.enqueue("post-high", {"title": "h"}, priority="high")

    processor.tick(batch_size=1)

    assert client.sent_job_ids() == [high]
    assert dispatcher.get_status(low)["status"] == PENDING


def test_stuck_job_is_requeued_after_grace(processor, dispatcher, client, clock, config):
    job_id = dispatcher.enqueue("post-42", {"title": "x"})
    processor.tick()
    assert dispatcher.get_status(job_id)["status"] == PROCESSING

    clock.advance(milliseconds=config.processing_grace_ms - 1)
    assert processor.tick().reaped == 0
    assert dispatcher.get_status(job_id)["status"] == PROCESSING

    clock.advance(milliseconds=2)
    report = processor.tick()
    assert report.reaped == 1
    status = dispatcher.get_status(job_id)
    assert status["status"] == FAILED
    assert status["lastError"] == STUCK_ERROR
    assert parse_iso(status["nextAttemptAt"]) > clock()

    # redispatched once the backoff passes
    clock.advance(minutes=5)
    processor.tick()
    status = dispatcher.get_status(job_id)
    assert status["status"] == PROCESSING
    assert status["attempts"] == 2
    assert len(client.calls) == 2


def test_stuck_job_on_last_attempt_is_abandoned(db_path, client, clock):
    config = Config(endpoint=ENDPOINT, max_attempts=1, processing_grace_ms=1000)
    dispatcher = Dispatcher(config, db_path, client=client, clock=clock)
    processor = QueueProcessor(config, db_path, dispatcher=dispatcher, clock=clock)
    job_id = dispatcher.enqueue("post-42", {"title": "x"})
    processor.tick()

    clock.advance(seconds=2)
    assert processor.tick().reaped == 1
    assert dispatcher.get_status(job_id)["status"] == ABANDONED

    clock.advance(hours=1)
    processor.tick()
    assert dispatcher.get_status(job_id)["status"] == ABANDONED
    assert len(client.calls) == 1


def test_completed_jobs_are_not_reaped(processor, dispatcher, reconciler, clock, config):
    job_id = dispatcher.enqueue("post-42", {"title": "x"})
    processor.tick()
    raw = b'{"success": true, "result": {"score": 93}}'
    reconciler.reconcile(job_id, parse_callback(raw), sign_body(config.secret, raw), raw)

    clock.advance(milliseconds=config.processing_grace_ms * 2)
    assert processor.tick().reaped == 0
    assert dispatcher.get_status(job_id)["status"] == COMPLETED


def test_concurrent_ticks_never_double_send(config, db_path, retry_policy, clock):
    client = FakeClient()
    dispatcher = Dispatcher(config, db_path, client=client, retry_policy=retry_policy, clock=clock)
    ids = [dispatcher.enqueue(f"post-{i}", {"title": str(i)}) for i in range(10)]

    processors = [
        QueueProcessor(config, db_path,
                       dispatcher=Dispatcher(config, db_path, client=client,
                                             retry_policy=retry_policy, clock=clock),
                       retry_policy=retry_policy, clock=clock)
        for _ in range(4)
    ]
    barrier = threading.Barrier(len(processors))

    def run(p):
        barrier.wait()
        p.tick(batch_size=10)

    threads = [threading.Thread(target=run, args=(p,)) for p in processors]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    sends = Counter(client.sent_job_ids())
    assert set(sends) == set(ids)
    assert all(n == 1 for n in sends.values())
