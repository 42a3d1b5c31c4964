import json

import pytest

from optqueue.config import Config
from optqueue.errors import InvalidPayloadError, InvalidSignatureError, UnknownJobError
from optqueue.events import JOB_COMPLETED
from optqueue.models import DeliveryResult, NETWORK_ERROR, PROCESSING, COMPLETED, FAILED, ABANDONED
from optqueue.reconciler import CallbackReconciler, parse_callback
from optqueue.utils import parse_iso, sign_body

from conftest import SECRET


def callback(body):
    raw = json.dumps(body).encode()
    return parse_callback(raw), raw


def signed(body, secret=SECRET):
    outcome, raw = callback(body)
    return outcome, sign_body(secret, raw), raw


@pytest.fixture
def in_flight(dispatcher):
    job_id = dispatcher.enqueue("post-42", {"title": "x"})
    assert dispatcher.dispatch(job_id).status == PROCESSING
    return job_id


def test_success_callback_completes_job(reconciler, dispatcher, in_flight):
    outcome, sig, raw = signed({"success": True, "result": {"score": 95}})
    result = reconciler.reconcile(in_flight, outcome, sig, raw)

    assert result.changed is True
    assert result.status == COMPLETED
    status = dispatcher.get_status(in_flight)
    assert status["status"] == COMPLETED
    assert status["result"] == {"score": 95}
    assert status["currentScore"] == 95.0
    assert status["lastError"] is None


def test_duplicate_success_callback_is_noop(reconciler, events, in_flight):
    completed = []
    events.subscribe(JOB_COMPLETED, lambda job, **kw: completed.append(job.id))
    outcome, sig, raw = signed({"success": True, "result": {"score": 95}})

    first = reconciler.reconcile(in_flight, outcome, sig, raw)
    second = reconciler.reconcile(in_flight, outcome, sig, raw)

    assert first.changed is True
    assert second.changed is False
    assert second.status == COMPLETED
    assert completed == [in_flight]


def test_tampered_body_is_refused_without_state_change(reconciler, dispatcher, in_flight):
    outcome, sig, _ = signed({"success": True, "result": {"score": 95}})
    tampered = json.dumps({"success": True, "result": {"score": 100}}).encode()

    with pytest.raises(InvalidSignatureError):
        reconciler.reconcile(in_flight, parse_callback(tampered), sig, tampered)

    status = dispatcher.get_status(in_flight)
    assert status["status"] == PROCESSING
    assert status["result"] is None


def test_missing_signature_is_refused_when_secret_configured(reconciler, in_flight):
    outcome, raw = callback({"success": True})
    with pytest.raises(InvalidSignatureError):
        reconciler.reconcile(in_flight, outcome, None, raw)


def test_prefixed_signature_is_accepted(reconciler, in_flight):
    outcome, sig, raw = signed({"success": True})
    assert reconciler.reconcile(in_flight, outcome, "sha256=" + sig, raw).status == COMPLETED


def test_unsigned_callbacks_accepted_without_secret(db_path, dispatcher, retry_policy, clock, in_flight):
    r = CallbackReconciler(Config(endpoint="http://x"), db_path, retry_policy=retry_policy, clock=clock)
    outcome, raw = callback({"success": True})
    assert r.reconcile(in_flight, outcome, None, raw).status == COMPLETED


def test_unknown_job_is_not_created(reconciler, conn):
    outcome, sig, raw = signed({"success": True})
    with pytest.raises(UnknownJobError):
        reconciler.reconcile("no-such-job", outcome, sig, raw)
    assert conn.execute("SELECT COUNT(*) FROM jobs").fetchone()[0] == 0


def test_late_success_on_abandoned_job_is_ignored(reconciler, dispatcher):
    job_id = dispatcher.enqueue("post-42", {"title": "x"})
    dispatcher.cancel(job_id)
    outcome, sig, raw = signed({"success": True, "result": {"score": 99}})

    result = reconciler.reconcile(job_id, outcome, sig, raw)

    assert result.changed is False
    assert result.status == ABANDONED
    assert dispatcher.get_status(job_id)["status"] == ABANDONED


def test_failure_callback_schedules_retry(reconciler, dispatcher, clock, in_flight):
    outcome, sig, raw = signed({"success": False, "error": "LLM quota exceeded"})
    result = reconciler.reconcile(in_flight, outcome, sig, raw)

    assert result.status == FAILED
    status = dispatcher.get_status(in_flight)
    assert status["lastError"] == "LLM quota exceeded"
    assert status["attempts"] == 1
    assert parse_iso(status["nextAttemptAt"]) > clock()


def test_failure_callback_on_last_attempt_abandons(reconciler, dispatcher, client, clock):
    client.results = [DeliveryResult(kind=NETWORK_ERROR, error="down")] * 2
    job_id = dispatcher.enqueue("post-42", {"title": "x"})
    dispatcher.dispatch(job_id)
    clock.advance(minutes=10)
    dispatcher.dispatch(job_id)
    clock.advance(minutes=10)
    assert dispatcher.dispatch(job_id).attempts == 3

    outcome, sig, raw = signed({"success": False, "error": "gave up"})
    assert reconciler.reconcile(job_id, outcome, sig, raw).status == ABANDONED

    # a stray success afterwards cannot resurrect it
    outcome, sig, raw = signed({"success": True})
    assert reconciler.reconcile(job_id, outcome, sig, raw).status == ABANDONED


@pytest.mark.parametrize(
    "raw",
    [b"not json", b"[1, 2]", b'{"result": {}}', b'{"success": "yes"}', b'{"success": true, "result": 5}'],
)
def test_parse_callback_rejects_malformed_bodies(raw):
    with pytest.raises(InvalidPayloadError):
        parse_callback(raw)


def test_parse_callback_defaults():
    outcome = parse_callback(b'{"success": false}')
    assert outcome.success is False
    assert outcome.result is None
    assert outcome.error is None
