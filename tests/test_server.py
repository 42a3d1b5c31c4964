import asyncio
import json

import pytest
from fastapi.testclient import TestClient

import optqueue.reconciler
from optqueue.models import PROCESSING, COMPLETED
from optqueue.server import create_app
from optqueue.utils import sign_body
from optqueue.webhook import SIGNATURE_HEADER

from conftest import SECRET


@pytest.fixture
def api(dispatcher, reconciler):
    return TestClient(create_app(dispatcher, reconciler))


def post_callback(api, job_id, body, secret=SECRET, signature=None):
    raw = body if isinstance(body, bytes) else json.dumps(body).encode()
    headers = {"Content-Type": "application/json"}
    sig = signature if signature is not None else sign_body(secret, raw)
    if sig:
        headers[SIGNATURE_HEADER] = sig
    return api.post(f"/callback/{job_id}", content=raw, headers=headers)


def test_health(api):
    assert api.get("/health").json() == {"ok": True}


def test_submit_and_query_job(api):
    resp = api.post("/jobs", json={"subjectId": "post-42", "payload": {"title": "x"}, "priority": "high"})
    assert resp.status_code == 201
    job_id = resp.json()["jobId"]

    status = api.get(f"/jobs/{job_id}")
    assert status.status_code == 200
    assert status.json()["status"] == "pending"
    assert status.json()["priority"] == "high"


def test_submit_invalid_payload_is_400(api):
    resp = api.post("/jobs", json={"subjectId": "post-42", "payload": {}})
    assert resp.status_code == 400
    resp = api.post("/jobs", json={"subjectId": "post-42", "payload": {"title": "x"}, "priority": ["high"]})
    assert resp.status_code == 400
    assert api.post("/jobs", content=b"nope").status_code == 400


def test_submit_duplicate_subject_is_409(api):
    first = api.post("/jobs", json={"subjectId": "post-42", "payload": {"title": "x"}}).json()["jobId"]
    resp = api.post("/jobs", json={"subjectId": "post-42", "payload": {"title": "y"}})
    assert resp.status_code == 409
    assert resp.json()["job_id"] == first


def test_unknown_job_status_is_404(api):
    assert api.get("/jobs/missing").status_code == 404


def test_callback_completes_job_and_is_idempotent(api, dispatcher):
    job_id = dispatcher.enqueue("post-42", {"title": "x"})
    assert dispatcher.dispatch(job_id).status == PROCESSING
    body = {"success": True, "result": {"score": 95}}

    first = post_callback(api, job_id, body)
    assert first.status_code == 200
    assert first.json() == {"jobId": job_id, "status": COMPLETED, "changed": True}

    second = post_callback(api, job_id, body)
    assert second.status_code == 200
    assert second.json()["changed"] is False


def test_callback_bad_signature_is_401(api, dispatcher):
    job_id = dispatcher.enqueue("post-42", {"title": "x"})
    dispatcher.dispatch(job_id)
    resp = post_callback(api, job_id, {"success": True}, signature="deadbeef")
    assert resp.status_code == 401
    assert dispatcher.get_status(job_id)["status"] == PROCESSING


def test_callback_unsigned_is_401(api, dispatcher):
    job_id = dispatcher.enqueue("post-42", {"title": "x"})
    assert post_callback(api, job_id, {"success": True}, signature="").status_code == 401


def test_callback_unknown_job_is_404(api):
    assert post_callback(api, "missing", {"success": True}).status_code == 404


def test_callback_malformed_body_is_400(api, dispatcher):
    job_id = dispatcher.enqueue("post-42", {"title": "x"})
    assert post_callback(api, job_id, b'{"success": "maybe"}').status_code == 400


def test_callback_signature_checked_once(api, dispatcher, monkeypatch):
    job_id = dispatcher.enqueue("post-42", {"title": "x"})
    dispatcher.dispatch(job_id)
    checks = []
    real = optqueue.reconciler.verify_signature

    def counting(*args):
        checks.append(args)
        return real(*args)

    monkeypatch.setattr(optqueue.reconciler, "verify_signature", counting)
    assert post_callback(api, job_id, {"success": True}).status_code == 200
    assert len(checks) == 1


def _on_event_loop():
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def test_store_work_runs_off_the_event_loop(api, dispatcher, reconciler, monkeypatch):
    seen = []
    enqueue, apply = dispatcher.enqueue, reconciler.apply

    def tracked_enqueue(*args, **kwargs):
        seen.append(("enqueue", _on_event_loop()))
        return enqueue(*args, **kwargs)

    def tracked_apply(*args, **kwargs):
        seen.append(("apply", _on_event_loop()))
        return apply(*args, **kwargs)

    monkeypatch.setattr(dispatcher, "enqueue", tracked_enqueue)
    monkeypatch.setattr(reconciler, "apply", tracked_apply)

    job_id = api.post("/jobs", json={"subjectId": "post-42", "payload": {"title": "x"}}).json()["jobId"]
    dispatcher.dispatch(job_id)
    assert post_callback(api, job_id, {"success": True}).status_code == 200

    assert seen == [("enqueue", False), ("apply", False)]
