import logging

from optqueue.events import EventBus, JOB_QUEUED, JOB_DISPATCHED


def test_handlers_receive_job_and_data(dispatcher, events):
    seen = []
    events.subscribe(JOB_QUEUED, lambda job, **kw: seen.append((job.subject_id, kw)))
    dispatcher.enqueue("post-42", {"title": "x"})
    assert [s[0] for s in seen] == ["post-42"]


def test_failing_handler_is_logged_and_state_kept(dispatcher, events, caplog):
    calls = []

    def boom(job, **kw):
        raise RuntimeError("hook exploded")

    events.subscribe(JOB_DISPATCHED, boom)
    events.subscribe(JOB_DISPATCHED, lambda job, **kw: calls.append(job.id))
    job_id = dispatcher.enqueue("post-42", {"title": "x"})

    with caplog.at_level(logging.ERROR, logger="optqueue.events"):
        job = dispatcher.dispatch(job_id)

    assert job.status == "processing"
    assert calls == [job_id]
    assert "events.handler_failed" in caplog.text


def test_emit_without_handlers_is_noop():
    EventBus().emit(JOB_QUEUED, job=None)
