"""HTTP surface: job submission, status queries and the automation callback.

Status codes follow the error taxonomy:
- 400 malformed request body (`InvalidPayloadError`)
- 401 callback signature mismatch (`InvalidSignatureError`)
- 404 unknown job (`JobLookupError`)
- 409 active job already queued for the subject (`DuplicateSubjectError`)

Store access blocks on SQLite, so async routes hand it to the threadpool.
"""

import json
import logging
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from .dispatcher import Dispatcher
from .errors import (
    DuplicateSubjectError,
    InvalidPayloadError,
    InvalidSignatureError,
    JobLookupError,
)
from .reconciler import CallbackReconciler, parse_callback
from .webhook import SIGNATURE_HEADER

logger = logging.getLogger(__name__)


def _error(status_code: int, detail: str, **extra: Any) -> JSONResponse:
    body: Dict[str, Any] = {"detail": detail}
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)


def install_error_handling(app: FastAPI) -> None:
    @app.exception_handler(InvalidPayloadError)
    async def _invalid_payload(request: Request, exc: InvalidPayloadError):
        return _error(400, str(exc))

    @app.exception_handler(InvalidSignatureError)
    async def _invalid_signature(request: Request, exc: InvalidSignatureError):
        return _error(401, "invalid signature")

    @app.exception_handler(JobLookupError)
    async def _not_found(request: Request, exc: JobLookupError):
        return _error(404, str(exc), job_id=exc.job_id)

    @app.exception_handler(DuplicateSubjectError)
    async def _duplicate(request: Request, exc: DuplicateSubjectError):
        return _error(409, str(exc), job_id=exc.job_id)


def create_app(dispatcher: Dispatcher, reconciler: CallbackReconciler) -> FastAPI:
    app = FastAPI(title="optqueue")
    install_error_handling(app)

    @app.get("/health")
    def health() -> Dict[str, bool]:
        return {"ok": True}

    @app.post("/jobs", status_code=201)
    async def submit_job(request: Request) -> Dict[str, str]:
        raw = await request.body()
        try:
            data = json.loads(raw)
        except ValueError:
            raise InvalidPayloadError("request body is not valid JSON")
        if not isinstance(data, dict):
            raise InvalidPayloadError("request body must be a JSON object")
        job_id = await run_in_threadpool(
            dispatcher.enqueue,
            data.get("subjectId"),
            data.get("payload"),
            priority=data.get("priority") or "normal",
            target_score=data.get("targetScore"),
            current_score=data.get("currentScore"),
        )
        return {"jobId": job_id}

    @app.get("/jobs/{job_id}")
    def job_status(job_id: str) -> Dict[str, Any]:
        return dispatcher.get_status(job_id)

    @app.post("/callback/{job_id}")
    async def callback(job_id: str, request: Request) -> Dict[str, Any]:
        raw = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)
        # signature first: an unsigned body is not parsed at all
        reconciler.verify(job_id, signature, raw)
        outcome = parse_callback(raw)
        result = await run_in_threadpool(reconciler.apply, job_id, outcome)
        logger.info("http.callback job_id=%s status=%s changed=%s", job_id, result.status, result.changed)
        return {"jobId": result.job_id, "status": result.status, "changed": result.changed}

    return app
