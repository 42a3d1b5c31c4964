import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

import httpx

from .models import DeliveryResult, ACCEPTED, REJECTED, NETWORK_ERROR
from .utils import sign_body, to_iso, utc_now

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
VERSION = "1.0.0"
USER_AGENT = f"optqueue/{VERSION}"
_RAW_BODY_MAX = 2000


class WebhookClient:
    """
    One-shot JSON POST to the automation endpoint.

    Never retries: every call is exactly one request and its interpretation.
    Retry timing belongs to RetryPolicy.
    """

    def __init__(
        self,
        timeout_ms: int = 30000,
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.timeout_ms = timeout_ms
        self.api_key = api_key
        self._transport = transport

    @staticmethod
    def encode(payload: Dict[str, Any]) -> bytes:
        return json.dumps(payload, separators=(",", ":"), sort_keys=True, allow_nan=False).encode("utf-8")

    def build_headers(self, body: bytes, secret: Optional[str]) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if secret:
            headers[SIGNATURE_HEADER] = sign_body(secret, body)
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post(
        self,
        endpoint: str,
        payload: Dict[str, Any],
        secret: Optional[str],
        timeout_ms: Optional[int],
    ) -> Union[httpx.Response, DeliveryResult]:
        """POST the payload; transport problems come back as a DeliveryResult."""
        body = self.encode(payload)
        headers = self.build_headers(body, secret)
        timeout = (timeout_ms or self.timeout_ms) / 1000.0

        try:
            with httpx.Client(timeout=timeout, transport=self._transport) as client:
                return client.post(endpoint, content=body, headers=headers)
        except httpx.InvalidURL as exc:
            logger.error("webhook.invalid_url url=%s error=%s", endpoint, exc)
            return DeliveryResult(kind=REJECTED, error=f"invalid endpoint url: {exc}")
        except httpx.TimeoutException as exc:
            logger.warning("webhook.timeout url=%s timeout_s=%s", endpoint, timeout)
            return DeliveryResult(kind=NETWORK_ERROR, error=f"timeout after {timeout}s: {exc}")
        except httpx.HTTPError as exc:
            logger.warning("webhook.transport_error url=%s error=%s", endpoint, exc)
            return DeliveryResult(kind=NETWORK_ERROR, error=str(exc) or exc.__class__.__name__)

    def send(
        self,
        endpoint: str,
        payload: Dict[str, Any],
        secret: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> DeliveryResult:
        response = self._post(endpoint, payload, secret, timeout_ms)
        if isinstance(response, DeliveryResult):
            return response
        return self.interpret(response)

    def ping(
        self,
        endpoint: str,
        secret: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> DeliveryResult:
        """
        Send a signed test message and report how the endpoint answered.

        Any 2xx counts as reachable; the body is returned as-is for display and
        is not interpreted as a job acknowledgement.
        """
        payload = {"test": True, "client": "optqueue", "version": VERSION,
                   "timestamp": to_iso(now or utc_now())}
        logger.info("webhook.ping url=%s", endpoint)
        response = self._post(endpoint, payload, secret, timeout_ms)
        if isinstance(response, DeliveryResult):
            return response
        kind = ACCEPTED if 200 <= response.status_code < 300 else REJECTED
        return DeliveryResult(kind=kind, status_code=response.status_code,
                              raw_body=response.text[:_RAW_BODY_MAX])

    @staticmethod
    def interpret(response: httpx.Response) -> DeliveryResult:
        raw = response.text
        code = response.status_code

        if not 200 <= code < 300:
            return DeliveryResult(kind=REJECTED, status_code=code, raw_body=raw[:_RAW_BODY_MAX])

        if not raw.strip():
            return DeliveryResult(kind=ACCEPTED, status_code=code)

        try:
            body = json.loads(raw)
        except ValueError:
            return DeliveryResult(
                kind=REJECTED,
                status_code=code,
                raw_body=raw[:_RAW_BODY_MAX],
                error="malformed response body",
            )
        if isinstance(body, dict) and body.get("accepted") is False:
            return DeliveryResult(
                kind=REJECTED,
                status_code=code,
                body=body,
                raw_body=raw[:_RAW_BODY_MAX],
                error=str(body.get("error") or "endpoint declined the job"),
            )
        return DeliveryResult(kind=ACCEPTED, status_code=code, body=body, raw_body=raw[:_RAW_BODY_MAX])
