"""
Delivery Driver - hand event batches to the attribution API
============================================================

Drivers:
- GraphApiDriver: POST {base}/{version}/{surface_id}/events over httpx
- NullDriver: records batches in memory and always succeeds (tests, staging)

Error classification (the worker decides what to do with it):
- HTTP 429 or throttling error codes → DeliveryRateLimited (retryable)
- other 4xx → DeliveryRejected (not retryable)
- 5xx, timeouts, connection errors → DeliveryTransportFailure (retryable)
"""

import secrets
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
import structlog
from prometheus_client import Counter, Histogram

from contracts.tracking_schemas import DeliveryResponse, SurfaceCredential
from core.exceptions import (
    DeliveryError,
    DeliveryRateLimited,
    DeliveryRejected,
    DeliveryTransportFailure,
)

logger = structlog.get_logger()

# Metrics
driver_requests_total = Counter(
    'tracking_driver_requests_total',
    'Requests made to the attribution API',
    ['driver', 'result']
)
driver_latency_seconds = Histogram(
    'tracking_driver_latency_seconds',
    'Attribution API request latency',
    ['driver'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

MAX_EVENTS_PER_REQUEST = 1000

# Application/user/page request limits reported with a 400 status
THROTTLING_ERROR_CODES = {4, 17, 32, 613, 80004}


class DeliveryDriver(ABC):
    """Sends up to 1000 events for one surface in a single call"""

    name = "abstract"

    @abstractmethod
    def send_batch(
        self,
        credential: SurfaceCredential,
        events: List[Dict[str, Any]],
        test_code: Optional[str] = None,
    ) -> DeliveryResponse:
        """
        Deliver `events` to the surface

        Raises:
            DeliveryRateLimited, DeliveryRejected, DeliveryTransportFailure
            ValueError: more than 1000 events
        """

    @staticmethod
    def _check_batch(events: List[Dict[str, Any]]) -> None:
        if len(events) > MAX_EVENTS_PER_REQUEST:
            raise ValueError(
                f"At most {MAX_EVENTS_PER_REQUEST} events per request, got {len(events)}"
            )

    def close(self) -> None:
        pass


def classify_http_failure(status_code: int, body: Dict[str, Any]) -> DeliveryError:
    """Map a non-2xx response to the matching DeliveryError"""
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        error = {"message": error} if isinstance(error, str) else {}
    message = error.get("message") or f"HTTP {status_code}"
    code = error.get("code")

    if status_code == 429 or code in THROTTLING_ERROR_CODES:
        return DeliveryRateLimited(
            f"Rate limited by attribution API: {message}",
            code=code, response=body, status_code=status_code,
        )
    if 400 <= status_code < 500:
        return DeliveryRejected(message, code=code, response=body, status_code=status_code)
    return DeliveryTransportFailure(message, code=code, response=body, status_code=status_code)


class GraphApiDriver(DeliveryDriver):
    """
    Live driver for the Graph API conversions endpoint

    One httpx.Client is shared by all worker threads (httpx clients are
    thread-safe); the client timeout is the hard per-attempt timeout.
    """

    name = "graph"

    def __init__(
        self,
        base_url: str = "https://graph.facebook.com",
        api_version: str = "v21.0",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.api_version = api_version
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def send_batch(
        self,
        credential: SurfaceCredential,
        events: List[Dict[str, Any]],
        test_code: Optional[str] = None,
    ) -> DeliveryResponse:
        self._check_batch(events)

        payload: Dict[str, Any] = {"data": events}
        if test_code:
            payload["test_event_code"] = test_code

        url = f"/{self.api_version}/{credential.surface_id}/events"
        with driver_latency_seconds.labels(driver=self.name).time():
            try:
                response = self.client.post(
                    url,
                    params={"access_token": credential.access_token.get_secret_value()},
                    json=payload,
                )
            except httpx.TimeoutException as e:
                driver_requests_total.labels(driver=self.name, result="timeout").inc()
                raise DeliveryTransportFailure(f"Request timed out: {e}") from e
            except httpx.HTTPError as e:
                driver_requests_total.labels(driver=self.name, result="transport_error").inc()
                raise DeliveryTransportFailure(f"Transport error: {e}") from e

        body = self._json(response)
        if response.is_success:
            driver_requests_total.labels(driver=self.name, result="success").inc()
            return DeliveryResponse.from_api(body)

        error = classify_http_failure(response.status_code, body)
        driver_requests_total.labels(driver=self.name, result=error.error_code).inc()
        logger.warning(
            "attribution_api_error",
            surface_id=credential.surface_id,
            status_code=response.status_code,
            code=error.code,
            error_message=error.message,
        )
        raise error

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {"raw_body": response.text[:1000]}
        return body if isinstance(body, dict) else {"raw_body": body}

    def close(self) -> None:
        self.client.close()


class NullDriver(DeliveryDriver):
    """Records every batch instead of sending it"""

    name = "null"

    def __init__(self):
        self._lock = threading.Lock()
        self.sent_batches: List[Dict[str, Any]] = []

    def send_batch(
        self,
        credential: SurfaceCredential,
        events: List[Dict[str, Any]],
        test_code: Optional[str] = None,
    ) -> DeliveryResponse:
        self._check_batch(events)

        with self._lock:
            self.sent_batches.append({
                "surface_id": credential.surface_id,
                "events": list(events),
                "test_event_code": test_code,
            })

        driver_requests_total.labels(driver=self.name, result="success").inc()
        return DeliveryResponse(
            success=True,
            accepted_count=len(events),
            trace_id=f"null-{secrets.token_hex(8)}",
        )

    @property
    def sent_events(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [event for batch in self.sent_batches for event in batch["events"]]

    def reset(self) -> None:
        with self._lock:
            self.sent_batches = []


def build_driver(settings) -> DeliveryDriver:
    """Driver selected by TRACKING_DRIVER"""
    if settings.DRIVER == "null":
        return NullDriver()
    return GraphApiDriver(
        base_url=settings.GRAPH_API_BASE_URL,
        api_version=settings.GRAPH_API_VERSION,
        timeout=settings.DELIVERY_TIMEOUT_SECONDS,
    )
