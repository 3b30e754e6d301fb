"""
Idempotency Middleware
Deduplicates HTTP write requests carrying an Idempotency-Key header
"""

import base64
import json
import time
from typing import Callable, Iterable, Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from app.config import settings
from app.services.idempotency import (
    BASE64_ENCODING,
    IdempotencyCoordinator,
    OperationResult,
    RequestOutcome,
    RejectionReason,
    RequestOutcomeKind,
    StoreUnavailableError,
    fingerprint_request,
    get_coordinator,
)
from app.services.monitoring import idempotency_log_context

logger = structlog.get_logger(__name__)

REPLAYED_HEADER = "Idempotency-Replayed"

# Never stored with a replayable result: per-response or transport-level headers
_UNREPLAYABLE_HEADERS = {
    "content-length",
    "transfer-encoding",
    "connection",
    "date",
    "server",
    "set-cookie",
    "x-request-id",
}

_DEFAULT_EXCLUDED_PATHS = ("/health", "/metrics", "/docs", "/redoc", "/openapi.json")


class IdempotencyMiddleware(BaseHTTPMiddleware):
    """
    Runs every non-safe request through the idempotency coordinator.

    Operation identity is "<METHOD> <path>", the fingerprint covers the query
    parameters and the raw body (JSON bodies canonicalized). Safe methods and
    excluded paths pass through untouched; whether they skip the protocol is
    decided here, not by the coordinator.

    Outcome -> response:
        executed / replayed  -> stored status, body, headers
        conflict             -> 409 (retry later)
        mismatch             -> 422 (key reused with a different payload)
        rejected             -> 400 (missing/malformed key) or 503 (store down)

    JSON bodies are stored as JSON. Any other body is stored as base64 along
    with its content type and replayed byte for byte.
    """

    def __init__(
        self,
        app: ASGIApp,
        coordinator_factory: Callable[[], IdempotencyCoordinator] = get_coordinator,
        header_name: Optional[str] = None,
        safe_methods: Optional[Iterable[str]] = None,
        require_key: Optional[bool] = None,
        excluded_paths: Iterable[str] = _DEFAULT_EXCLUDED_PATHS,
    ) -> None:
        super().__init__(app)
        self.coordinator_factory = coordinator_factory
        self.header_name = header_name or settings.idempotency_header
        self.safe_methods = {m.upper() for m in (safe_methods or settings.idempotency_safe_methods)}
        self.require_key = settings.idempotency_require_key if require_key is None else require_key
        self.excluded_paths = tuple(p.rstrip("/") for p in excluded_paths)

    def is_excluded(self, path: str) -> bool:
        """Exact match or a sub-path: /metrics and /metrics/x, not /metrics-admin."""
        path = path.rstrip("/")
        return any(path == p or path.startswith(p + "/") for p in self.excluded_paths)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method.upper() in self.safe_methods or self.is_excluded(request.url.path):
            return await call_next(request)

        key = request.headers.get(self.header_name)
        if key is None and not self.require_key:
            return await call_next(request)

        operation = f"{request.method.upper()} {request.url.path}"
        with idempotency_log_context(key, operation):
            return await self._dispatch_keyed(request, call_next, key, operation)

    async def _dispatch_keyed(
        self, request: Request, call_next: RequestResponseEndpoint, key: Optional[str], operation: str
    ) -> Response:
        body = await request.body()
        try:
            coordinator = self.coordinator_factory()
        except StoreUnavailableError as e:
            logger.error("idempotency_coordinator_unavailable", operation=operation, error=str(e))
            return self._render(RequestOutcome.rejected(RejectionReason.STORE_UNAVAILABLE, str(e)))

        started = time.perf_counter()
        payload_fingerprint = fingerprint_request(body, request.query_params.multi_items())

        with coordinator.request_attempt_for_fingerprint(key, operation, payload_fingerprint) as attempt:
            if attempt.should_execute:
                response = await call_next(request)
                attempt.complete(await self._capture(response))

        outcome = attempt.outcome
        coordinator.metrics.request_duration(time.perf_counter() - started, outcome.kind.value)
        return self._render(outcome)

    async def _capture(self, response: Response) -> OperationResult:
        """
        Drain a downstream response into an OperationResult.

        JSON bodies are kept parsed. Anything else (plain text, HTML, binary,
        JSON that does not parse) is kept as base64 with its content type.
        """
        chunks = [chunk async for chunk in response.body_iterator]
        raw = b"".join(c if isinstance(c, bytes) else c.encode("utf-8") for c in chunks)

        headers = {
            name: value for name, value in response.headers.items()
            if name.lower() not in _UNREPLAYABLE_HEADERS
        }
        content_type = response.headers.get("content-type", "")
        if raw and content_type.startswith("application/json"):
            try:
                body = json.loads(raw)
            except ValueError:
                pass
            else:
                # JSONResponse sets its own content type on replay
                headers.pop("content-type", None)
                return OperationResult(status_code=response.status_code, body=body, headers=headers)

        return OperationResult(
            status_code=response.status_code,
            body=base64.b64encode(raw).decode("ascii"),
            headers=headers,
            body_encoding=BASE64_ENCODING,
        )

    def _render(self, outcome: RequestOutcome) -> Response:
        if outcome.kind in (RequestOutcomeKind.EXECUTED, RequestOutcomeKind.REPLAYED):
            result = outcome.result
            headers = dict(result.headers)
            if outcome.kind == RequestOutcomeKind.REPLAYED:
                headers[REPLAYED_HEADER] = "true"
            if result.is_raw:
                return Response(
                    content=base64.b64decode(result.body or ""),
                    status_code=result.status_code,
                    headers=headers,
                )
            return JSONResponse(content=result.body, status_code=result.status_code, headers=headers)

        content = {"detail": outcome.message}
        headers = {}
        if outcome.kind == RequestOutcomeKind.REJECTED:
            content["reason"] = outcome.reason.value
        if outcome.kind == RequestOutcomeKind.CONFLICT:
            headers["Retry-After"] = "1"
        return JSONResponse(content=content, status_code=outcome.status_code, headers=headers)
