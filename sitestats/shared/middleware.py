import time
from uuid import uuid4

from starlette.types import ASGIApp, Message, Receive, Scope, Send
import structlog

log = structlog.get_logger()

# health checks and metric scrapes would drown the request log
QUIET_PATHS = frozenset({"/health", "/metrics"})


class RequestIDMiddleware:
    """
    Tags each HTTP request with an id (taken from X-Request-ID or freshly
    generated), echoes it on the response, keeps it in the structlog context
    for the duration of the request and writes one `request_finished` line.
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID") -> None:
        self.app = app
        self.header_name = header_name
        self._header_key = header_name.lower().encode()

    def _incoming_id(self, scope: Scope) -> str:
        for key, value in scope.get("headers", []):
            if key.lower() == self._header_key and value:
                return value.decode("latin-1")
        return uuid4().hex

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        req_id = self._incoming_id(scope)
        path = scope.get("path", "")
        started = time.perf_counter()
        status = 500

        async def send_with_id(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
                message.setdefault("headers", []).append((self.header_name.encode(), req_id.encode("latin-1")))
            await send(message)

        with structlog.contextvars.bound_contextvars(request_id=req_id, method=scope.get("method"), path=path):
            try:
                await self.app(scope, receive, send_with_id)
            finally:
                if path not in QUIET_PATHS:
                    log.info(
                        "request_finished",
                        status=status,
                        duration_ms=round((time.perf_counter() - started) * 1000, 2),
                    )
