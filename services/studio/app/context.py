import logging
import uuid
import contextvars
from typing import Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from opentelemetry.trace import get_current_span

# Request-scoped identifiers, readable from logging and business logic.
# Background generation tasks inherit the values of the request that started them.
request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)
app_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("app_id", default=None)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [req=%(request_id)s app=%(app_id)s] %(message)s"


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def get_app_id() -> Optional[str]:
    return app_id_var.get()


class RequestContextLogFilter(logging.Filter):
    """
    Logging filter that injects 'request_id' and 'app_id' onto every LogRecord.
    Formatters can include %(request_id)s and %(app_id)s.
    """
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        record.app_id = get_app_id() or "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    """
    Install the studio log format on the root handler and attach the context filter
    to the root and uvicorn loggers. Calling it twice does not duplicate filters.
    """
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    else:
        root.setLevel(level)
    filt = RequestContextLogFilter()
    for handler in root.handlers:
        if not any(isinstance(f, RequestContextLogFilter) for f in handler.filters):
            handler.addFilter(filt)
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error", "fastapi"):
        lg = logging.getLogger(name)
        if not any(isinstance(f, RequestContextLogFilter) for f in lg.filters):
            lg.addFilter(filt)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    ASGI middleware that:
    - Reads a request id from the incoming header, generating one if missing
    - Reads the application id header when present
    - Stores both on request.state and in contextvars for logging
    - Adds them to the current server span (if tracing is active)
    - Echoes the request id back in the response header
    """

    def __init__(self, app, header_name: str = "X-Request-Id", app_id_header: str = "X-App-Id"):
        super().__init__(app)
        self.header_name = header_name
        self.app_id_header = app_id_header

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(self.header_name) or uuid.uuid4().hex
        app_id = request.headers.get(self.app_id_header)

        request.state.request_id = request_id
        rid_token = request_id_var.set(request_id)
        aid_token = app_id_var.set(app_id)

        span = get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("studio.request_id", request_id)
            if app_id:
                span.set_attribute("studio.app_id", app_id)

        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(rid_token)
            app_id_var.reset(aid_token)

        response.headers[self.header_name] = request_id
        return response
