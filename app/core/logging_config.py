import contextvars
import logging
import time
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

# Per-request correlation id, also set by background sweeps ("sweep:<name>")
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        record.request_id = request_id_var.get("-")
        return True


def _make_handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(RequestIdFilter())
    return handler


def setup_logging(*, level: str = "INFO", to_file: bool = True, file_path: str = "logs/app.log", max_bytes: int = 10 * 1024 * 1024, backup_count: int = 5) -> None:
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    log_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.setLevel(log_level)
    root.addHandler(_make_handler(logging.StreamHandler(), formatter))

    if to_file:
        try:
            path = Path(file_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            root.addHandler(_make_handler(RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count), formatter))
        except OSError as e:
            logging.getLogger(__name__).warning("Failed to setup file logging: %s", e)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    # httpx logs every holiday request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    for noisy in ("uvicorn", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(log_level)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Adds X-Request-ID to every request and logs basic request/response details."""

    def __init__(self, app: ASGIApp) -> None:
        super().__init__(app)
        self.logger = logging.getLogger("request")

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_var.set(rid)
        try:
            self.logger.info("%s %s from %s", request.method, request.url.path, request.client.host if request.client else "-")
            response = await call_next(request)
            response.headers["X-Request-ID"] = rid
            self.logger.info("%s %s -> %s in %.1fms", request.method, request.url.path, response.status_code, (time.perf_counter() - start) * 1000)
            return response
        except Exception:
            self.logger.exception("Unhandled error during request processing")
            raise
        finally:
            request_id_var.reset(token)
