import logging
import sys
from contextvars import ContextVar

LOG_FORMAT = "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"
NO_REQUEST_ID = "-"
HANDLER_NAME = "chatrelay"

# Set per request by RequestIdMiddleware; propagates into tasks and generators.
request_id_var: ContextVar[str] = ContextVar("request_id", default=NO_REQUEST_ID)


class RequestIdFilter(logging.Filter):
    """Attach the current request id to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True


class SafeFormatter(logging.Formatter):
    """Formatter that tolerates records emitted outside a request."""

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "request_id"):
            record.request_id = NO_REQUEST_ID
        return super().format(record)


def setup_logging(level: str = "INFO") -> logging.Logger:
    root = logging.getLogger()
    root.setLevel(logging.WARNING)

    if not any(h.get_name() == HANDLER_NAME for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(SafeFormatter(LOG_FORMAT))
        handler.addFilter(RequestIdFilter())
        handler.set_name(HANDLER_NAME)
        root.addHandler(handler)

    logging.getLogger("chatrelay").setLevel(getattr(logging, level.upper(), logging.INFO))
    return root
