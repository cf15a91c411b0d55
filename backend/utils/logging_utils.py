import logging

from services.request_context import get_request_scope

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [req=%(request_id)s user=%(user_id)s] %(message)s"


class RequestIdFilter(logging.Filter):
    """Stamp every record with the active request's correlation id."""

    def filter(self, record: logging.LogRecord) -> bool:
        scope = get_request_scope()
        record.request_id = scope.request_id if scope else "-"
        record.user_id = scope.user_id if scope and scope.user_id is not None else "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if any(getattr(handler, "_proteinlens", False) for handler in root.handlers):
        root.setLevel(level.upper())
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RequestIdFilter())
    handler._proteinlens = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level.upper())
