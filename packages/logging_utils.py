import logging
import os

from .request_context import request_id_var, sync_session_id_var


def _stamp(record: logging.LogRecord) -> None:
    if not hasattr(record, "request_id"):
        record.request_id = request_id_var.get() or "-"
    if not hasattr(record, "session_id"):
        record.session_id = sync_session_id_var.get() or "-"


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        record.session_id = sync_session_id_var.get() or "-"
        return True


class SafeFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        _stamp(record)
        return super().format(record)


LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s "
    "request_id=%(request_id)s session_id=%(session_id)s %(message)s"
)


def setup_logging() -> None:
    level = os.getenv("RUNSYNC_LOG_LEVEL", "INFO").upper()
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    # Every LogRecord carries the context fields so formatters never fail.
    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        _stamp(record)
        return record

    logging.setLogRecordFactory(record_factory)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    root = logging.getLogger()
    root.addFilter(ContextFilter())

    formatter = SafeFormatter(LOG_FORMAT)
    for handler in root.handlers:
        handler.setFormatter(formatter)
        handler.addFilter(ContextFilter())


def _format_value(value) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.3f}"
    text = str(value)
    if " " in text or "=" in text:
        return '"' + text.replace('"', "'") + '"'
    return text


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields) -> None:
    """Emit one stage-boundary event as ``event=<name> key=value ...``."""
    parts = [f"event={event}"]
    parts.extend(f"{key}={_format_value(value)}" for key, value in fields.items())
    logger.log(level, " ".join(parts))
