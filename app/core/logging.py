import logging


class ExtraFieldsFormatter(logging.Formatter):
    """Appends the fields passed through `extra` to the rendered log line."""

    _STANDARD_ATTRS = {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "extra_fields",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "thread",
        "threadName",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in self._STANDARD_ATTRS and not key.startswith("_")
        }
        record.extra_fields = ""
        if extras:
            formatted = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
            record.extra_fields = f" | {formatted}"
        return super().format(record)


class PdfNoiseFilter(logging.Filter):
    """Drops reportlab/pypdf chatter about benign PDF structure warnings."""

    _NOISY_LOGGERS = ("pypdf", "reportlab")
    _NOISY_MARKERS = (
        "ignoring wrong pointing object",
        "multiple definitions in dictionary",
    )

    def filter(self, record: logging.LogRecord) -> bool:
        if not record.name.startswith(self._NOISY_LOGGERS):
            return True
        message = record.getMessage().lower()
        return not any(marker in message for marker in self._NOISY_MARKERS)


def setup_logging(level: str) -> None:
    formatter = ExtraFieldsFormatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s%(extra_fields)s"
    )
    logging.basicConfig(level=level.upper(), force=True)
    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        handler.setFormatter(formatter)
        has_filter = any(isinstance(existing, PdfNoiseFilter) for existing in handler.filters)
        if not has_filter:
            handler.addFilter(PdfNoiseFilter())
