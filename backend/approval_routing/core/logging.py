"""Logging setup shared by the API process and the Celery workers."""
import logging
import sys

from pythonjsonlogger import jsonlogger

from approval_routing.core.config import settings

QUIET_LOGGERS = ("celery.beat", "kombu", "httpx")


class ServiceContextFilter(logging.Filter):
    """Stamp every record with the emitting service and the environment."""

    def __init__(self, service: str) -> None:
        super().__init__()
        self.service = service

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service
        record.env = settings.APP_ENV
        return True


def setup_logging(service: str = "api") -> None:
    """JSON lines in production, plain text elsewhere.

    ``service`` is ``"api"`` for the web process and ``"worker"`` for Celery,
    so escalation passes and API transitions can be told apart in one stream.
    """
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ServiceContextFilter(service))
    if settings.APP_ENV == "production":
        handler.setFormatter(jsonlogger.JsonFormatter(
            "%(asctime)s %(service)s %(env)s %(name)s %(levelname)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        ))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(service)s] %(name)s %(levelname)s %(message)s"))

    logging.root.handlers = [handler]
    logging.root.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
