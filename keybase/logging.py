"""Structured JSON logging with payment and identity context fields."""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from keybase.settings import Settings


payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")
external_id_ctx: ContextVar[str] = ContextVar("external_id", default="")


class ContextFilter(logging.Filter):
    """Inject the app name and correlation identifiers into every log record."""

    def __init__(self, app_name: str) -> None:
        super().__init__()
        self.app_name = app_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.app_name = self.app_name
        record.payment_id = payment_id_ctx.get()
        record.external_id = external_id_ctx.get()
        return True


def configure_logging(settings: Settings) -> None:
    """Configure the root logger once per process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter(settings.app_name)
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(app_name)s %(payment_id)s %(external_id)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
