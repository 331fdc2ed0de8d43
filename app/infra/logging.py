from __future__ import annotations

import logging
import logging.config
import os

from app.infra.tenant import get_role, get_tenant_id, get_user_id

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] tenant=%(tenant_id)s user=%(user_id)s role=%(role)s %(message)s"

_configured = False


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.tenant_id = get_tenant_id() or "-"
        record.user_id = get_user_id() or "-"
        record.role = get_role() or "-"
        return True


def configure_logging(level: str | None = None) -> None:
    global _configured
    if _configured:
        return
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"request_context": {"()": RequestContextFilter}},
            "formatters": {"default": {"format": LOG_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["request_context"],
                },
            },
            "loggers": {
                "app": {"level": level or LOG_LEVEL, "handlers": ["console"], "propagate": True},
                "sqlalchemy.engine": {"level": "WARNING"},
            },
        }
    )
    _configured = True
