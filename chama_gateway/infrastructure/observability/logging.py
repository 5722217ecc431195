"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from chama_gateway.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # httpx logs every request line at INFO, including token URLs
    logging.getLogger("httpx").setLevel(logging.WARNING)


def log_loan_transition(
    loan_id: str,
    action: str,
    actor_id: str,
    from_status: Optional[str],
    to_status: Optional[str],
    **fields: Any,
) -> None:
    """Log a loan lifecycle step in a fixed shape for analysis"""
    logging.info(
        "Loan transition",
        extra={
            "loan_id": loan_id,
            "step": action,
            "actor_id": actor_id,
            "from_status": from_status,
            "to_status": to_status,
            **fields,
        },
    )
