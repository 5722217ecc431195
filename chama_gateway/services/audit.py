"""Best-effort audit trail for financial mutations"""

import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import inspect

from chama_gateway.domain.models import AuditAction, RequestMeta
from chama_gateway.infrastructure.database.repositories import AuditLogRepository
from chama_gateway.infrastructure.database.session import SessionFactory, SessionLocal, session_scope
from chama_gateway.infrastructure.observability.metrics import audit_failure_counter


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def snapshot(instance: Any) -> Dict[str, Any]:
    """Column values of an ORM row as a JSON-safe dict"""
    mapper = inspect(instance).mapper
    return {attr.key: _json_safe(getattr(instance, attr.key)) for attr in mapper.column_attrs}


class AuditRecorder:
    """
    Appends audit entries through its own session, after the business
    transaction has committed.

    A failed write is logged and counted, never raised: the operation being
    audited has already happened and must not be reported as failed.
    """

    def __init__(self, session_factory: SessionFactory = SessionLocal):
        self.session_factory = session_factory

    def record(
        self,
        action: AuditAction,
        actor_id: str,
        target_id: Optional[Any] = None,
        group_id: Optional[uuid.UUID] = None,
        loan_id: Optional[uuid.UUID] = None,
        contribution_id: Optional[uuid.UUID] = None,
        membership_id: Optional[uuid.UUID] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        request_meta: Optional[RequestMeta] = None,
    ) -> None:
        try:
            with session_scope(self.session_factory) as db:
                AuditLogRepository(db).create_entry(
                    action=action,
                    actor_id=actor_id,
                    target_id=str(target_id) if target_id is not None else None,
                    group_id=group_id,
                    loan_id=loan_id,
                    contribution_id=contribution_id,
                    membership_id=membership_id,
                    old_value=old_value,
                    new_value=new_value,
                    request_meta=request_meta,
                )
        except Exception:
            audit_failure_counter.inc()
            logging.exception(
                "Failed to create audit log",
                extra={"action": action.value, "actor_id": actor_id, "target_id": str(target_id)},
            )
