"""Dependency injection for FastAPI endpoints"""

from functools import lru_cache

from fastapi import Header, HTTPException, Request

from chama_gateway.domain.models import RequestMeta
from chama_gateway.infrastructure.clients.mpesa import MpesaClient
from chama_gateway.infrastructure.clients.notifications import NotificationClient
from chama_gateway.services.audit import AuditRecorder
from chama_gateway.services.reconciliation import CallbackReconciler


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_actor_id(x_actor_id: str = Header(None, alias="X-Actor-Id")) -> str:
    """Authenticated user id, set by the gateway in front of this service"""
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id header")
    return x_actor_id.strip()


def get_request_meta(request: Request) -> RequestMeta:
    """Caller IP and user agent for audit entries"""
    return RequestMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


@lru_cache
def get_mpesa_client() -> MpesaClient:
    """Process-wide M-Pesa client so access tokens are cached across requests"""
    return MpesaClient()


def get_audit_recorder() -> AuditRecorder:
    return AuditRecorder()


def get_notification_client() -> NotificationClient:
    """Provide notification webhook client instance"""
    return NotificationClient()


def get_reconciler() -> CallbackReconciler:
    """Webhook reconciler; opens its own sessions since it runs after the response"""
    return CallbackReconciler(notifications=NotificationClient())
