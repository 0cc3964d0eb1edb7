from __future__ import annotations

from typing import Any, Dict, Optional

from tenantauth.logging import get_logger
from tenantauth.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditRecorder:
    """Best-effort audit trail.

    Every event is emitted as a structured log line; stores that implement
    ``record_audit_event`` also persist it. Failures are logged and never
    propagate into the operation being audited.
    """

    def __init__(self, store: Any = None) -> None:
        self.store = store

    def record_event(
        self,
        tenant_id: Optional[str],
        user_id: Optional[str],
        action: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        event = AuditEvent(
            tenant_id=tenant_id,
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata,
        )
        logger.info(
            "audit_event",
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            tenant_id=tenant_id,
            user_id=user_id,
        )
        persist = getattr(self.store, "record_audit_event", None)
        if persist is None:
            return event
        try:
            persist(event)
        except Exception as exc:
            logger.warning("audit_persist_failed", action=action, error=str(exc))
            return None
        return event
