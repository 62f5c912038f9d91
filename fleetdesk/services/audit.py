"""
Audit trail for booking transitions.
Fire-and-forget: writes go through their own session so a failure never
touches the transition that was already committed.
"""
from typing import Any, Dict, Optional
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import AuditLog

logger = logging.getLogger(__name__)


class AuditService:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def log_event(
        self,
        entity: str,
        entity_id: str,
        action: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            async with self.session_factory() as session:
                session.add(AuditLog(entity=entity, entity_id=entity_id, action=action, data=data or {}))
                await session.commit()
        except Exception as e:
            logger.warning(f"Failed to write audit log {entity}/{entity_id} {action}: {e}")
