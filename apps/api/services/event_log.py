"""Append-only event log writer."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models.log_entry import LogEntry


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
GATEWAY_ACTOR = "payment_gateway"


async def append_log_entry(
    db: AsyncSession,
    *,
    actor_id: str,
    action: str,
    entity_id: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> LogEntry:
    """Stage a log entry in the caller's transaction."""
    entry = LogEntry(
        actor_id=str(actor_id or SYSTEM_ACTOR),
        action=action,
        entity_id=str(entity_id),
        metadata_json=dict(metadata or {}),
    )
    db.add(entry)
    await db.flush()
    logger.info("ledger event action=%s entity=%s actor=%s", action, entity_id, entry.actor_id)
    return entry
