# fanreply/services/analytics.py
import logging
from typing import Any, Dict, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fanreply.db.models import AIResponseLog

logger = logging.getLogger("fanreply.analytics")


async def log_ai_response(
    session: AsyncSession,
    *,
    creator_id: Optional[int],
    input_text: str,
    output_text: str,
    latency_ms: Optional[int],
    persona_id: Optional[str] = None,
    message_id: Optional[int] = None,
    source: str = "manual",
    was_used: bool = False,
) -> AIResponseLog:
    row = AIResponseLog(
        creator_id=creator_id,
        message_id=message_id,
        persona_id=persona_id,
        source=source,
        input_text=input_text,
        output_text=output_text,
        latency_ms=latency_ms,
        was_used=was_used,
    )
    session.add(row)
    await session.flush()
    return row


async def record_feedback(
    session: AsyncSession,
    response_id: int,
    was_used: bool = True,
    was_edited: bool = False,
    feedback: Optional[str] = None,
) -> Optional[AIResponseLog]:
    row = await session.get(AIResponseLog, response_id)
    if row is None:
        return None
    row.was_used = was_used
    row.was_edited = was_edited
    if feedback is not None:
        row.feedback = feedback
    await session.flush()
    return row


async def list_responses(session: AsyncSession, creator_id: int, limit: int = 100) -> Sequence[AIResponseLog]:
    q = await session.execute(
        select(AIResponseLog)
        .where(AIResponseLog.creator_id == creator_id)
        .order_by(AIResponseLog.created_at.desc(), AIResponseLog.id.desc())
        .limit(limit)
    )
    return q.scalars().all()


async def get_analytics(session: AsyncSession, creator_id: int) -> Dict[str, Any]:
    q = await session.execute(
        select(
            sa.func.count(AIResponseLog.id),
            sa.func.count(AIResponseLog.id).filter(AIResponseLog.was_used.is_(True)),
            sa.func.count(AIResponseLog.id).filter(AIResponseLog.was_edited.is_(True)),
            sa.func.avg(AIResponseLog.latency_ms),
        ).where(AIResponseLog.creator_id == creator_id)
    )
    total, used, edited, avg_latency = q.one()
    return {
        "total_generated": total or 0,
        "total_used": used or 0,
        "total_edited": edited or 0,
        "avg_latency_ms": round(float(avg_latency or 0)),
        "edit_rate": round(edited / used * 100) if used else 0,
    }
