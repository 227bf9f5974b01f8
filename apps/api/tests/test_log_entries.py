import pytest
from sqlalchemy.future import select

from models.log_entry import AppendOnlyViolation, LogEntry
from services.event_log import append_log_entry


@pytest.mark.asyncio
async def test_log_entries_are_appended_with_metadata(session_maker):
    async with session_maker() as session:
        entry = await append_log_entry(
            session,
            actor_id="admin-3",
            action="entitlement.admin_adjust",
            entity_id="cust-3",
            metadata={"delta": 2},
        )
        await session.commit()

    assert entry.id is not None
    async with session_maker() as session:
        stored = (await session.execute(select(LogEntry).where(LogEntry.id == entry.id))).scalar_one()
    assert stored.actor_id == "admin-3"
    assert stored.metadata_json == {"delta": 2}
    assert stored.timestamp is not None


@pytest.mark.asyncio
async def test_log_entries_cannot_be_updated(session_maker):
    async with session_maker() as session:
        entry = await append_log_entry(session, actor_id="a", action="booking.created", entity_id="b-1")
        await session.commit()

        entry.action = "booking.rewritten"
        with pytest.raises(AppendOnlyViolation):
            await session.flush()
        await session.rollback()


@pytest.mark.asyncio
async def test_log_entries_cannot_be_deleted(session_maker):
    async with session_maker() as session:
        entry = await append_log_entry(session, actor_id="a", action="booking.created", entity_id="b-2")
        await session.commit()

        await session.delete(entry)
        with pytest.raises(AppendOnlyViolation):
            await session.flush()
        await session.rollback()

    async with session_maker() as session:
        remaining = (await session.execute(select(LogEntry).where(LogEntry.entity_id == "b-2"))).scalars().all()
    assert len(remaining) == 1
