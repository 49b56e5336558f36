"""Job queue repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import String, case, cast, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from news_ingest.db.models import Job, JobState

_CLAIMABLE = (JobState.WAITING, JobState.DELAYED)


class JobRepository:
    async def create(self, session: AsyncSession, **fields: Any) -> Job:
        job = Job(**fields)
        session.add(job)
        await session.flush()
        return job

    async def get(self, session: AsyncSession, job_id: int, *, queue: str | None = None) -> Job | None:
        query = select(Job).where(Job.id == job_id)
        if queue is not None:
            query = query.where(Job.queue == queue)
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def get_for_update(self, session: AsyncSession, job_id: int, *, queue: str) -> Job | None:
        result = await session.execute(
            select(Job).where(Job.id == job_id, Job.queue == queue).with_for_update()
        )
        return result.scalar_one_or_none()

    async def claim_next_for_update(
        self, session: AsyncSession, *, queue: str, now: datetime
    ) -> Job | None:
        result = await session.execute(
            select(Job)
            .where(
                Job.queue == queue,
                Job.state.in_(_CLAIMABLE),
                Job.available_at <= now,
            )
            .order_by(Job.available_at.asc(), Job.id.asc())
            .with_for_update(skip_locked=True)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_stalled_for_update(
        self,
        session: AsyncSession,
        *,
        queue: str,
        locked_before: datetime,
        limit: int = 50,
    ) -> list[Job]:
        result = await session.execute(
            select(Job)
            .where(
                Job.queue == queue,
                Job.state == JobState.ACTIVE,
                Job.locked_at < locked_before,
            )
            .order_by(Job.locked_at.asc())
            .with_for_update(skip_locked=True)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_by_state(self, session: AsyncSession, *, queue: str, now: datetime) -> dict[str, int]:
        effective_state = case(
            (
                (Job.state == JobState.DELAYED) & (Job.available_at <= now),
                JobState.WAITING.value,
            ),
            else_=cast(Job.state, String),
        )
        result = await session.execute(
            select(effective_state, func.count())
            .where(Job.queue == queue)
            .group_by(effective_state)
        )
        counts = {state.value: 0 for state in JobState}
        for state, total in result.all():
            counts[JobState(state).value] += int(total)
        return counts

    async def trim_finished(
        self, session: AsyncSession, *, queue: str, state: JobState, keep: int
    ) -> int:
        """Delete all but the newest ``keep`` jobs in a terminal state."""
        newest = (
            select(Job.id)
            .where(Job.queue == queue, Job.state == state)
            .order_by(Job.finished_at.desc().nulls_last(), Job.id.desc())
            .limit(keep)
        )
        result = await session.execute(
            delete(Job).where(
                Job.queue == queue,
                Job.state == state,
                Job.id.not_in(newest.scalar_subquery()),
            )
        )
        return int(result.rowcount or 0)

    async def delete_older_than(
        self,
        session: AsyncSession,
        *,
        queue: str,
        state: JobState,
        before: datetime,
        limit: int,
    ) -> list[int]:
        reference = func.coalesce(Job.finished_at, Job.created_at)
        ids_result = await session.execute(
            select(Job.id)
            .where(Job.queue == queue, Job.state == state, reference < before)
            .order_by(Job.id.asc())
            .limit(limit)
        )
        ids = list(ids_result.scalars().all())
        if ids:
            await session.execute(delete(Job).where(Job.id.in_(ids)))
        return ids

    async def list_recent(
        self,
        session: AsyncSession,
        *,
        queue: str,
        limit: int,
        state: JobState | None = None,
    ) -> list[Job]:
        query = select(Job).where(Job.queue == queue)
        if state is not None:
            query = query.where(Job.state == state)
        result = await session.execute(
            query.order_by(Job.created_at.desc(), Job.id.desc()).limit(limit)
        )
        return list(result.scalars().all())
