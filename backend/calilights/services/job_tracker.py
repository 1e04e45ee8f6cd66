# backend/calilights/services/job_tracker.py
"""
Generation job tracking: submit, record, poll and resolve.

A job moves PENDING -> SUCCEEDED | FAILED exactly once. Resolution is a
conditional UPDATE on status = PENDING, committed in its own session before any
side effect runs, so:

- a crash mid-sweep leaves the job PENDING and it is simply polled again;
- two overlapping sweeps polling the same job resolve it once, and only the
  winner applies the mission transition;
- polling a job that is already resolved does nothing.

The poll sweep isolates per-job failures: each job is polled and resolved in
its own try block, errors are logged and counted, and the sweep continues.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database.models import GenerationJob, utcnow
from ..exceptions import NotFoundError
from ..models import JobStatus
from ..utils.ids import parse_uuid
from .database_service import database_service
from .generation_client import GenerationRequest, GenerationStatus, generation_client

logger = logging.getLogger("calilights.jobs")

IdLike = Union[str, uuid.UUID]


class JobTracker:
    """Persistence and polling for external generation operations."""

    # =========================================================================
    # SUBMIT
    # =========================================================================

    async def submit(self, request: GenerationRequest) -> GenerationJob:
        """
        Submit a generation and record the resulting job as PENDING.

        The external call happens outside any database session; the job row
        is written afterwards in its own short transaction.

        Raises:
            ValidationFailedError / PermanentExternalError: Not retried
            TransientExternalError: Service unavailable after retries
        """
        operation_id = await generation_client.submit(request)

        async with database_service.get_session() as session:
            job = GenerationJob(
                operation_id=operation_id,
                target_type=request.target_type,
                target_id=parse_uuid(request.target_id, "Chapter"),
                mission_id=parse_uuid(request.mission_id, "Mission"),
                prompt=request.prompt,
                input_media_urls=list(request.input_media_urls),
                aspect_ratio=request.aspect_ratio,
                length_seconds=request.length_seconds,
                model=settings.veo_model,
                status=JobStatus.PENDING.value,
            )
            session.add(job)
            await session.flush()

        logger.info(f"Recorded generation job {operation_id} for mission {request.mission_id}")
        return job

    # =========================================================================
    # READS
    # =========================================================================

    async def get_job(self, session: AsyncSession, operation_id: str) -> Optional[GenerationJob]:
        result = await session.execute(
            select(GenerationJob)
            .where(GenerationJob.operation_id == operation_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def require_job(self, session: AsyncSession, operation_id: str) -> GenerationJob:
        job = await self.get_job(session, operation_id)
        if job is None:
            raise NotFoundError(f"Generation job {operation_id} not found")
        return job

    async def list_jobs_for_mission(self, session: AsyncSession, mission_id: IdLike) -> List[GenerationJob]:
        result = await session.execute(
            select(GenerationJob)
            .where(GenerationJob.mission_id == parse_uuid(mission_id, "Mission"))
            .order_by(GenerationJob.created_at.desc())
        )
        return list(result.scalars().all())

    async def latest_job_for_mission(self, session: AsyncSession, mission_id: IdLike) -> Optional[GenerationJob]:
        jobs = await self.list_jobs_for_mission(session, mission_id)
        return jobs[0] if jobs else None

    async def list_pending_jobs(
        self,
        session: AsyncSession,
        as_of: Optional[datetime] = None,
        max_age_minutes: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[GenerationJob]:
        """
        PENDING jobs young enough to keep polling, oldest first.

        Jobs older than the age bound are left in place but excluded.
        """
        now = as_of or utcnow()
        max_age = max_age_minutes if max_age_minutes is not None else settings.job_poll_max_age_minutes
        cutoff = now - timedelta(minutes=max_age)
        result = await session.execute(
            select(GenerationJob)
            .where(
                GenerationJob.status == JobStatus.PENDING.value,
                GenerationJob.created_at > cutoff,
            )
            .order_by(GenerationJob.created_at.asc())
            .limit(limit or settings.job_poll_batch_size)
        )
        return list(result.scalars().all())

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    async def resolve_job(
        self, session: AsyncSession, operation_id: str, status: GenerationStatus
    ) -> Optional[GenerationJob]:
        """
        Record a finished poll result, once.

        Returns:
            The resolved job, or None if it was no longer PENDING
        """
        if not status.done:
            return None

        if status.succeeded:
            values = {
                "status": JobStatus.SUCCEEDED.value,
                "video_url": status.video_url,
                "duration_seconds": status.duration_seconds,
                "watermark": status.watermark,
            }
        else:
            values = {
                "status": JobStatus.FAILED.value,
                "error_message": status.error or "generation failed",
            }

        result = await session.execute(
            update(GenerationJob)
            .where(
                GenerationJob.operation_id == operation_id,
                GenerationJob.status == JobStatus.PENDING.value,
            )
            .values(completed_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.debug(f"Job {operation_id} already resolved, skipping")
            return None
        return await self.get_job(session, operation_id)

    async def poll(self, operation_id: str) -> GenerationStatus:
        """Query the generator for one operation (retried by the client)."""
        return await generation_client.poll(operation_id)

    async def poll_job(self, operation_id: str) -> Optional[GenerationJob]:
        """
        Poll one job and apply its resolution.

        A job that is not PENDING in storage is left alone: the generator is
        not queried and no side effect runs.

        Returns:
            The job as resolved by this call, or None if nothing changed
        """
        async with database_service.get_session() as session:
            job = await self.require_job(session, operation_id)
            if job.status != JobStatus.PENDING.value:
                return None

        status = await self.poll(operation_id)
        if not status.done:
            return None

        # Commit the resolution before any side effect
        async with database_service.get_session() as session:
            resolved = await self.resolve_job(session, operation_id, status)
        if resolved is None:
            return None

        if resolved.status == JobStatus.SUCCEEDED.value:
            logger.info(f"Job {operation_id} succeeded: {resolved.video_url}")
            from .mission_lifecycle import mission_lifecycle

            await mission_lifecycle.complete_fusion(resolved)
        else:
            logger.warning(
                f"Job {operation_id} failed: {resolved.error_message}; "
                f"mission {resolved.mission_id} stays in FUSING"
            )
        return resolved

    async def poll_pending_jobs(self, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Periodic sweep over PENDING jobs.

        Returns:
            {"checked": int, "updated": int, "failed": int, "errors": int, "timestamp": datetime}
        """
        now = as_of or utcnow()
        async with database_service.get_session() as session:
            handles = [job.operation_id for job in await self.list_pending_jobs(session, as_of=now)]

        updated = failed = errors = 0
        for operation_id in handles:
            try:
                job = await self.poll_job(operation_id)
            except Exception as e:
                errors += 1
                logger.error(f"Failed to check generation job {operation_id}: {e}")
                continue

            if job is None:
                continue
            if job.status == JobStatus.SUCCEEDED.value:
                updated += 1
            else:
                failed += 1

        if handles:
            logger.info(
                f"Poll sweep: checked={len(handles)} updated={updated} failed={failed} errors={errors}"
            )
        return {
            "checked": len(handles),
            "updated": updated,
            "failed": failed,
            "errors": errors,
            "timestamp": now,
        }


# Global singleton instance
job_tracker = JobTracker()
