"""
Celery tasks wrapping the mission engine's periodic sweeps and entry analysis.
"""
import asyncio
import logging
from typing import Any, Dict

import httpx
from celery import shared_task

from .exceptions import TransientExternalError
from .services.entry_service import entry_service
from .services.database_service import database_service
from .services.job_tracker import job_tracker
from .services.mission_lifecycle import mission_lifecycle
from .services.schedule_service import schedule_service
from .services.vision_service import vision_service

logger = logging.getLogger("calilights.tasks")


def _serializable(result: Dict[str, Any]) -> Dict[str, Any]:
    timestamp = result.get("timestamp")
    if timestamp is not None:
        result = {**result, "timestamp": timestamp.isoformat()}
    return result


@shared_task(name="calilights.tasks.check_mission_schedules")
def check_mission_schedules() -> Dict[str, Any]:
    """Start due missions for chains with an enabled auto-start schedule."""
    result = asyncio.run(schedule_service.check_schedules())
    if result["started"] or result["errors"]:
        logger.info(f"Schedule check: started={result['started']} errors={result['errors']}")
    return _serializable(result)


@shared_task(name="calilights.tasks.poll_generation_jobs")
def poll_generation_jobs() -> Dict[str, Any]:
    """Advance PENDING generation jobs and apply finished ones."""
    result = asyncio.run(job_tracker.poll_pending_jobs())
    return _serializable(result)


@shared_task(name="calilights.tasks.lock_expired_missions")
def lock_expired_missions() -> Dict[str, Any]:
    """Lock open missions whose capture window has elapsed."""
    result = asyncio.run(mission_lifecycle.lock_expired_missions())
    if result["locked"] or result["errors"]:
        logger.info(f"Expired-window sweep: locked={result['locked']} errors={result['errors']}")
    return _serializable(result)


async def _mark_failed(entry_id: str) -> None:
    async with database_service.get_session() as session:
        await entry_service.mark_analysis_failed(session, entry_id)


@shared_task(
    bind=True,
    name="calilights.tasks.analyze_entry_metadata",
    autoretry_for=(TransientExternalError, httpx.HTTPError),
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
)
def analyze_entry_metadata(self, entry_id: str) -> Dict[str, Any]:
    """
    Fill in an entry's hue, palette, tags and alt text.

    Provider outages are retried by Celery with backoff; once retries run out
    the entry is marked failed so it stops showing as pending.
    """
    try:
        status = asyncio.run(vision_service.analyze_entry(entry_id))
    except (TransientExternalError, httpx.HTTPError) as e:
        if self.request.retries >= self.max_retries:
            logger.error(f"Analysis of entry {entry_id} gave up after {self.request.retries} retries: {e}")
            asyncio.run(_mark_failed(entry_id))
            return {"entry_id": entry_id, "status": "failed"}
        raise
    return {"entry_id": entry_id, "status": status}
