"""
Tests for the mission state machine: creation, entries, locking, fusion,
completion and archive.
"""

import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from calilights.database.models import Chain, Chapter, utcnow
from calilights.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationFailedError
from calilights.models import JobStatus, LockReason, MissionState
from calilights.services.chain_service import chain_service
from calilights.services.database_service import database_service
from calilights.services.generation_client import GenerationStatus
from calilights.services.job_tracker import job_tracker
from calilights.services.mission_lifecycle import mission_lifecycle
from calilights.services.mission_store import mission_store


def _photo(n: int = 1) -> dict:
    return {"media_url": f"https://cdn.calilights.test/shot-{n}.jpg", "media_type": "photo"}


async def _chain_pointer(chain_id):
    async with database_service.get_session() as session:
        chain = await session.get(Chain, chain_id)
        return chain.active_mission_id


async def _chapter_for(mission_id):
    from sqlalchemy import select

    async with database_service.get_session() as session:
        result = await session.execute(select(Chapter).where(Chapter.mission_id == mission_id))
        return result.scalar_one_or_none()


class TestCreateMission:
    """Mission creation and the chain's active-mission pointer."""

    @pytest.mark.asyncio
    async def test_create_claims_pointer(self, factory):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Golden hour", 3600, created_by=chain.admin.id)

        assert mission.state == MissionState.LOBBY
        assert mission.submissions_required == 3
        assert mission.ends_at - mission.starts_at == timedelta(seconds=3600)
        assert await _chain_pointer(chain.id) == mission.id

    @pytest.mark.asyncio
    async def test_second_mission_conflicts(self, factory):
        chain = await factory.chain()
        first = await mission_lifecycle.create_mission(chain.id, "Golden hour", 3600, created_by=chain.admin.id)

        with pytest.raises(ConflictError):
            await mission_lifecycle.create_mission(chain.id, "Blue hour", 3600, created_by=chain.admin.id)

        assert await _chain_pointer(chain.id) == first.id

    @pytest.mark.asyncio
    async def test_member_cannot_create(self, factory):
        chain = await factory.chain()
        with pytest.raises(AuthorizationError):
            await mission_lifecycle.create_mission(chain.id, "Golden hour", 3600, created_by=chain.members[0].id)
        assert await _chain_pointer(chain.id) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("prompt,window", [("   ", 3600), ("Neon", 60), ("Neon", 3 * 3600)])
    async def test_invalid_input_rejected(self, factory, prompt, window):
        chain = await factory.chain()
        with pytest.raises(ValidationFailedError):
            await mission_lifecycle.create_mission(chain.id, prompt, window, created_by=chain.admin.id)
        assert await _chain_pointer(chain.id) is None

    @pytest.mark.asyncio
    async def test_unknown_chain(self, db):
        with pytest.raises(NotFoundError):
            await mission_lifecycle.create_mission(
                "00000000-0000-0000-0000-000000000001", "Neon", 3600
            )


async def _connect(chain_a, chain_b):
    async with database_service.get_session() as session:
        await chain_service.ensure_connection(session, chain_a.id, chain_b.id, reason="test")


class TestPropagateMission:
    """Starting one prompt across the origin chain's connections."""

    @pytest.mark.asyncio
    async def test_starts_missions_in_connected_chains(self, factory):
        origin = await factory.chain(name="Origin")
        surfers = await factory.chain(name="Surfers")
        skaters = await factory.chain(name="Skaters")
        stranger = await factory.chain(name="Stranger")
        await _connect(origin, surfers)
        await _connect(origin, skaters)

        result = await mission_lifecycle.propagate_mission(origin.id, origin.admin.id, "Golden hour", 3600)

        assert {m.chain_id for m in result.missions} == {surfers.id, skaters.id}
        assert result.skipped == []
        for mission in result.missions:
            assert mission.created_by == origin.admin.id
            assert mission.prompt == "Golden hour"
            assert await _chain_pointer(mission.chain_id) == mission.id
        assert await _chain_pointer(origin.id) is None
        assert await _chain_pointer(stranger.id) is None

    @pytest.mark.asyncio
    async def test_busy_chain_is_skipped(self, factory):
        origin = await factory.chain(name="Origin")
        busy = await factory.chain(name="Busy")
        idle = await factory.chain(name="Idle")
        await _connect(origin, busy)
        await _connect(origin, idle)
        running = await mission_lifecycle.create_mission(busy.id, "Already on", 3600, created_by=busy.admin.id)

        result = await mission_lifecycle.propagate_mission(origin.id, origin.admin.id, "Golden hour", 3600)

        assert [m.chain_id for m in result.missions] == [idle.id]
        assert len(result.skipped) == 1
        assert result.skipped[0]["chain_id"] == str(busy.id)
        assert result.skipped[0]["kind"] == "conflict"
        assert await _chain_pointer(busy.id) == running.id

    @pytest.mark.asyncio
    async def test_requires_origin_admin(self, factory):
        origin = await factory.chain(name="Origin")
        other = await factory.chain(name="Other")
        await _connect(origin, other)

        with pytest.raises(AuthorizationError):
            await mission_lifecycle.propagate_mission(origin.id, origin.members[0].id, "Golden hour", 3600)
        assert await _chain_pointer(other.id) is None

    @pytest.mark.asyncio
    async def test_invalid_window_rejected_before_any_chain(self, factory):
        origin = await factory.chain(name="Origin")
        other = await factory.chain(name="Other")
        await _connect(origin, other)

        with pytest.raises(ValidationFailedError):
            await mission_lifecycle.propagate_mission(origin.id, origin.admin.id, "Golden hour", 60)
        assert await _chain_pointer(other.id) is None


class TestEntries:
    """Entry submission, the LOBBY -> CAPTURE move and the threshold lock."""

    @pytest.mark.asyncio
    async def test_first_entry_starts_capture(self, factory, generator):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)

        result = await mission_lifecycle.submit_entry(mission.id, chain.members[0].id, _photo())

        assert result.mission.state == MissionState.CAPTURE
        assert result.mission.submissions_received == 1
        assert result.locked is False
        generator.submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resubmission_replaces_entry(self, factory, generator):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)
        user_id = chain.members[0].id

        first = await mission_lifecycle.submit_entry(mission.id, user_id, _photo(1))
        second = await mission_lifecycle.submit_entry(mission.id, user_id, _photo(2))

        assert second.entry.id == first.entry.id
        assert second.entry.media_url.endswith("shot-2.jpg")
        assert second.mission.submissions_received == 1

    @pytest.mark.asyncio
    async def test_threshold_locks_once(self, factory, generator):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)

        results = []
        for n, user in enumerate(chain.everyone, start=1):
            results.append(await mission_lifecycle.submit_entry(mission.id, user.id, _photo(n)))

        assert [r.locked for r in results] == [False, False, True]
        final = results[-1]
        assert final.mission.state == MissionState.FUSING
        assert final.mission.lock_reason == LockReason.THRESHOLD.value
        assert final.lock.fusion_error is None
        assert final.lock.job.status == JobStatus.PENDING.value
        generator.submit.assert_awaited_once()

        chapter = await _chapter_for(mission.id)
        assert chapter is not None
        assert final.lock.job.target_id == chapter.id
        request = generator.submit.await_args.args[0]
        assert len(request.input_media_urls) == 3

    @pytest.mark.asyncio
    async def test_entry_after_lock_conflicts(self, factory, generator):
        chain = await factory.chain(members=3)
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)
        for n, user in enumerate(chain.everyone[:3], start=1):
            await mission_lifecycle.submit_entry(mission.id, user.id, _photo(n))

        with pytest.raises(ConflictError):
            await mission_lifecycle.submit_entry(mission.id, chain.members[2].id, _photo(9))
        generator.submit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_outsider_cannot_submit(self, factory):
        chain = await factory.chain()
        outsider = await factory.user()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)

        with pytest.raises(AuthorizationError):
            await mission_lifecycle.submit_entry(mission.id, outsider.id, _photo())

    @pytest.mark.asyncio
    async def test_expired_window_rejects_and_locks(self, factory, generator):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(
            chain.id, "Neon", 600, created_by=chain.admin.id, as_of=utcnow() - timedelta(hours=1)
        )

        with pytest.raises(ConflictError):
            await mission_lifecycle.submit_entry(mission.id, chain.members[0].id, _photo())

        current = await mission_lifecycle.get_mission(mission.id, chain.admin.id)
        assert current.state == MissionState.FUSING
        assert current.lock_reason == LockReason.TIMER.value


class TestLock:
    """Manual and timer locks."""

    @pytest.mark.asyncio
    async def test_manual_lock_twice_conflicts(self, factory, generator):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)
        await mission_lifecycle.submit_entry(mission.id, chain.members[0].id, _photo())

        result = await mission_lifecycle.lock_mission(mission.id, actor_id=chain.admin.id)
        assert result.mission.state == MissionState.FUSING
        assert result.mission.lock_reason == LockReason.MANUAL.value

        with pytest.raises(ConflictError):
            await mission_lifecycle.lock_mission(mission.id, actor_id=chain.admin.id)
        generator.submit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_member_cannot_lock(self, factory, generator):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)

        with pytest.raises(AuthorizationError):
            await mission_lifecycle.lock_mission(mission.id, actor_id=chain.members[0].id)

    @pytest.mark.asyncio
    async def test_threshold_lock_requires_count(self, factory, generator):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)

        with pytest.raises(ConflictError):
            await mission_lifecycle.lock_mission(mission.id, LockReason.THRESHOLD)

    @pytest.mark.asyncio
    async def test_timer_lock_on_read(self, factory, generator):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(
            chain.id, "Neon", 600, created_by=chain.admin.id, as_of=utcnow() - timedelta(minutes=30)
        )
        await factory.analyzed_entry(mission.id, chain.members[0].id, hue=210.0, scene_tags=["city"])

        current = await mission_lifecycle.get_mission(mission.id, chain.members[1].id)

        assert current.state == MissionState.FUSING
        assert current.lock_reason == LockReason.TIMER.value
        generator.submit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timer_lock_without_entries_reports_fusion_error(self, factory, generator):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(
            chain.id, "Neon", 600, created_by=chain.admin.id, as_of=utcnow() - timedelta(minutes=30)
        )

        result = await mission_lifecycle.lock_mission(mission.id, LockReason.TIMER)

        assert result.mission.state == MissionState.FUSING
        assert result.job is None
        assert result.fusion_error.startswith("conflict")
        generator.submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_open_window_is_not_timer_locked(self, factory, generator):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)

        current = await mission_lifecycle.get_mission(mission.id, chain.admin.id)
        assert current.state == MissionState.LOBBY
        with pytest.raises(ConflictError):
            await mission_lifecycle.lock_mission(mission.id, LockReason.TIMER)

    @pytest.mark.asyncio
    async def test_expired_sweep(self, factory, generator):
        stale = await factory.chain(name="Stale")
        fresh = await factory.chain(name="Fresh")
        now = utcnow()
        expired = await mission_lifecycle.create_mission(
            stale.id, "Neon", 600, created_by=stale.admin.id, as_of=now - timedelta(hours=2)
        )
        await mission_lifecycle.create_mission(fresh.id, "Neon", 3600, created_by=fresh.admin.id, as_of=now)

        result = await mission_lifecycle.lock_expired_missions(as_of=now)
        assert result["checked"] == 1
        assert result["locked"] == 1
        assert result["errors"] == 0

        again = await mission_lifecycle.lock_expired_missions(as_of=now)
        assert again["checked"] == 0

        current = await mission_lifecycle.evaluate_timer(expired.id, as_of=now)
        assert current.state == MissionState.FUSING


class TestStartAndJoin:
    """Explicit capture start and join presence."""

    @pytest.mark.asyncio
    async def test_start_capture_restarts_window(self, factory):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(
            chain.id, "Neon", 900, created_by=chain.admin.id, as_of=utcnow() - timedelta(minutes=5)
        )

        started = await mission_lifecycle.start_capture(mission.id, chain.admin.id)

        assert started.state == MissionState.CAPTURE
        assert started.starts_at > mission.starts_at
        assert started.ends_at - started.starts_at == timedelta(seconds=900)

        with pytest.raises(ConflictError):
            await mission_lifecycle.start_capture(mission.id, chain.admin.id)

    @pytest.mark.asyncio
    async def test_join_reports_presence(self, factory, generator):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)
        await mission_lifecycle.submit_entry(mission.id, chain.members[0].id, _photo())

        joined = await mission_lifecycle.join_mission(mission.id, chain.members[1].id)

        assert joined.mission.id == mission.id
        submitted = {p.user_id: p.has_submitted for p in joined.presence}
        assert submitted == {
            str(chain.admin.id): False,
            str(chain.members[0].id): True,
            str(chain.members[1].id): False,
        }
        roles = {p.user_id: p.role for p in joined.presence}
        assert roles[str(chain.admin.id)] == "admin"

    @pytest.mark.asyncio
    async def test_outsider_cannot_join(self, factory):
        chain = await factory.chain()
        outsider = await factory.user()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)

        with pytest.raises(AuthorizationError):
            await mission_lifecycle.join_mission(mission.id, outsider.id)


class TestFusionLifecycle:
    """Completion, retry and archive."""

    @pytest.mark.asyncio
    async def test_full_flow_to_archive(self, factory, generator, notifier):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)
        for n, user in enumerate(chain.everyone, start=1):
            result = await mission_lifecycle.submit_entry(mission.id, user.id, _photo(n))
        job = result.lock.job

        generator.poll.return_value = GenerationStatus(
            done=True, video_url="https://cdn.calilights.test/chapter.mp4", duration_seconds=8.0
        )
        resolved = await job_tracker.poll_job(job.operation_id)
        assert resolved.status == JobStatus.SUCCEEDED.value

        recap = await mission_lifecycle.get_mission(mission.id, chain.admin.id)
        assert recap.state == MissionState.RECAP
        assert recap.starts_at <= recap.locked_at <= recap.recap_ready_at

        chapter = await _chapter_for(mission.id)
        assert chapter.video_url == "https://cdn.calilights.test/chapter.mp4"
        assert chapter.duration_seconds == 8.0

        archived = await mission_lifecycle.archive_mission(mission.id, chain.admin.id)
        assert archived.state == MissionState.ARCHIVED
        assert archived.archived_at >= recap.recap_ready_at
        assert await _chain_pointer(chain.id) is None

        with pytest.raises(ConflictError):
            await mission_lifecycle.archive_mission(mission.id, chain.admin.id)

        follow_up = await mission_lifecycle.create_mission(chain.id, "Again", 3600, created_by=chain.admin.id)
        assert await _chain_pointer(chain.id) == follow_up.id

    @pytest.mark.asyncio
    async def test_archive_from_lobby(self, factory):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)

        with pytest.raises(AuthorizationError):
            await mission_lifecycle.archive_mission(mission.id, chain.members[0].id)

        archived = await mission_lifecycle.archive_mission(mission.id, chain.admin.id)
        assert archived.state == MissionState.ARCHIVED
        assert await _chain_pointer(chain.id) is None

    @pytest.mark.asyncio
    async def test_retry_fusion_while_pending_conflicts(self, factory, generator):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)
        await mission_lifecycle.submit_entry(mission.id, chain.members[0].id, _photo())
        await mission_lifecycle.lock_mission(mission.id, actor_id=chain.admin.id)

        with pytest.raises(ConflictError):
            await mission_lifecycle.retry_fusion(mission.id, chain.admin.id)

    @pytest.mark.asyncio
    async def test_retry_fusion_after_failure(self, factory, generator):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)
        await mission_lifecycle.submit_entry(mission.id, chain.members[0].id, _photo())
        first = (await mission_lifecycle.lock_mission(mission.id, actor_id=chain.admin.id)).job

        generator.poll.return_value = GenerationStatus(done=True, error="quota exceeded")
        failed = await job_tracker.poll_job(first.operation_id)
        assert failed.status == JobStatus.FAILED.value

        retried = await mission_lifecycle.retry_fusion(mission.id, chain.admin.id)

        assert retried.job.operation_id != first.operation_id
        assert retried.job.status == JobStatus.PENDING.value
        assert retried.job.target_id == first.target_id
        assert generator.submit.await_count == 2

    @pytest.mark.asyncio
    async def test_retry_fusion_requires_fusing(self, factory):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)

        with pytest.raises(ConflictError):
            await mission_lifecycle.retry_fusion(mission.id, chain.admin.id)

    @pytest.mark.asyncio
    async def test_retry_fusion_reapplies_succeeded_job(self, factory, generator, notifier):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)
        await mission_lifecycle.submit_entry(mission.id, chain.members[0].id, _photo())
        job = (await mission_lifecycle.lock_mission(mission.id, actor_id=chain.admin.id)).job

        # Resolution committed but completion never ran
        async with database_service.get_session() as session:
            await job_tracker.resolve_job(
                session, job.operation_id,
                GenerationStatus(done=True, video_url="https://cdn.calilights.test/late.mp4"),
            )

        result = await mission_lifecycle.retry_fusion(mission.id, chain.admin.id)

        assert result.mission.state == MissionState.RECAP
        assert (await _chapter_for(mission.id)).video_url == "https://cdn.calilights.test/late.mp4"
        generator.submit.assert_awaited_once()


class TestConcurrentTriggers:
    """Overlapping triggers on one mission resolve to a single winner."""

    @pytest.mark.asyncio
    async def test_concurrent_manual_locks(self, factory, generator):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)
        await mission_lifecycle.submit_entry(mission.id, chain.members[0].id, _photo())

        outcomes = await asyncio.gather(
            mission_lifecycle.lock_mission(mission.id, actor_id=chain.admin.id),
            mission_lifecycle.lock_mission(mission.id, actor_id=chain.admin.id),
            return_exceptions=True,
        )

        winners = [o for o in outcomes if not isinstance(o, Exception)]
        losers = [o for o in outcomes if isinstance(o, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], ConflictError)
        assert winners[0].mission.state == MissionState.FUSING
        generator.submit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrent_final_entries_lock_once(self, factory, generator):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)
        await mission_lifecycle.submit_entry(mission.id, chain.admin.id, _photo(1))

        results = await asyncio.gather(
            mission_lifecycle.submit_entry(mission.id, chain.members[0].id, _photo(2)),
            mission_lifecycle.submit_entry(mission.id, chain.members[1].id, _photo(3)),
        )

        assert sorted(r.locked for r in results) == [False, True]
        current = await mission_lifecycle.get_mission(mission.id, chain.admin.id)
        assert current.state == MissionState.FUSING
        assert current.submissions_received == 3
        assert current.lock_reason == LockReason.THRESHOLD.value
        generator.submit.assert_awaited_once()
        assert len(generator.submit.await_args.args[0].input_media_urls) == 3

    @pytest.mark.asyncio
    async def test_entry_takes_mission_row_lock_before_writing(self, factory, generator):
        chain = await factory.chain()
        mission = await mission_lifecycle.create_mission(chain.id, "Neon", 3600, created_by=chain.admin.id)
        order = []
        real_lock = mission_store.lock_open_mission
        real_recount = mission_store.recount_submissions

        async def _lock(session, mission_id):
            order.append("lock")
            return await real_lock(session, mission_id)

        async def _recount(session, mission_id):
            order.append("recount")
            return await real_recount(session, mission_id)

        with patch.object(mission_store, "lock_open_mission", side_effect=_lock), \
                patch.object(mission_store, "recount_submissions", side_effect=_recount):
            await mission_lifecycle.submit_entry(mission.id, chain.members[0].id, _photo())

        assert order == ["lock", "recount"]
