from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from session_transcriber.errors import InvalidTransitionError, JobNotFoundError
from session_transcriber.server.job_manager import INTERRUPTED_MESSAGE, JobManager, can_transition
from session_transcriber.server.models import JobOptions, JobStatus

LIFECYCLE = [
    JobStatus.DOWNLOADING,
    JobStatus.PREPROCESSING,
    JobStatus.TRANSCRIBING,
    JobStatus.ANALYZING,
    JobStatus.SAVING,
]


def advance(job_manager, job_id, until):
    for status in LIFECYCLE:
        job_manager.transition(job_id, status)
        if status == until:
            break


def silence(store, job_id, minutes=10, **fields):
    """Backdate a job's last write and heartbeat."""
    old = (datetime.now() - timedelta(minutes=minutes)).isoformat()
    store.save(replace(store.get(job_id), updated_at=old, heartbeat_at=old, **fields))


def test_create_job(job_manager):
    job = job_manager.create_job("user-1", "  https://example.org/v/1  ", "Budget session", JobOptions(association_id="a-9"))

    assert job.status == JobStatus.PENDING
    assert job.progress == 0
    assert job.source_url == "https://example.org/v/1"
    assert job_manager.get_job(job.id).options.association_id == "a-9"


def test_create_job_requires_source(job_manager):
    with pytest.raises(ValueError):
        job_manager.create_job("user-1", "   ")


def test_lifecycle_moves_forward_one_step_at_a_time(job_manager, store):
    job = job_manager.create_job("user-1", "https://example.org/v/1")

    advance(job_manager, job.id, JobStatus.SAVING)
    done = job_manager.complete(job.id, "doc-7", {"document": "# Transcript"})

    assert store.statuses(job.id) == ["pending"] + [s.value for s in LIFECYCLE] + ["completed"]
    assert done.progress == 100
    assert done.result_id == "doc-7"
    assert done.completed_at is not None
    assert job_manager.get_result(job.id) == {"document": "# Transcript"}


@pytest.mark.parametrize(
    "current, target",
    [
        (JobStatus.PENDING, JobStatus.TRANSCRIBING),
        (JobStatus.TRANSCRIBING, JobStatus.DOWNLOADING),
        (JobStatus.PENDING, JobStatus.COMPLETED),
        (JobStatus.COMPLETED, JobStatus.FAILED),
        (JobStatus.FAILED, JobStatus.DOWNLOADING),
    ],
)
def test_invalid_transitions(current, target):
    assert not can_transition(current, target)


def test_skipping_a_stage_is_rejected(job_manager):
    job = job_manager.create_job("user-1", "https://example.org/v/1")

    with pytest.raises(InvalidTransitionError):
        job_manager.transition(job.id, JobStatus.TRANSCRIBING)
    assert job_manager.get_job(job.id).status == JobStatus.PENDING


def test_progress_never_decreases(job_manager, store):
    job = job_manager.create_job("user-1", "https://example.org/v/1")
    advance(job_manager, job.id, JobStatus.TRANSCRIBING)

    job_manager.update_progress(job.id, 50, "Transcribing segment 3 of 5")
    job_manager.update_progress(job.id, 40)
    updated = job_manager.update_progress(job.id, 150)

    assert updated.progress == 99
    assert updated.progress_message == "Transcribing segment 3 of 5"
    values = store.progress_values(job.id)
    assert values == sorted(values)


def test_stage_checkpoint_does_not_lower_progress(job_manager):
    job = job_manager.create_job("user-1", "https://example.org/v/1")
    advance(job_manager, job.id, JobStatus.TRANSCRIBING)
    job_manager.update_progress(job.id, 70)

    analyzing = job_manager.transition(job.id, JobStatus.ANALYZING)

    assert analyzing.progress == 70


def test_fail_keeps_progress(job_manager):
    job = job_manager.create_job("user-1", "https://example.org/v/1")
    advance(job_manager, job.id, JobStatus.PREPROCESSING)

    failed = job_manager.fail(job.id, "Download failed: HTTP Error 404")

    assert failed.status == JobStatus.FAILED
    assert failed.progress == 20
    assert failed.error == "Download failed: HTTP Error 404"
    assert failed.progress_message == "Failed: Download failed: HTTP Error 404"


def test_terminal_jobs_are_immutable(job_manager):
    job = job_manager.create_job("user-1", "https://example.org/v/1")
    job_manager.fail(job.id, "first error")

    assert job_manager.fail(job.id, "second error").error == "first error"
    with pytest.raises(InvalidTransitionError):
        job_manager.update_progress(job.id, 50)
    with pytest.raises(InvalidTransitionError):
        job_manager.update_metadata(job.id, duration=10)
    with pytest.raises(InvalidTransitionError):
        job_manager.complete(job.id, "doc", {})
    assert job_manager.get_result(job.id) is None


def test_transition_to_failed_uses_message(job_manager):
    job = job_manager.create_job("user-1", "https://example.org/v/1")

    failed = job_manager.transition(job.id, JobStatus.FAILED, "Job cancelled by user")

    assert failed.error == "Job cancelled by user"


def test_update_metadata_merges(job_manager):
    job = job_manager.create_job("user-1", "https://example.org/v/1")
    job_manager.update_metadata(job.id, duration=120.0)

    updated = job_manager.update_metadata(job.id, audio_issues=["noise"], segments=3)

    assert updated.metadata == {"duration": 120.0, "segments": 3}
    assert updated.audio_issues == ["noise"]


def test_unknown_job(job_manager):
    assert job_manager.get_job("missing") is None
    with pytest.raises(JobNotFoundError):
        job_manager.transition("missing", JobStatus.DOWNLOADING)


def test_list_jobs_for_owner(job_manager, store):
    first = job_manager.create_job("user-1", "https://example.org/v/1")
    second = job_manager.create_job("user-1", "https://example.org/v/2")
    job_manager.create_job("user-2", "https://example.org/v/3")
    store.save(replace(store.get(first.id), created_at="2024-01-01T10:00:00"))
    store.save(replace(store.get(second.id), created_at="2024-01-02T10:00:00"))

    jobs = job_manager.list_jobs_for_owner("user-1")

    assert [j.id for j in jobs] == [second.id, first.id]
    assert [j.id for j in job_manager.list_jobs_for_owner("user-1", limit=1)] == [second.id]


def test_recover_interrupted_jobs(job_manager, store):
    older = job_manager.create_job("user-1", "https://example.org/v/1")
    newer = job_manager.create_job("user-1", "https://example.org/v/2")
    store.save(replace(store.get(older.id), created_at="2024-01-01T10:00:00"))
    store.save(replace(store.get(newer.id), created_at="2024-01-01T11:00:00"))
    running = job_manager.create_job("user-1", "https://example.org/v/3")
    advance(job_manager, running.id, JobStatus.TRANSCRIBING)
    silence(store, running.id, worker_id="old-host:41:dead")
    live = job_manager.create_job("user-1", "https://example.org/v/5")
    advance(job_manager, live.id, JobStatus.DOWNLOADING)
    done = job_manager.create_job("user-1", "https://example.org/v/4")
    job_manager.fail(done.id, "earlier failure")

    pending, failed = job_manager.recover_interrupted_jobs()

    assert pending == [older.id, newer.id]
    assert failed == [running.id]
    interrupted = job_manager.get_job(running.id)
    assert interrupted.status == JobStatus.FAILED
    assert interrupted.error == INTERRUPTED_MESSAGE
    assert interrupted.progress == 35
    assert job_manager.get_job(done.id).error == "earlier failure"
    assert job_manager.get_job(live.id).status == JobStatus.DOWNLOADING


def test_fail_stale_jobs(job_manager, store):
    stale = job_manager.create_job("user-1", "https://example.org/v/1")
    fresh = job_manager.create_job("user-1", "https://example.org/v/2")
    old = (datetime.now() - timedelta(hours=5)).isoformat()
    store.save(replace(store.get(stale.id), created_at=old))

    assert job_manager.fail_stale_jobs(timedelta(hours=3)) == [stale.id]
    assert job_manager.get_job(stale.id).status == JobStatus.FAILED
    assert job_manager.get_job(fresh.id).status == JobStatus.PENDING


def test_claim_is_exclusive(store):
    first = JobManager(store, worker_id="worker-a")
    second = JobManager(store, worker_id="worker-b")
    job = first.create_job("user-1", "https://example.org/v/1")

    claimed = first.claim(job.id)

    assert claimed.status == JobStatus.DOWNLOADING
    assert claimed.progress == 10
    assert claimed.worker_id == "worker-a"
    assert claimed.heartbeat_at is not None
    assert second.claim(job.id) is None
    assert second.get_job(job.id).worker_id == "worker-a"


def test_claim_lost_leaves_job_untouched(store):
    manager = JobManager(store, worker_id="worker-a")
    job = manager.create_job("user-1", "https://example.org/v/1")
    assert store.claim(job.id, "worker-b")

    assert manager.claim(job.id) is None
    assert manager.get_job(job.id).status == JobStatus.PENDING


def test_claim_requires_pending_job(job_manager):
    job = job_manager.create_job("user-1", "https://example.org/v/1")
    job_manager.fail(job.id, "cancelled elsewhere")

    assert job_manager.claim(job.id) is None
    assert job_manager.get_job(job.id).error == "cancelled elsewhere"


def test_heartbeat_only_from_owner(store):
    owner = JobManager(store, worker_id="worker-a")
    other = JobManager(store, worker_id="worker-b")
    job = owner.create_job("user-1", "https://example.org/v/1")
    owner.claim(job.id)
    silence(store, job.id)
    before = store.get(job.id).heartbeat_at

    other.heartbeat(job.id)
    assert store.get(job.id).heartbeat_at == before

    owner.heartbeat(job.id)
    assert store.get(job.id).heartbeat_at > before


def test_fail_abandoned_jobs(store):
    manager = JobManager(store, worker_id="worker-a")
    other = JobManager(store, worker_id="worker-b")
    live = other.create_job("user-1", "https://example.org/v/1")
    other.claim(live.id)
    silent = other.create_job("user-1", "https://example.org/v/2")
    other.claim(silent.id)
    silence(store, silent.id)
    own = manager.create_job("user-1", "https://example.org/v/3")
    manager.claim(own.id)
    silence(store, own.id)

    assert manager.fail_abandoned_jobs(timedelta(minutes=3)) == [silent.id]
    assert manager.get_job(silent.id).error == INTERRUPTED_MESSAGE
    assert manager.get_job(live.id).status == JobStatus.DOWNLOADING
    assert manager.get_job(own.id).status == JobStatus.DOWNLOADING
