import pytest

from boothworker.jobs.state import LEGAL_TRANSITIONS, can_transition, sources_for
from boothworker.models import CrawlJob, JobStatus


LEGAL = {
    ("queued", "crawling"),
    ("queued", "failed"),
    ("crawling", "crawling"),
    ("crawling", "processing"),
    ("crawling", "failed"),
    ("processing", "completed"),
    ("processing", "failed"),
}


@pytest.mark.parametrize("current", [status.value for status in JobStatus])
@pytest.mark.parametrize("target", [status.value for status in JobStatus])
def test_only_listed_edges_are_legal(current, target):
    assert can_transition(current, target) is ((current, target) in LEGAL)


def test_terminal_states_have_no_exits():
    assert LEGAL_TRANSITIONS[JobStatus.COMPLETED] == frozenset()
    assert LEGAL_TRANSITIONS[JobStatus.FAILED] == frozenset()
    assert JobStatus.COMPLETED.is_terminal and JobStatus.FAILED.is_terminal
    assert not JobStatus.PROCESSING.is_terminal


def test_sources_for():
    assert set(sources_for(JobStatus.CRAWLING)) == {JobStatus.QUEUED, JobStatus.CRAWLING}
    assert sources_for("completed") == (JobStatus.PROCESSING,)
    assert JobStatus.COMPLETED not in sources_for(JobStatus.FAILED)


def _job(job_store, job_id="job-1"):
    return job_store.create_job(CrawlJob(job_id=job_id, source_id="src-1", source_name="photobooth.net", page_limit=5))


def test_memory_store_follows_the_state_machine(job_store):
    _job(job_store)

    assert job_store.mark_processing("job-1") is None  # queued -> processing is illegal
    assert job_store.get_job("job-1").status is JobStatus.QUEUED

    assert job_store.increment_pages("job-1").status is JobStatus.CRAWLING
    assert job_store.increment_pages("job-1").pages_crawled == 2
    assert job_store.mark_processing("job-1").status is JobStatus.PROCESSING
    assert job_store.increment_pages("job-1") is None

    done = job_store.complete_job("job-1", found=3, added=2, updated=1, extraction_time_ms=5)
    assert done.status is JobStatus.COMPLETED
    assert (done.booths_found, done.booths_added, done.booths_updated) == (3, 2, 1)

    assert job_store.fail_job("job-1", "late") is None
    after = job_store.get_job("job-1")
    assert after.status is JobStatus.COMPLETED
    assert after.error_message is None


def test_updated_at_advances_on_every_write(job_store):
    created = _job(job_store)
    stamps = [created.updated_at]
    stamps.append(job_store.mark_started("job-1").updated_at)
    stamps.append(job_store.raise_pages("job-1", 4).updated_at)
    stamps.append(job_store.increment_pages("job-1").updated_at)

    assert all(later > earlier for earlier, later in zip(stamps, stamps[1:]))


def test_raise_pages_never_decreases(job_store):
    _job(job_store)
    job_store.raise_pages("job-1", 5)
    assert job_store.raise_pages("job-1", 2).pages_crawled == 5


def test_create_job_is_idempotent(job_store):
    _job(job_store)
    job_store.mark_started("job-1")
    again = _job(job_store)
    assert again.status is JobStatus.CRAWLING
    assert job_store.count_active() == 1
    assert job_store.count_active("src-1") == 1
    assert job_store.count_active("other") == 0


def test_claim_respects_lease(job_store):
    _job(job_store)
    job_store.mark_started("job-1")
    job_store.mark_processing("job-1")

    assert job_store.claim_for_processing("job-1", "worker-a", lease_seconds=600) is not None
    assert job_store.claim_for_processing("job-1", "worker-b", lease_seconds=600) is None
    assert job_store.list_orphaned_processing(600) == []
    assert [job.job_id for job in job_store.list_orphaned_processing(-1)] == ["job-1"]
    assert job_store.claim_for_processing("job-1", "worker-b", lease_seconds=-1) is not None


def test_transition_dispatches_to_guarded_writes(job_store):
    _job(job_store)
    assert job_store.transition("job-1", "crawling").status is JobStatus.CRAWLING
    assert job_store.transition("job-1", JobStatus.PROCESSING).status is JobStatus.PROCESSING
    assert job_store.transition("job-1", JobStatus.COMPLETED, found=1, added=1).booths_added == 1
    with pytest.raises(ValueError):
        job_store.transition("job-1", JobStatus.QUEUED)
