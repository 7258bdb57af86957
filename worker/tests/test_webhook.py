import pytest

from boothworker.core.errors import UnknownJob
from boothworker.jobs.webhook import normalize_event_type
from boothworker.models import CandidateEntity, JobStatus


def _started_job(orchestrator):
    return orchestrator.start_job("src-1")


def test_normalize_event_type():
    assert normalize_event_type("crawl.completed") == "completed"
    assert normalize_event_type(" Page ") == "page"
    assert normalize_event_type(None) == ""


def test_unknown_job_raises_without_creating_rows(webhook, job_store):
    with pytest.raises(UnknownJob) as excinfo:
        webhook.handle_event("completed", "ghost-job", {})
    assert excinfo.value.job_id == "ghost-job"
    assert job_store.get_job("ghost-job") is None


def test_started_then_pages_advance_job(webhook, orchestrator, job_store):
    job_id = _started_job(orchestrator)

    assert webhook.handle_event("crawl.started", job_id).status is JobStatus.CRAWLING
    webhook.handle_event("crawl.page", job_id, {"data": [{"url": "https://a", "markdown": "# A"}]})
    webhook.handle_event("page", job_id, {"data": []})

    job = job_store.get_job(job_id)
    assert job.status is JobStatus.CRAWLING
    assert job.started_at is not None
    assert job.pages_crawled == 2
    assert [page["url"] for page in job_store.raw_pages(job_id)] == ["https://a"]


def test_page_on_queued_job_moves_it_to_crawling(webhook, orchestrator, job_store):
    job_id = _started_job(orchestrator)
    webhook.handle_event("page", job_id, {})
    assert job_store.get_job(job_id).status is JobStatus.CRAWLING


def test_completed_runs_processing_to_completion(webhook, orchestrator, job_store, provider, extractor):
    job_id = _started_job(orchestrator)
    provider.results[job_id] = [{"url": "https://a", "markdown": "# A"}]
    extractor.candidates = [
        CandidateEntity(
            name="Mauerpark Booth",
            city="Berlin",
            country="Germany",
            source_url="https://a",
            source_name="photobooth.net",
            latitude=52.5441,
            longitude=13.4022,
        )
    ]

    result = webhook.handle_event("crawl.completed", job_id, {})

    assert result.applied is True
    assert result.to_response() == {"success": True, "received": "crawl.completed"}
    job = job_store.get_job(job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.booths_added == 1


def test_duplicate_completed_is_idempotent(webhook, orchestrator, job_store, provider, extractor, entity_store):
    job_id = _started_job(orchestrator)
    provider.results[job_id] = [{"url": "https://a", "markdown": "# A"}]
    extractor.candidates = [
        CandidateEntity(
            name="Photoautomat Kastanienallee",
            city="Berlin",
            country="Germany",
            source_url="https://a",
            source_name="photobooth.net",
            latitude=52.5378,
            longitude=13.4106,
        )
    ]

    webhook.handle_event("completed", job_id, {})
    first = job_store.get_job(job_id)
    second_result = webhook.handle_event("completed", job_id, {})
    second = job_store.get_job(job_id)

    assert second_result.applied is False
    assert second.to_dict() == first.to_dict()
    assert second.booths_added == 1
    assert entity_store.count() == 1
    assert len(extractor.calls) == 1


def test_failed_after_completed_is_a_no_op(webhook, orchestrator, job_store):
    job_id = _started_job(orchestrator)
    webhook.handle_event("completed", job_id, {})
    assert job_store.get_job(job_id).status is JobStatus.COMPLETED

    result = webhook.handle_event("failed", job_id, {"error": "late failure"})

    job = job_store.get_job(job_id)
    assert result.applied is False
    assert job.status is JobStatus.COMPLETED
    assert job.error_message is None


def test_failed_records_error_verbatim(webhook, orchestrator, job_store, source_registry):
    job_id = _started_job(orchestrator)
    webhook.handle_event("started", job_id)

    webhook.handle_event("crawl.failed", job_id, {"error": "Rate limit exceeded (429)"})

    job = job_store.get_job(job_id)
    assert job.status is JobStatus.FAILED
    assert job.error_message == "Rate limit exceeded (429)"
    assert source_registry.get_source("src-1").status == "failed"


def test_unknown_event_type_is_acknowledged(webhook, orchestrator, job_store, caplog):
    job_id = _started_job(orchestrator)
    with caplog.at_level("WARNING"):
        result = webhook.handle_event("crawl.paused", job_id, {})
    assert result.applied is False
    assert job_store.get_job(job_id).status is JobStatus.QUEUED
    assert "Unhandled webhook event type" in " ".join(caplog.messages)


def test_events_are_applied_through_job_transitions(webhook, orchestrator, job_store, monkeypatch):
    targets = []
    transition = job_store.transition

    def recording(job_id, target, **fields):
        targets.append(target)
        return transition(job_id, target, **fields)

    monkeypatch.setattr(job_store, "transition", recording)
    first = _started_job(orchestrator)

    webhook.handle_event("started", first)
    webhook.handle_event("completed", first)
    second = _started_job(orchestrator)
    webhook.handle_event("failed", second, {"error": "robots.txt disallows crawling"})

    assert targets == [JobStatus.CRAWLING, JobStatus.PROCESSING, JobStatus.FAILED]
    assert job_store.get_job(first).status is JobStatus.COMPLETED
    assert job_store.get_job(second).error_message == "robots.txt disallows crawling"
