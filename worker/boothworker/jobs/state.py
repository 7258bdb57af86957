"""Crawl job state machine."""

from typing import Dict, FrozenSet, Tuple, Union

from boothworker.models import JobStatus

LEGAL_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.CRAWLING, JobStatus.FAILED}),
    JobStatus.CRAWLING: frozenset({JobStatus.CRAWLING, JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.CRAWLING, JobStatus.PROCESSING)
STALE_CANDIDATE_STATUSES = (JobStatus.CRAWLING, JobStatus.PROCESSING)


def _coerce(status: Union[str, JobStatus]) -> JobStatus:
    return status if isinstance(status, JobStatus) else JobStatus(status)


def can_transition(current: Union[str, JobStatus], target: Union[str, JobStatus]) -> bool:
    return _coerce(target) in LEGAL_TRANSITIONS[_coerce(current)]


def sources_for(target: Union[str, JobStatus]) -> Tuple[JobStatus, ...]:
    """States from which ``target`` may legally be entered.

    Stores use this as the guard of their conditional updates so an illegal
    transition leaves the row untouched.
    """
    target = _coerce(target)
    return tuple(state for state, allowed in LEGAL_TRANSITIONS.items() if target in allowed)
