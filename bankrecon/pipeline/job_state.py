"""
Job and page state machines.

Jobs:   PENDING -> PROCESSING -> {VERIFIED | NEEDS_REVIEW | FAILED}
Pages:  PENDING -> VERIFIED | NEEDS_VISION | FAILED;  NEEDS_VISION -> VERIFIED | FAILED

Both are one-directional. Acceptance (CONFIRMED / REJECTED) is a separate column and only
applies to jobs that finished with a statement.
"""

from typing import Optional

from bankrecon.models.enums import JobAcceptance, JobStatus, PageStatus
from bankrecon.pipeline.errors import InvalidStateTransition

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.VERIFIED, JobStatus.NEEDS_REVIEW, JobStatus.FAILED}),
    JobStatus.VERIFIED: frozenset(),
    JobStatus.NEEDS_REVIEW: frozenset(),
    JobStatus.FAILED: frozenset(),
}

PAGE_TRANSITIONS: dict[PageStatus, frozenset[PageStatus]] = {
    PageStatus.PENDING: frozenset({PageStatus.VERIFIED, PageStatus.NEEDS_VISION, PageStatus.FAILED}),
    PageStatus.NEEDS_VISION: frozenset({PageStatus.VERIFIED, PageStatus.FAILED}),
    PageStatus.VERIFIED: frozenset(),
    PageStatus.FAILED: frozenset(),
}

TERMINAL_JOB_STATES = frozenset({JobStatus.VERIFIED, JobStatus.NEEDS_REVIEW, JobStatus.FAILED})
ACCEPTABLE_JOB_STATES = frozenset({JobStatus.VERIFIED, JobStatus.NEEDS_REVIEW})


def can_transition(current: str, target: str) -> bool:
    return JobStatus(target) in JOB_TRANSITIONS[JobStatus(current)]


def assert_transition(current: str, target: str) -> str:
    """Return the target status, or raise InvalidStateTransition."""
    if not can_transition(current, target):
        raise InvalidStateTransition(current, target)
    return JobStatus(target).value


def advance_page(current: str, target: str) -> str:
    if PageStatus(target) not in PAGE_TRANSITIONS[PageStatus(current)]:
        raise InvalidStateTransition(f"page {current}", f"page {target}")
    return PageStatus(target).value


def is_terminal(status: str) -> bool:
    return JobStatus(status) in TERMINAL_JOB_STATES


def assert_acceptance(status: str, acceptance: Optional[str], target: str) -> str:
    """
    Confirm/reject is allowed once, and only on jobs that produced a statement.
    FAILED jobs have nothing to accept.
    """
    if JobStatus(status) not in ACCEPTABLE_JOB_STATES:
        raise InvalidStateTransition(status, target)
    if acceptance is not None:
        raise InvalidStateTransition(f"{status}/{acceptance}", target)
    return JobAcceptance(target).value
