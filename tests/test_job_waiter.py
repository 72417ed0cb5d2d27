from __future__ import annotations

import itertools
from typing import Any, List

import pytest
from kubernetes import client

from kube_deploy_kit.errors import FatalControlPlaneError, NotFoundError, WaitTimeoutError, WatchStreamError
from kube_deploy_kit.job_waiter import JobOutcome, JobWaiter, job_outcome


NS = "batch"


def _job(*conditions: client.V1JobCondition) -> client.V1Job:
    return client.V1Job(
        metadata=client.V1ObjectMeta(name="migrate", namespace=NS),
        status=client.V1JobStatus(conditions=list(conditions) or None),
    )


def _condition(type_: str, message: str = "") -> client.V1JobCondition:
    return client.V1JobCondition(type=type_, status="True", message=message or None)


def _scripted_get(kube, responses: List[Any]) -> None:
    def get(kind, name, namespace):  # noqa: ARG001
        item = responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    kube.get = get


def _stepping_clock(step: float):
    counter = itertools.count(0, step)
    return lambda: float(next(counter))


def test_job_outcome_states() -> None:
    assert job_outcome(_job()) is None
    assert job_outcome(_job(_condition("Complete"))) == JobOutcome(succeeded=True)
    assert job_outcome(_job(_condition("Failed", "BackoffLimitExceeded"))) == JobOutcome(
        succeeded=False, message="BackoffLimitExceeded"
    )


def test_already_finished_job_returns_without_watching(kube) -> None:
    kube.put("job", "migrate", NS, _job(_condition("Complete")))

    outcome = JobWaiter(kube, "migrate", NS, timeout=30).wait()

    assert outcome.succeeded
    assert kube.verbs("watch") == []


def test_missing_job_raises_not_found(kube) -> None:
    with pytest.raises(NotFoundError):
        JobWaiter(kube, "migrate", NS, timeout=30).wait()


def test_pending_job_completes_from_watch_event(kube) -> None:
    kube.put("job", "migrate", NS, _job())
    kube.watch_events["job"] = [
        ("ADDED", _job()),
        ("MODIFIED", _job(_condition("Complete"))),
    ]

    outcome = JobWaiter(kube, "migrate", NS, timeout=30).wait()

    assert outcome.succeeded
    assert kube.verbs("watch") == [("job", "metadata.name=migrate")]


def test_failed_condition_reports_message(kube) -> None:
    kube.put("job", "migrate", NS, _job())
    kube.watch_events["job"] = [("MODIFIED", _job(_condition("Failed", "BackoffLimitExceeded")))]

    outcome = JobWaiter(kube, "migrate", NS, timeout=30).wait()

    assert not outcome.succeeded
    assert outcome.message == "BackoffLimitExceeded"


def test_deleted_event_is_fatal(kube) -> None:
    kube.put("job", "migrate", NS, _job())
    kube.watch_events["job"] = [("DELETED", _job())]

    with pytest.raises(WatchStreamError):
        JobWaiter(kube, "migrate", NS, timeout=30).wait()


def test_undecodable_event_is_fatal(kube) -> None:
    kube.put("job", "migrate", NS, _job())
    kube.watch_events["job"] = [("MODIFIED", {"raw": "not a job"})]

    with pytest.raises(WatchStreamError):
        JobWaiter(kube, "migrate", NS, timeout=30).wait()


def test_deadline_raises_timeout(kube) -> None:
    kube.put("job", "migrate", NS, _job())

    waiter = JobWaiter(kube, "migrate", NS, timeout=150, poll_interval=1000, clock=_stepping_clock(100))

    with pytest.raises(WaitTimeoutError):
        waiter.wait()


def test_poll_picks_up_completion_when_watch_is_silent(kube) -> None:
    _scripted_get(kube, [_job(), _job(_condition("Complete"))])

    waiter = JobWaiter(kube, "migrate", NS, timeout=1000, poll_interval=10, clock=_stepping_clock(5))

    assert waiter.wait().succeeded


def test_poll_errors_are_tolerated_up_to_limit(kube) -> None:
    boom = FatalControlPlaneError("etcdserver: request timed out", status=500)
    _scripted_get(kube, [_job(), boom, boom, _job(_condition("Complete"))])

    waiter = JobWaiter(kube, "migrate", NS, timeout=1000, poll_interval=10, clock=_stepping_clock(20))

    assert waiter.wait().succeeded


def test_too_many_poll_errors_propagate(kube) -> None:
    boom = FatalControlPlaneError("etcdserver: request timed out", status=500)
    _scripted_get(kube, [_job(), boom, boom, boom])

    waiter = JobWaiter(
        kube, "migrate", NS, timeout=1000, poll_interval=10, max_poll_errors=3, clock=_stepping_clock(20)
    )

    with pytest.raises(FatalControlPlaneError):
        waiter.wait()
