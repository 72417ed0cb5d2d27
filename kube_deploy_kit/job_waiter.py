"""
job_waiter
----------

Job 완료 대기.

세 가지 이벤트 소스 중 먼저 오는 쪽에 반응한다.
  - watch 스트림 (백그라운드 스레드가 queue 에 넣는다)
  - 고정 간격 폴링 (watch 가 놓친 변경을 보완)
  - 절대 마감 시각
상태는 wait() 를 도는 루프만 가진다. watch 스레드는 queue 에 넣기만 한다.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from .errors import ControlPlaneError, NotFoundError, WaitTimeoutError, WatchStreamError
from .logging_utils import get_logger


logger = get_logger(__name__)

# 가짜 시계로 테스트할 때 queue 대기가 실제로 길어지지 않도록 한 번에 기다리는 상한
MAX_BLOCK_SECONDS = 1.0


@dataclass(frozen=True)
class JobOutcome:
    succeeded: bool
    message: str = ""


def job_outcome(job: Any) -> Optional[JobOutcome]:
    """
    조건이 없으면 None (아직 진행 중).
    Complete 조건이 있으면 성공, 그 외에는 첫 조건의 메시지로 실패.
    """
    status = getattr(job, "status", None)
    conditions = getattr(status, "conditions", None) or []
    if not conditions:
        return None
    for condition in conditions:
        if condition.type == "Complete":
            return JobOutcome(succeeded=True, message=condition.message or "")
    first = conditions[0]
    return JobOutcome(succeeded=False, message=first.message or first.reason or first.type)


class JobWaiter:
    def __init__(
        self,
        kube: Any,
        name: str,
        namespace: str,
        timeout: float,
        poll_interval: float = 60.0,
        max_poll_errors: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.kube = kube
        self.name = name
        self.namespace = namespace
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.max_poll_errors = max_poll_errors
        self._clock = clock
        self._events: "queue.Queue[Tuple[str, Any, Any]]" = queue.Queue()
        self._stop = threading.Event()

    def _fetch(self) -> Any:
        return self.kube.get("job", self.name, self.namespace)

    def _watch(self, timeout_seconds: int) -> None:
        try:
            for event_type, obj in self.kube.watch(
                "job",
                self.namespace,
                field_selector=f"metadata.name={self.name}",
                timeout_seconds=timeout_seconds,
            ):
                if self._stop.is_set():
                    return
                self._events.put(("event", event_type, obj))
        except Exception as e:  # noqa: BLE001 - 대기 루프로 넘겨서 거기서 올린다
            self._events.put(("failed", e, None))
            return
        self._events.put(("closed", None, None))

    def _start_watch(self, remaining: float) -> None:
        thread = threading.Thread(target=self._watch, args=(max(int(remaining), 1),), daemon=True)
        thread.start()

    def _handle(self, event_type: str, obj: Any) -> Optional[JobOutcome]:
        if event_type == "DELETED":
            raise WatchStreamError(f"대기 중에 Job 이 삭제되었습니다: {self.namespace}/{self.name}")
        if event_type not in ("ADDED", "MODIFIED") or not hasattr(obj, "status"):
            raise WatchStreamError(f"watch 이벤트를 해석할 수 없습니다: {event_type}: {obj!r}")
        return job_outcome(obj)

    def _poll(self) -> Optional[JobOutcome]:
        try:
            job = self._fetch()
        except NotFoundError as e:
            raise WatchStreamError(f"대기 중에 Job 이 삭제되었습니다: {self.namespace}/{self.name}") from e
        return job_outcome(job)

    def wait(self) -> JobOutcome:
        deadline = self._clock() + self.timeout
        # Job 이 없으면 NotFoundError 그대로 올린다.
        outcome = job_outcome(self._fetch())
        if outcome is not None:
            return outcome

        logger.info("Job 완료 대기: %s/%s (timeout=%.0fs)", self.namespace, self.name, self.timeout)
        self._start_watch(self.timeout)
        watching = True
        next_poll = self._clock() + self.poll_interval
        poll_errors = 0
        try:
            while True:
                now = self._clock()
                if now >= deadline:
                    raise WaitTimeoutError(
                        f"Job 이 {self.timeout:.0f}초 안에 끝나지 않았습니다: {self.namespace}/{self.name}"
                    )

                if now >= next_poll:
                    next_poll = now + self.poll_interval
                    try:
                        outcome = self._poll()
                    except ControlPlaneError as e:
                        poll_errors += 1
                        if poll_errors >= self.max_poll_errors:
                            raise
                        logger.warning("Job 상태 조회 실패 (%d/%d): %s", poll_errors, self.max_poll_errors, e)
                        continue
                    poll_errors = 0
                    if outcome is not None:
                        return outcome
                    if not watching:
                        self._start_watch(deadline - now)
                        watching = True
                    continue

                wait_for = min(next_poll, deadline) - now
                try:
                    tag, first, second = self._events.get(timeout=min(max(wait_for, 0.0), MAX_BLOCK_SECONDS))
                except queue.Empty:
                    continue

                if tag == "failed":
                    raise WatchStreamError(f"watch 스트림 오류: {first}") from first
                if tag == "closed":
                    # 다음 폴링 때 다시 붙는다
                    logger.debug("watch 스트림이 닫혔습니다: %s", self.name)
                    watching = False
                    continue

                outcome = self._handle(first, second)
                if outcome is not None:
                    return outcome
        finally:
            self._stop.set()
