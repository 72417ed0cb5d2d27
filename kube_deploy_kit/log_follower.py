"""
log_follower
------------

파드 로그를 컨테이너 라이프사이클에 맞춰 따라가는 재연결 오토마톤.

  START     : 컨테이너가 running 이 됨   → 스트리밍 중이 아니면 스트림을 연다
  CLOSE     : 컨테이너가 terminated 가 됨 → grace 초 뒤에 스트림을 닫는다
  PHASE     : 파드 phase 가 Succeeded/Failed/Unknown 으로 확정됨
  DELETED   : 파드가 삭제됨 → 즉시 실패
  COPY_DONE : 복사 스레드가 스트림 끝에 도달함

같은 신호가 연달아 오면 (스트리밍 중 START, 닫힌 상태의 CLOSE) 무시한다.
스트림이 닫혀 있고 최종 phase 가 정해지면 끝난다.
"""

from __future__ import annotations

import enum
import math
import queue
import threading
import time
from typing import Any, BinaryIO, Callable, Optional, Tuple

from .errors import ControlPlaneError, NotFoundError, WatchStreamError
from .logging_utils import get_logger


logger = get_logger(__name__)

FINAL_PHASES = ("Succeeded", "Failed", "Unknown")

OPEN_ATTEMPTS = 30
MAX_BLOCK_SECONDS = 1.0


class Signal(enum.Enum):
    START = "start"
    CLOSE = "close"
    PHASE = "phase"
    DELETED = "deleted"
    COPY_DONE = "copy_done"
    WATCH_FAILED = "watch_failed"


class StreamState(enum.Enum):
    CLOSED = "closed"
    STREAMING = "streaming"
    CLOSING = "closing"


class LogStreamAutomaton:
    """
    open_stream(since_seconds) 는 바이트 청크를 내보내는 iterable(+close()) 를 돌려준다.
    is_running() 은 스트림이 스스로 끝났을 때 컨테이너가 아직 돌고 있는지 확인한다.
    """

    def __init__(
        self,
        open_stream: Callable[[Optional[int]], Any],
        sink: BinaryIO,
        grace: float = 2.0,
        is_running: Callable[[], bool] = lambda: False,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._open_stream = open_stream
        self._sink = sink
        self._grace = grace
        self._is_running = is_running
        self._clock = clock
        self._wall_clock = wall_clock
        self._signals: "queue.Queue[Tuple[Signal, Any]]" = queue.Queue()

        self.state = StreamState.CLOSED
        self.final_phase: Optional[str] = None
        self.opened = 0
        self.closed = 0
        self._stream: Any = None
        self._copier: Optional[threading.Thread] = None
        self._generation = 0
        self._close_at: Optional[float] = None

    def post(self, signal: Signal, value: Any = None) -> None:
        self._signals.put((signal, value))

    # -----------------------------
    # stream handling
    # -----------------------------
    def _copy(self, stream: Any, generation: int) -> None:
        last_chunk_at: Optional[float] = None
        error: Optional[BaseException] = None
        try:
            for chunk in stream:
                self._sink.write(chunk)
                self._sink.flush()
                last_chunk_at = self._wall_clock()
        except Exception as e:  # noqa: BLE001 - 닫힌 스트림을 읽으면 예외가 날 수 있다
            error = e
        self.post(Signal.COPY_DONE, (generation, last_chunk_at, error))

    def _open(self, since_seconds: Optional[int] = None) -> None:
        self._stream = self._open_stream(since_seconds)
        self._generation += 1
        self.opened += 1
        self._copier = threading.Thread(target=self._copy, args=(self._stream, self._generation), daemon=True)
        self._copier.start()
        self.state = StreamState.STREAMING
        self._close_at = None

    def _close(self) -> None:
        stream, copier = self._stream, self._copier
        self._stream = None
        self._copier = None
        self._close_at = None
        self.state = StreamState.CLOSED
        if stream is not None:
            stream.close()
            self.closed += 1
        if copier is not None:
            copier.join(timeout=MAX_BLOCK_SECONDS)

    # -----------------------------
    # transitions
    # -----------------------------
    def step(self, signal: Signal, value: Any = None) -> None:
        if signal is Signal.START:
            if self.state is StreamState.STREAMING:
                return
            if self.state is StreamState.CLOSING:
                # 닫기 전에 컨테이너가 다시 떴다
                self.state = StreamState.STREAMING
                self._close_at = None
                return
            self._open()

        elif signal is Signal.CLOSE:
            if self.state is not StreamState.STREAMING:
                return
            self.state = StreamState.CLOSING
            self._close_at = self._clock() + self._grace

        elif signal is Signal.PHASE:
            self.final_phase = value

        elif signal is Signal.DELETED:
            raise WatchStreamError("로그를 따라가는 중에 파드가 삭제되었습니다.")

        elif signal is Signal.WATCH_FAILED:
            raise WatchStreamError(f"파드 watch 스트림 오류: {value}") from value

        elif signal is Signal.COPY_DONE:
            generation, last_chunk_at, error = value
            if generation != self._generation or self.state is StreamState.CLOSED:
                return
            if error is not None:
                logger.debug("로그 스트림 읽기 종료: %s", error)
            if self.state is StreamState.STREAMING and self._is_running():
                since = None
                if last_chunk_at is not None:
                    since = max(math.ceil(self._wall_clock() - last_chunk_at), 1)
                logger.info("로그 스트림이 끊겼습니다. 다시 연결합니다 (since=%ss)", since)
                self._close()
                self._open(since)
                return
            self._close()

    def run(self) -> str:
        while True:
            if self.state is StreamState.CLOSED and self.final_phase is not None:
                return self.final_phase
            timeout = MAX_BLOCK_SECONDS
            if self._close_at is not None:
                timeout = min(timeout, max(self._close_at - self._clock(), 0.0))
            try:
                signal, value = self._signals.get(timeout=timeout)
            except queue.Empty:
                pass
            else:
                self.step(signal, value)

            if self.state is StreamState.CLOSING and self._close_at is not None and self._clock() >= self._close_at:
                self._close()


class LogFollower:
    def __init__(
        self,
        kube: Any,
        name: str,
        namespace: str,
        sink: BinaryIO,
        container: Optional[str] = None,
        grace: float = 2.0,
        pending_interval: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.kube = kube
        self.name = name
        self.namespace = namespace
        self.sink = sink
        self.container = container
        self.grace = grace
        self.pending_interval = pending_interval
        self._sleep = sleep
        self._stop = threading.Event()

    def _pod(self) -> Any:
        return self.kube.get("pod", self.name, self.namespace)

    def _container_status(self, pod: Any) -> Any:
        statuses = (pod.status.container_statuses if pod.status is not None else None) or []
        if self.container:
            for status in statuses:
                if status.name == self.container:
                    return status
            return None
        return statuses[0] if statuses else None

    def wait_until_started(self) -> Any:
        while True:
            pod = self._pod()
            phase = pod.status.phase if pod.status is not None else None
            if phase == "Unknown":
                raise WatchStreamError(f"파드 상태를 알 수 없습니다: {self.namespace}/{self.name}")
            if phase != "Pending":
                return pod
            logger.info("파드가 아직 Pending 입니다. 대기 중: %s", self.name)
            self._sleep(self.pending_interval)

    def signals_for(self, event_type: str, pod: Any) -> list[Tuple[Signal, Any]]:
        if event_type == "DELETED":
            return [(Signal.DELETED, None)]
        if not hasattr(pod, "status"):
            raise WatchStreamError(f"watch 이벤트를 해석할 수 없습니다: {event_type}: {pod!r}")

        signals: list[Tuple[Signal, Any]] = []
        status = self._container_status(pod)
        state = status.state if status is not None else None
        if state is not None:
            if state.running is not None:
                signals.append((Signal.START, None))
            elif state.terminated is not None:
                signals.append((Signal.CLOSE, None))
        phase = pod.status.phase if pod.status is not None else None
        if phase in FINAL_PHASES:
            signals.append((Signal.PHASE, phase))
        return signals

    def is_running(self) -> bool:
        try:
            status = self._container_status(self._pod())
        except NotFoundError:
            return False
        return bool(status is not None and status.state is not None and status.state.running is not None)

    def open_stream(self, since_seconds: Optional[int] = None) -> Any:
        attempt = 1
        while True:
            try:
                return self.kube.stream_pod_log(
                    self.name,
                    self.namespace,
                    container=self.container,
                    since_seconds=since_seconds,
                )
            except ControlPlaneError as e:
                if "ContainerCreating" not in e.message or attempt >= OPEN_ATTEMPTS:
                    raise
                logger.debug("컨테이너 생성 중. 로그 스트림 재시도 (%d/%d)", attempt, OPEN_ATTEMPTS)
                self._sleep(self.pending_interval)
                attempt += 1

    def _watch(self, automaton: LogStreamAutomaton) -> None:
        try:
            while not self._stop.is_set():
                for event_type, pod in self.kube.watch(
                    "pod", self.namespace, field_selector=f"metadata.name={self.name}"
                ):
                    if self._stop.is_set():
                        return
                    for signal, value in self.signals_for(event_type, pod):
                        automaton.post(signal, value)
                # 서버가 watch 를 닫으면 잠시 후 다시 붙는다
                self._stop.wait(self.pending_interval)
        except Exception as e:  # noqa: BLE001 - 드라이빙 루프에서 올린다
            automaton.post(Signal.WATCH_FAILED, e)

    def follow(self) -> str:
        """로그를 sink 로 복사하고, 파드의 최종 phase 를 돌려준다."""
        pod = self.wait_until_started()
        automaton = LogStreamAutomaton(
            self.open_stream,
            self.sink,
            grace=self.grace,
            is_running=self.is_running,
        )
        automaton.post(Signal.START)
        for signal, value in self.signals_for("ADDED", pod):
            automaton.post(signal, value)

        watcher = threading.Thread(target=self._watch, args=(automaton,), daemon=True)
        watcher.start()
        try:
            phase = automaton.run()
        finally:
            self._stop.set()
        logger.info("파드 종료: %s (phase=%s)", self.name, phase)
        return phase
