from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Literal, Optional, Tuple
from collections import deque
import heapq
import logging

import numpy as np

from .errors import AmmError, ChainConflictError

logger = logging.getLogger(__name__)

TaskStatus = Literal["queued", "pending", "done", "cancelled", "skipped", "failed"]
ConflictPolicy = Literal["queue", "reject"]


@dataclass
class CancelToken:
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class ChainTask:
    seq: int
    actor_id: int
    delay: float
    step: Callable[[], None]
    token: CancelToken = field(default_factory=CancelToken)
    due: Optional[float] = None
    status: TaskStatus = "queued"
    error: Optional[str] = None

    def cancel(self) -> None:
        self.token.cancel()


class ChainScheduler:
    """
    Deferred trade steps on a simulated clock.

    Each actor has at most one step in flight; further submissions either wait
    behind it (policy "queue") or are refused (policy "reject"). Steps run in
    (due time, submission order). A step that comes due while the scheduler is
    paused, or whose token was cancelled, is dropped without running.
    """
    def __init__(
        self,
        min_interval: float = 0.1,
        max_interval: float = 1.0,
        conflict_policy: ConflictPolicy = "queue",
    ) -> None:
        self.min_interval = float(min_interval)
        self.max_interval = float(max_interval)
        self.conflict_policy = conflict_policy

        self.clock: float = 0.0
        self.paused: bool = False
        self._seq = 0
        self._heap: List[Tuple[float, int, ChainTask]] = []
        self._in_flight: Dict[int, ChainTask] = {}
        self._waiting: Dict[int, Deque[ChainTask]] = {}
        self._actor_delay: Dict[int, float] = {}
        self.history: List[ChainTask] = []

    # -----------------------------
    # Delays
    # -----------------------------
    def delay_for(self, actor_id: int) -> float:
        """Per-actor pacing, drawn once and then reused."""
        delay = self._actor_delay.get(actor_id)
        if delay is None:
            delay = float(np.random.uniform(self.min_interval, self.max_interval))
            self._actor_delay[actor_id] = delay
        return delay

    # -----------------------------
    # Submission
    # -----------------------------
    def submit(self, actor_id: int, delay: Optional[float], step: Callable[[], None]) -> ChainTask:
        if delay is None:
            delay = self.delay_for(actor_id)
        if delay < 0:
            raise ValueError(f"delay must be >= 0, got {delay}")
        self._seq += 1
        task = ChainTask(seq=self._seq, actor_id=actor_id, delay=float(delay), step=step)

        if actor_id in self._in_flight or self._waiting.get(actor_id):
            if self.conflict_policy == "reject":
                raise ChainConflictError(f"actor {actor_id} already has a chained step pending")
            self._waiting.setdefault(actor_id, deque()).append(task)
            return task

        self._schedule(task)
        return task

    def _schedule(self, task: ChainTask) -> None:
        task.due = self.clock + task.delay
        task.status = "pending"
        self._in_flight[task.actor_id] = task
        heapq.heappush(self._heap, (task.due, task.seq, task))

    def _promote(self, actor_id: int) -> None:
        if actor_id in self._in_flight:
            return
        waiting = self._waiting.get(actor_id)
        while waiting:
            nxt = waiting.popleft()
            if nxt.token.cancelled:
                nxt.status = "cancelled"
                self.history.append(nxt)
                continue
            self._schedule(nxt)
            break
        if waiting is not None and not waiting:
            self._waiting.pop(actor_id, None)

    # -----------------------------
    # Running
    # -----------------------------
    def _run_one(self) -> ChainTask:
        due, _, task = heapq.heappop(self._heap)
        self.clock = max(self.clock, due)
        # the actor's slot frees before the step runs, so the step may chain its own follow-up
        if self._in_flight.get(task.actor_id) is task:
            del self._in_flight[task.actor_id]

        try:
            if task.token.cancelled:
                task.status = "cancelled"
            elif self.paused:
                task.status = "skipped"
                logger.info("chain step for actor %s dropped: trading paused", task.actor_id)
            else:
                try:
                    task.step()
                    task.status = "done"
                except AmmError as exc:
                    task.status = "failed"
                    task.error = str(exc)
                    logger.info("chain step for actor %s failed: %s", task.actor_id, exc)
                except Exception as exc:
                    task.status = "failed"
                    task.error = str(exc)
                    raise
        finally:
            # queued steps for this actor must not be stranded by an unexpected error
            self.history.append(task)
            self._promote(task.actor_id)
        return task

    def advance(self, seconds: float, max_steps: int = 1000) -> List[ChainTask]:
        """Move the clock forward, running every step that comes due on the way."""
        if seconds < 0:
            raise ValueError("cannot move the clock backwards")
        target = self.clock + seconds
        ran: List[ChainTask] = []
        while self._heap and self._heap[0][0] <= target and len(ran) < max_steps:
            ran.append(self._run_one())
        if len(ran) >= max_steps and self._heap and self._heap[0][0] <= target:
            logger.warning("chain scheduler stopped after %s steps at t=%.3f", max_steps, self.clock)
            return ran
        self.clock = target
        return ran

    def run_pending(self, max_steps: int = 1000) -> List[ChainTask]:
        """Run steps in due order, jumping the clock, until nothing is left or max_steps ran."""
        ran: List[ChainTask] = []
        while self._heap and len(ran) < max_steps:
            ran.append(self._run_one())
        if self._heap:
            logger.warning("chain scheduler stopped after %s steps with %s pending", max_steps, len(self._heap))
        return ran

    # -----------------------------
    # Control
    # -----------------------------
    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def cancel(self, actor_id: int) -> int:
        n = 0
        task = self._in_flight.get(actor_id)
        if task is not None and not task.token.cancelled:
            task.cancel()
            n += 1
        for t in self._waiting.get(actor_id, ()):
            if not t.token.cancelled:
                t.cancel()
                n += 1
        return n

    def cancel_all(self) -> int:
        return sum(self.cancel(a) for a in set(self._in_flight) | set(self._waiting))

    def reset(self) -> None:
        self.cancel_all()
        self._heap.clear()
        self._in_flight.clear()
        self._waiting.clear()
        self._actor_delay.clear()
        self.history.clear()
        self.clock = 0.0
        self.paused = False
        self._seq = 0

    def pending_count(self) -> int:
        return len(self._heap) + sum(len(q) for q in self._waiting.values())

    def has_pending(self, actor_id: int) -> bool:
        return actor_id in self._in_flight
