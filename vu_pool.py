"""
Virtual users: reusable execution slots for iteration bodies.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, List, Optional

from load_errors import InvalidConfig

logger = logging.getLogger(__name__)


class VUState(Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass(eq=False)
class VirtualUser:
    """
    One execution slot. `id` is 1-based within its scenario and `iterations`
    counts the iterations this VU has finished.
    """
    id: int
    scenario: str
    state: VUState = VUState.IDLE
    iterations: int = 0


class VirtualUserPool:
    """
    Bounded pool of VUs for one scenario.

    `pre_allocated` VUs exist up front; more are created on demand until
    `max_vus`. acquire() never blocks: when every VU is busy and the cap is
    reached it returns None and the caller counts a dropped iteration.
    """

    def __init__(self, scenario: str, pre_allocated: int, max_vus: Optional[int] = None):
        max_vus = pre_allocated if max_vus is None else max_vus
        if pre_allocated < 0:
            raise InvalidConfig(f"{scenario}: preAllocatedVUs must be >= 0, got {pre_allocated}")
        if max_vus < 1:
            raise InvalidConfig(f"{scenario}: maxVUs must be >= 1, got {max_vus}")
        if max_vus < pre_allocated:
            raise InvalidConfig(
                f"{scenario}: maxVUs ({max_vus}) must be >= preAllocatedVUs ({pre_allocated})"
            )

        self.scenario = scenario
        self.max_vus = max_vus
        self._lock = threading.Lock()
        self._vus: List[VirtualUser] = []
        self._idle: Deque[VirtualUser] = deque()
        self._busy = 0
        self.peak_busy = 0
        self._closed = False

        for _ in range(pre_allocated):
            self._idle.append(self._new_vu())

    def _new_vu(self) -> VirtualUser:
        vu = VirtualUser(id=len(self._vus) + 1, scenario=self.scenario)
        self._vus.append(vu)
        return vu

    def acquire(self) -> Optional[VirtualUser]:
        with self._lock:
            if self._closed:
                return None
            if self._idle:
                vu = self._idle.popleft()
            elif len(self._vus) < self.max_vus:
                vu = self._new_vu()
                logger.debug("%s: allocated VU %d of max %d", self.scenario, vu.id, self.max_vus)
            else:
                return None
            vu.state = VUState.RUNNING
            self._busy += 1
            self.peak_busy = max(self.peak_busy, self._busy)
            return vu

    def release(self, vu: VirtualUser) -> None:
        with self._lock:
            if vu.scenario != self.scenario or vu.id > len(self._vus) or self._vus[vu.id - 1] is not vu:
                raise ValueError(f"VU {vu.id} does not belong to pool {self.scenario!r}")
            if vu.state is not VUState.RUNNING:
                raise ValueError(f"VU {vu.id} of {self.scenario!r} is not running")
            vu.state = VUState.IDLE
            self._busy -= 1
            if not self._closed:
                self._idle.append(vu)

    def close(self) -> int:
        """Destroy every VU. Returns how many had been allocated."""
        with self._lock:
            self._closed = True
            self._idle.clear()
            return len(self._vus)

    @property
    def allocated(self) -> int:
        return len(self._vus)

    @property
    def busy(self) -> int:
        return self._busy

    @property
    def idle(self) -> int:
        return len(self._idle)


class SharedIterations:
    """Iteration budget shared by all VUs of a shared-iterations scenario."""

    def __init__(self, total: int):
        self.total = total
        self._remaining = total
        self._lock = threading.Lock()

    def take(self) -> Optional[int]:
        """Claim one iteration. Returns its 0-based number, or None when exhausted."""
        with self._lock:
            if self._remaining <= 0:
                return None
            self._remaining -= 1
            return self.total - self._remaining - 1

    @property
    def remaining(self) -> int:
        return self._remaining
