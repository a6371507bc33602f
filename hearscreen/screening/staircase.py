"""Modified Hughson-Westlake staircase.

The engine is an immutable :class:`StaircaseState` plus the pure
:func:`transition` function. :class:`HughsonWestlakeStaircase` wraps both
for callers that want a mutable object (the screening runner).

Steps are "down 10 / up 5": a heard tone lowers the level by 10 dB, a
missed one raises it by 5 dB. A tone missed on the very first trial raises
the level by 20 dB to get out of the inaudible region quickly.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import threading
import time
from typing import Callable, List, Optional, Tuple

ASCENDING = "ascending"
DESCENDING = "descending"

FIRST_MISS_STEP_DB = 20
DOWN_STEP_DB = 10
UP_STEP_DB = 5


class StaircaseCompleteError(RuntimeError):
    """Raised when a response is fed to a staircase that already has a threshold."""


@dataclass(frozen=True)
class Trial:
    level_db: float
    heard: bool
    timestamp: float = 0.0

    def to_dict(self) -> dict:
        return {"level_db": self.level_db, "heard": self.heard, "timestamp": self.timestamp}

    @staticmethod
    def from_dict(d: dict) -> "Trial":
        return Trial(
            level_db=float(d.get("level_db", 0.0)),
            heard=bool(d.get("heard", False)),
            timestamp=float(d.get("timestamp", 0.0)),
        )


@dataclass(frozen=True)
class StaircaseConfig:
    start_level: float = 30
    min_level: float = 0
    max_level: float = 100
    max_trials: int = 8

    def __post_init__(self) -> None:
        if self.min_level > self.max_level:
            raise ValueError(f"min_level {self.min_level} is above max_level {self.max_level}")
        if not self.min_level <= self.start_level <= self.max_level:
            raise ValueError(f"start_level {self.start_level} outside [{self.min_level}, {self.max_level}]")
        if self.max_trials < 1:
            raise ValueError("max_trials must be at least 1")

    def clamp(self, level: float) -> float:
        return max(self.min_level, min(level, self.max_level))


@dataclass(frozen=True)
class StaircaseState:
    current_level: float
    trials: Tuple[Trial, ...] = ()
    direction: str = ASCENDING
    reversals: int = 0
    ascending_responses: int = 0
    last_reversal_level: Optional[float] = None
    is_complete: bool = False
    threshold: Optional[float] = None

    @classmethod
    def initial(cls, config: StaircaseConfig) -> "StaircaseState":
        return cls(current_level=config.clamp(config.start_level))


def bracket_threshold(state: StaircaseState, config: StaircaseConfig) -> Optional[float]:
    """Lowest level heard on an ascending step, once the run has bracketed.

    Needs at least one reversal and one ascending miss since then. This is
    looser than the clinical "2 of 3 ascending" stopping rule: the first
    ascending hit found is enough.
    """
    if state.reversals < 1 or state.ascending_responses < 1:
        return None
    trials = state.trials
    ascending_hits = [
        trial.level_db
        for prev, trial in zip(trials, trials[1:])
        if trial.level_db > prev.level_db and trial.heard
    ]
    if not ascending_hits:
        return None
    return max(min(ascending_hits), config.min_level)


def budget_threshold(state: StaircaseState, config: StaircaseConfig) -> Optional[float]:
    """Forced result once ``max_trials`` responses have been recorded.

    Lowest heard level, or ``max_level`` when nothing was heard at all.
    """
    if len(state.trials) < config.max_trials:
        return None
    heard = [trial.level_db for trial in state.trials if trial.heard]
    if not heard:
        return config.max_level
    return max(min(heard), config.min_level)


# Evaluated in this order; a later hit overrides an earlier one.
COMPLETION_RULES: Tuple[Callable[[StaircaseState, StaircaseConfig], Optional[float]], ...] = (
    bracket_threshold,
    budget_threshold,
)


def _step(state: StaircaseState, heard: bool, config: StaircaseConfig) -> StaircaseState:
    level = state.current_level
    if len(state.trials) == 1:
        if heard:
            return replace(state, direction=DESCENDING, current_level=config.clamp(level - DOWN_STEP_DB))
        return replace(state, current_level=config.clamp(level + FIRST_MISS_STEP_DB))

    if heard:
        if state.direction == DESCENDING:
            return replace(state, current_level=config.clamp(level - DOWN_STEP_DB))
        return replace(
            state,
            reversals=state.reversals + 1,
            last_reversal_level=level,
            direction=DESCENDING,
            current_level=config.clamp(level - DOWN_STEP_DB),
            ascending_responses=0,
        )

    if state.direction == ASCENDING:
        return replace(
            state,
            current_level=config.clamp(level + UP_STEP_DB),
            ascending_responses=state.ascending_responses + 1,
        )
    return replace(
        state,
        reversals=state.reversals + 1,
        last_reversal_level=level,
        direction=ASCENDING,
        current_level=config.clamp(level + UP_STEP_DB),
        ascending_responses=1,
    )


def transition(
    state: StaircaseState,
    heard: bool,
    config: StaircaseConfig,
    timestamp: Optional[float] = None,
) -> StaircaseState:
    """Return the state after one response; ``state`` itself is left untouched."""
    if state.is_complete:
        raise StaircaseCompleteError("Staircase is already complete")

    stamp = time.monotonic() if timestamp is None else float(timestamp)
    trial = Trial(level_db=state.current_level, heard=bool(heard), timestamp=stamp)
    new_state = _step(replace(state, trials=state.trials + (trial,)), bool(heard), config)

    threshold = None
    for rule in COMPLETION_RULES:
        result = rule(new_state, config)
        if result is not None:
            threshold = result
    if threshold is not None:
        new_state = replace(new_state, is_complete=True, threshold=threshold)
    return new_state


class HughsonWestlakeStaircase:
    """Stateful wrapper used for one (ear, frequency) pair."""

    def __init__(
        self,
        start_level: float = 30,
        min_level: float = 0,
        max_level: float = 100,
        max_trials: int = 8,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = StaircaseConfig(start_level, min_level, max_level, max_trials)
        self._clock = clock
        self._lock = threading.Lock()
        self._state = StaircaseState.initial(self.config)

    def add_response(self, heard: bool) -> StaircaseState:
        with self._lock:
            self._state = transition(self._state, heard, self.config, self._clock())
            return self._state

    @property
    def current_level(self) -> float:
        return self._state.current_level

    @property
    def is_complete(self) -> bool:
        return self._state.is_complete

    @property
    def threshold(self) -> Optional[float]:
        return self._state.threshold

    @property
    def trials(self) -> List[Trial]:
        return list(self._state.trials)

    @property
    def state(self) -> StaircaseState:
        return self._state

    def reset(self) -> None:
        with self._lock:
            self._state = StaircaseState.initial(self.config)
