"""Circuit Breaking Domain Entities

The breaker state is a tagged variant: exactly one of ClosedState,
OpenState or HalfOpenState. Each variant carries only the fields that are
meaningful in that state, so combinations such as "open with trials in
flight" cannot be represented.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Optional, Union

from .value_objects import CircuitState


@dataclass(frozen=True, slots=True)
class ClosedState:
    """All calls allowed; outcomes feed the rolling window"""
    entered_at: float

    kind: ClassVar[CircuitState] = CircuitState.CLOSED


@dataclass(frozen=True, slots=True)
class OpenState:
    """All calls rejected until the cooldown measured from `entered_at` elapses"""
    entered_at: float

    kind: ClassVar[CircuitState] = CircuitState.OPEN


@dataclass(frozen=True, slots=True)
class HalfOpenState:
    """A limited number of trial calls probe the dependency"""
    entered_at: float
    trials_in_flight: int = 0
    trials_succeeded: int = 0

    kind: ClassVar[CircuitState] = CircuitState.HALF_OPEN

    @property
    def trials_started(self) -> int:
        return self.trials_in_flight + self.trials_succeeded


BreakerState = Union[ClosedState, OpenState, HalfOpenState]


@dataclass(frozen=True, slots=True)
class BreakerDecision:
    """Result of asking a breaker whether a call may proceed.

    `retry_after` is the time left in the Open cooldown; None when it is
    not derivable (e.g. Half-Open with every trial slot taken).
    """
    allowed: bool
    state: CircuitState
    retry_after: Optional[float] = None
    trial: bool = False

    @property
    def is_blocked(self) -> bool:
        return not self.allowed
