"""
Circuit breakers for external dependencies.

Each dependency (blockchain indexer, object-storage gateway, proof service,
docs API, on-chain release) gets its own breaker, owned by a CircuitRegistry
that the composition root builds and hands to every caller.

States:
    CLOSED     normal operation, calls flow through
    OPEN       dependency is failing, calls are rejected without being invoked
    HALF_OPEN  probing: calls flow through, one failure re-opens

Usage:
    registry = CircuitRegistry()
    registry.get("object-storage", failure_threshold=3, reset_timeout=60.0)

    result = registry.execute("indexer", lambda: client.fetch_project(42))
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, TypeVar

import structlog

from fiatgate.core.errors import ServiceUnavailable
from fiatgate.core.typing import Clock, utc_now

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# (name, old_state, new_state) - return value is ignored
StateChangeCallback = Callable[[str, str, str], Any]


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitStateStore(Protocol):
    """Durable storage for breaker state so an open circuit survives a restart."""

    def load(self, name: str) -> Optional[Dict[str, Any]]: ...

    def save(self, snapshot: Dict[str, Any]) -> None: ...


@dataclass
class CircuitBreaker:
    name: str
    failure_threshold: int = 5
    reset_timeout: float = 30.0  # seconds
    success_threshold: int = 2
    clock: Clock = utc_now
    on_state_change: Optional[StateChangeCallback] = None
    state_store: Optional[CircuitStateStore] = None

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _success_count: int = field(default=0, init=False)
    _last_failure_time: Optional[datetime] = field(default=None, init=False)
    _lock: Lock = field(default_factory=Lock, init=False)

    def __post_init__(self):
        """Restore state from the store if one is configured."""
        if self.state_store is None:
            return
        saved = self.state_store.load(self.name)
        if not saved:
            return
        try:
            self._state = CircuitState(saved.get("state", "closed"))
        except ValueError:
            self._state = CircuitState.CLOSED
        self._failure_count = saved.get("failure_count", 0)
        self._success_count = saved.get("success_count", 0)
        self._last_failure_time = saved.get("last_failure_time")
        logger.info(
            "Circuit state restored",
            circuit=self.name,
            state=self._state.value,
            failure_count=self._failure_count,
        )

    @property
    def state(self) -> CircuitState:
        """Current state. Does not apply the OPEN -> HALF_OPEN timeout; execute() does."""
        return self._state

    def execute(self, operation: Callable[[], T]) -> T:
        """
        Run `operation` under breaker protection.

        Raises ServiceUnavailable without invoking the operation while the
        circuit is open. Errors from the operation are recorded and re-raised
        unchanged.
        """
        with self._lock:
            transition = self._check_recovery_transition()
            rejected = self._state == CircuitState.OPEN
            snapshot = self._snapshot() if transition else None
        self._after_transition(transition, snapshot)

        if rejected:
            raise ServiceUnavailable(self.name)

        try:
            result = operation()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        with self._lock:
            transition = None
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    transition = self._transition(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0
            snapshot = self._snapshot() if transition else None
        self._after_transition(transition, snapshot)

    def record_failure(self) -> None:
        with self._lock:
            transition = None
            self._failure_count += 1
            self._last_failure_time = self.clock()

            if self._state == CircuitState.HALF_OPEN:
                transition = self._transition(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                transition = self._transition(CircuitState.OPEN)
            snapshot = self._snapshot() if transition else None
        self._after_transition(transition, snapshot)

    def reset(self) -> None:
        """Force the circuit closed (operator action after a confirmed recovery)."""
        with self._lock:
            transition = self._transition(CircuitState.CLOSED)
            snapshot = self._snapshot() if transition else None
        self._after_transition(transition, snapshot)

    def trip(self) -> None:
        """Force the circuit open (maintenance). The reset timeout counts from now."""
        with self._lock:
            self._last_failure_time = self.clock()
            transition = self._transition(CircuitState.OPEN)
            snapshot = self._snapshot() if transition else None
        self._after_transition(transition, snapshot)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                **self._snapshot(),
                "failure_threshold": self.failure_threshold,
                "reset_timeout": self.reset_timeout,
                "success_threshold": self.success_threshold,
            }

    def _check_recovery_transition(self) -> Optional[Tuple[str, str]]:
        """
        Move OPEN -> HALF_OPEN once reset_timeout has elapsed since the last failure.

        Must be called while holding self._lock.
        """
        if self._state != CircuitState.OPEN:
            return None
        if self._last_failure_time is None:
            return self._transition(CircuitState.HALF_OPEN)
        elapsed = (self.clock() - self._last_failure_time).total_seconds()
        if elapsed >= self.reset_timeout:
            return self._transition(CircuitState.HALF_OPEN)
        return None

    def _transition(self, new_state: CircuitState) -> Optional[Tuple[str, str]]:
        """Must be called while holding self._lock."""
        if self._state == new_state:
            return None
        old_state = self._state
        self._state = new_state

        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0
        elif new_state == CircuitState.HALF_OPEN:
            # failure_count is kept for the record
            self._success_count = 0

        if new_state == CircuitState.OPEN:
            logger.warning(
                "Circuit opened",
                circuit=self.name,
                from_state=old_state,
                failure_count=self._failure_count,
            )
        else:
            logger.info("Circuit state change", circuit=self.name, from_state=old_state, to_state=new_state)
        return old_state.value, new_state.value

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "last_failure_time": self._last_failure_time,
        }

    def _after_transition(self, transition: Optional[Tuple[str, str]], snapshot: Optional[Dict[str, Any]]) -> None:
        """Persist and notify outside the lock so slow listeners never block callers."""
        if transition is None:
            return
        if self.state_store is not None and snapshot is not None:
            try:
                self.state_store.save(snapshot)
            except Exception as e:
                logger.warning("Failed to persist circuit state", circuit=self.name, error=str(e))
        if self.on_state_change is not None:
            try:
                self.on_state_change(self.name, transition[0], transition[1])
            except Exception as e:
                logger.error("Circuit breaker notification failed", circuit=self.name, error=str(e))


class CircuitRegistry:
    """
    One breaker per named dependency.

    Built by the composition root and passed by reference; there is no
    module-level instance, so tests get a fresh registry each time.
    """

    def __init__(
        self,
        clock: Clock = utc_now,
        on_state_change: Optional[StateChangeCallback] = None,
        state_store: Optional[CircuitStateStore] = None,
    ):
        self.clock = clock
        self.on_state_change = on_state_change
        self.state_store = state_store
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    def get(self, name: str, **kwargs) -> CircuitBreaker:
        """Return the breaker for `name`, creating it with `kwargs` on first use."""
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name=name,
                    clock=self.clock,
                    on_state_change=self.on_state_change,
                    state_store=self.state_store,
                    **kwargs,
                )
                self._breakers[name] = breaker
            return breaker

    def execute(self, name: str, operation: Callable[[], T]) -> T:
        return self.get(name).execute(operation)

    def __contains__(self, name: str) -> bool:
        return name in self._breakers

    def names(self) -> List[str]:
        return sorted(self._breakers)

    def get_all_states(self) -> Dict[str, str]:
        return {name: cb.state.value for name, cb in self._breakers.items()}

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: cb.stats() for name, cb in self._breakers.items()}

    def health(self) -> Dict[str, Any]:
        """Aggregate health: any open circuit is critical, any probing circuit is a warning."""
        states = self.get_all_states()
        open_circuits = sorted(name for name, state in states.items() if state == CircuitState.OPEN.value)
        half_open = sorted(name for name, state in states.items() if state == CircuitState.HALF_OPEN.value)
        closed = sorted(name for name, state in states.items() if state == CircuitState.CLOSED.value)

        status = "ok"
        if open_circuits:
            status = "critical"
        elif half_open:
            status = "warning"

        return {
            "status": status,
            "open_circuits": open_circuits,
            "half_open_circuits": half_open,
            "closed_circuits": closed,
            "total_circuits": len(states),
        }
