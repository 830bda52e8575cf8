from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Union


UTC = timezone.utc

UNPROCESSED = "unprocessed"
WORKING = "working"
PROCESSED = "processed"
FAILED = "failed"

STATES = (UNPROCESSED, WORKING, PROCESSED, FAILED)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def check_state(state: str) -> str:
    if state not in STATES:
        valid = ", ".join(repr(s) for s in STATES)
        raise ValueError(f"Unknown state {state!r}, valid options are {valid}")
    return state


@dataclass(frozen=True, slots=True)
class Constant:
    """A resource-native value a backend writes for a state."""

    value: Any


@dataclass(frozen=True, slots=True)
class Delegate:
    """A function called as ``func(consumer, state, item_id)`` instead of a backend write."""

    func: Callable[[Any, str, Any], None]


StateValue = Union[Constant, Delegate]


def coerce_state_value(raw: Any) -> StateValue | None:
    if raw is None or isinstance(raw, (Constant, Delegate)):
        return raw
    if callable(raw):
        return Delegate(raw)
    return Constant(raw)


@dataclass(frozen=True, slots=True)
class StateMap:
    unprocessed: StateValue | None = None
    working: StateValue | None = None
    processed: StateValue | None = None
    failed: StateValue | None = None

    @classmethod
    def build(cls, **values: Any) -> "StateMap":
        for name in values:
            check_state(name)
        return cls(**{name: coerce_state_value(raw) for name, raw in values.items()})

    def get(self, state: str) -> StateValue | None:
        return getattr(self, check_state(state))

    def is_configured(self, state: str) -> bool:
        return self.get(state) is not None

    def constant(self, state: str) -> Any:
        value = self.get(state)
        if isinstance(value, Constant):
            return value.value
        return None

    def constants(self) -> dict[str, Any]:
        return {state: self.constant(state) for state in STATES if isinstance(self.get(state), Constant)}


@dataclass(slots=True)
class RunStats:
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    passes: int = 0
    processed: int = 0
    failed: int = 0
    processed_this_pass: int = 0
    failed_this_pass: int = 0
    swept: int = 0
    history: list[tuple[int, int]] = field(default_factory=list)
    _started: float = field(default_factory=time.monotonic, repr=False)
    _elapsed: float | None = field(default=None, repr=False)

    @property
    def elapsed(self) -> float:
        if self._elapsed is not None:
            return self._elapsed
        return time.monotonic() - self._started

    def begin_pass(self) -> int:
        self.passes += 1
        self.processed_this_pass = 0
        self.failed_this_pass = 0
        return self.passes

    def end_pass(self) -> None:
        self.history.append((self.processed_this_pass, self.failed_this_pass))

    def record(self, ok: bool) -> None:
        if ok:
            self.processed += 1
            self.processed_this_pass += 1
        else:
            self.failed += 1
            self.failed_this_pass += 1

    def finish(self) -> None:
        self._elapsed = time.monotonic() - self._started
        self.finished_at = utc_now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "elapsed": round(self.elapsed, 3),
            "passes": self.passes,
            "processed": self.processed,
            "failed": self.failed,
            "swept": self.swept,
            "history": [{"processed": p, "failed": f} for p, f in self.history],
        }
