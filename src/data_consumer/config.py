from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from .types import RunStats, StateMap


ProceedHook = Callable[[Any, RunStats, "int | None"], bool]
ErrorHook = Callable[[str], None]


@dataclass(frozen=True, slots=True)
class QuotaConfig:
    max_passes: int | None = None
    max_processed: int | None = None
    max_failed: int | None = None
    max_elapsed: float | None = None
    proceed: ProceedHook | None = None

    def exceeded(self, stats: RunStats, pass_number: int | None = None) -> str | None:
        """Name of the first ceiling ``stats`` has reached, or None."""
        completed = pass_number if pass_number is not None else stats.passes - 1
        if self.max_elapsed and stats.elapsed >= self.max_elapsed:
            return "max_elapsed"
        if self.max_passes and completed >= self.max_passes:
            return "max_passes"
        if self.max_processed and stats.processed >= self.max_processed:
            return "max_processed"
        if self.max_failed and stats.failed >= self.max_failed:
            return "max_failed"
        return None


@dataclass(frozen=True, slots=True)
class ConsumerConfig:
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    sweep: bool | None = None
    on_error: ErrorHook | None = None


def derive_sweep_states(states: StateMap) -> StateMap:
    # items stuck in working become the backlog, recovering them files them as failed
    return StateMap(
        unprocessed=states.working,
        working=None,
        processed=states.failed,
        failed=states.failed,
    )


def derive_sweep_config(config: ConsumerConfig) -> ConsumerConfig:
    return ConsumerConfig(
        quota=QuotaConfig(max_passes=1),
        sweep=False,
        on_error=config.on_error,
    )
