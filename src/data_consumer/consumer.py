from __future__ import annotations

import logging
from typing import Any, Callable, Hashable

from .backends.base import Backend
from .config import ConsumerConfig, derive_sweep_config, derive_sweep_states
from .errors import BackendError, ConfigurationError, ConsumerError
from .logging_setup import ctx_item_id, ctx_pass
from .types import FAILED, PROCESSED, WORKING, Delegate, RunStats, check_state

logger = logging.getLogger(__name__)

Callback = Callable[[Hashable, "Consumer"], Any]


def _recover(item_id: Hashable, consumer: "Consumer") -> None:
    # the state transition made around this call is the whole recovery
    return None


class Consumer:
    """Repeatedly claims items from a backend and runs a callback on each.

    Any number of consumers may share one backend resource; the backend's
    lock guarantees a given item is claimed by at most one of them.
    """

    def __init__(self, backend: Backend, config: ConsumerConfig | None = None):
        self.backend = backend
        self.config = config or ConsumerConfig()
        self.stats: RunStats | None = None
        self._sweeper: Consumer | None = None

        states = backend.states
        if self.config.sweep and not backend.recovers_abandoned_claims:
            raise ConfigurationError(f"{type(backend).__name__} cannot recover abandoned claims, sweep must be off")
        if self.config.sweep is None:
            self.sweep_enabled = (
                states.is_configured(WORKING)
                and states.is_configured(FAILED)
                and not backend.custom_templates
                and backend.recovers_abandoned_claims
            )
        else:
            self.sweep_enabled = (
                bool(self.config.sweep) and states.is_configured(WORKING) and states.is_configured(FAILED)
            )

    @property
    def last_id(self) -> Hashable | None:
        return self.backend.last_id

    def error(self, message: str) -> None:
        if self.config.on_error is None:
            raise ConsumerError(message)
        logger.warning("%s", message)
        self.config.on_error(message)

    def mark_as(self, state: str, item_id: Hashable | None = None) -> bool:
        check_state(state)
        if item_id is None:
            item_id = self.last_id
        if item_id is None:
            raise ConsumerError(f"Nothing acquired to be marked as {state!r}")
        value = self.backend.states.get(state)
        if value is None:
            return False
        if isinstance(value, Delegate):
            logger.debug("executing mark_as delegate for %r", state)
            try:
                value.func(self, state, item_id)
            except Exception as exc:
                self.error(f"Failed to mark {item_id!r} as {state!r}: {exc!r}")
                return False
            return True
        try:
            return self.backend.mark_as(state, item_id)
        except BackendError as exc:
            self.error(f"Failed to mark {item_id!r} as {state!r}: {exc}")
            return False

    def release(self) -> bool:
        try:
            return self.backend.release()
        except BackendError as exc:
            self.error(f"Failed to release lock: {exc}")
            return False

    def reset(self) -> None:
        try:
            self.backend.reset()
        except BackendError as exc:
            self.error(f"Failed to reset: {exc}")

    def acquire(self) -> Hashable | None:
        try:
            return self.backend.acquire()
        except BackendError as exc:
            self.error(f"Failed to acquire an item: {exc}")
            return None

    def process(self, item_id: Hashable, callback: Callback) -> bool:
        """Run ``callback`` on a claimed item and record the outcome.

        Returns True if the item was processed, False if it failed. The
        claim is released whatever happens.
        """
        token = ctx_item_id.set(item_id)
        try:
            self.mark_as(WORKING, item_id)
            try:
                callback(item_id, self)
            except Exception as exc:
                self.mark_as(FAILED, item_id)
                self._record(False)
                self.error(f"Callback failed for item {item_id!r}: {exc!r}")
                return False
            self.mark_as(PROCESSED, item_id)
            self._record(True)
            return True
        finally:
            self.release()
            ctx_item_id.reset(token)

    def _record(self, ok: bool) -> None:
        if self.stats is not None:
            self.stats.record(ok)

    def proceed(self, pass_number: int | None = None) -> bool:
        stats = self.stats
        if stats is None:
            return True
        quota = self.config.quota
        if quota.proceed is not None and not quota.proceed(self, stats, pass_number):
            logger.debug("proceed hook asked to stop")
            return False
        ceiling = quota.exceeded(stats, pass_number)
        if ceiling is not None:
            logger.debug("stopping, %s reached", ceiling)
            return False
        return True

    def sweeper(self) -> Consumer | None:
        if not self.sweep_enabled:
            return None
        if self._sweeper is None:
            backend = self.backend.derive(derive_sweep_states(self.backend.states))
            self._sweeper = Consumer(backend, derive_sweep_config(self.config))
        return self._sweeper

    def sweep(self) -> RunStats | None:
        sweeper = self.sweeper()
        if sweeper is None:
            return None
        stats = sweeper.consume(_recover)
        if stats.processed:
            logger.info("sweep recovered %d abandoned item(s)", stats.processed)
        if self.stats is not None:
            self.stats.swept += stats.processed
        return stats

    def consume(self, callback: Callback) -> RunStats:
        self.stats = stats = RunStats()
        try:
            while True:
                pass_number = stats.begin_pass()
                token = ctx_pass.set(pass_number)
                try:
                    self.reset()
                    while self.proceed():
                        item_id = self.acquire()
                        if item_id is None:
                            break
                        self.process(item_id, callback)
                    self.sweep()
                finally:
                    stats.end_pass()
                    ctx_pass.reset(token)
                if not self.proceed(pass_number) or not stats.processed_this_pass:
                    break
        finally:
            self.release()
            stats.finish()
        logger.info(
            "consumed %d item(s), %d failed, in %d pass(es)",
            stats.processed,
            stats.failed,
            stats.passes,
        )
        return stats

    def close(self) -> None:
        try:
            self.backend.close()
        finally:
            if self._sweeper is not None:
                self._sweeper.backend.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
