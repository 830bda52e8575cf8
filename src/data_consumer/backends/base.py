from __future__ import annotations

import logging
from typing import Any, Hashable, Iterable, Protocol

from ..errors import BackendError
from ..types import Delegate, StateMap, check_state

logger = logging.getLogger(__name__)


class Backend(Protocol):
    states: StateMap
    init_id: Any
    last_id: Any
    custom_templates: bool
    recovers_abandoned_claims: bool

    def reset(self) -> "Backend":
        ...

    def acquire(self) -> Hashable | None:
        ...

    def release(self) -> bool:
        ...

    def mark_as(self, state: str, item_id: Hashable) -> bool:
        ...

    def counts(self) -> dict[str, int]:
        ...

    def derive(self, states: StateMap) -> "Backend":
        ...

    def close(self) -> None:
        ...


class BaseBackend:
    """Cursor, state and ignore-list bookkeeping shared by the concrete backends.

    Subclasses implement ``acquire``, ``release``, ``_mark_as``, ``counts``
    and ``derive``.
    """

    recovers_abandoned_claims = True

    def __init__(
        self,
        *,
        states: StateMap,
        init_id: Any = None,
        ignore: Iterable[Hashable] = (),
        custom_templates: bool = False,
    ):
        self.states = states
        self.init_id = init_id
        self.cursor = init_id
        self.last_id = None
        self.ignored = frozenset(ignore)
        self.custom_templates = custom_templates

    def reset(self) -> BaseBackend:
        logger.debug("%s reset", type(self).__name__)
        self.release()
        self.cursor = self.init_id
        return self

    def is_ignored(self, item_id: Hashable) -> bool:
        return item_id in self.ignored

    def acquire(self) -> Hashable | None:
        raise NotImplementedError

    def release(self) -> bool:
        raise NotImplementedError

    def mark_as(self, state: str, item_id: Hashable) -> bool:
        check_state(state)
        value = self.states.get(state)
        if value is None:
            return False
        if isinstance(value, Delegate):
            raise BackendError("mark_as", (state, item_id), "state is bound to a delegate, not a stored value")
        logger.debug("marking %r as %r (%r)", item_id, state, value.value)
        self._mark_as(state, value.value, item_id)
        return True

    def _mark_as(self, state: str, native: Any, item_id: Hashable) -> None:
        raise NotImplementedError

    def counts(self) -> dict[str, int]:
        raise NotImplementedError

    def derive(self, states: StateMap) -> BaseBackend:
        raise NotImplementedError

    def close(self) -> None:
        self.release()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __del__(self):
        # never raise from a finalizer; close() is the checked path
        if getattr(self, "states", None) is not None:
            try:
                self.release()
            except Exception:
                logger.debug("release during finalization failed", exc_info=True)
