from __future__ import annotations

import logging
import os
from collections import deque
from pathlib import Path
from typing import Iterable

from ..errors import BackendError, ConfigurationError
from ..locking import FileLock
from ..types import STATES, Constant, StateMap
from .base import BaseBackend

logger = logging.getLogger(__name__)


class DirectoryBackend(BaseBackend):
    """Items are files; a file's state is the directory it sits in.

    A claim is a non-blocking ``flock`` on the file inside the unprocessed
    directory. Marking an item moves it to the directory of the new state,
    the lock travels with the open descriptor.
    """

    def __init__(
        self,
        root: str | Path | None = None,
        *,
        unprocessed: str | Path | None = None,
        working: str | Path | None = None,
        processed: str | Path | None = None,
        failed: str | Path | None = None,
        create: bool = False,
        create_mode: int | None = None,
        init_id: str = "",
        ignore: Iterable[str] = (),
        states: StateMap | None = None,
    ):
        explicit = {
            "unprocessed": unprocessed,
            "working": working,
            "processed": processed,
            "failed": failed,
        }
        if states is None:
            if root is not None:
                root_path = Path(root)
                for name in STATES:
                    explicit[name] = explicit[name] or root_path / name
            states = StateMap.build(**{k: Path(v) if isinstance(v, str) else v for k, v in explicit.items()})
            custom = any(v is not None for v in (unprocessed, working, processed, failed))
        else:
            custom = False

        if not isinstance(states.unprocessed, Constant) or states.processed is None:
            raise ConfigurationError("Arguments 'unprocessed' and 'processed' are mandatory")

        super().__init__(states=states, init_id=init_id, ignore=ignore, custom_templates=custom)
        self.root = Path(root) if root is not None else None
        self.create = create
        self.create_mode = create_mode

        if create:
            for folder in self.state_dirs().values():
                if create_mode is None:
                    folder.mkdir(parents=True, exist_ok=True)
                else:
                    folder.mkdir(mode=create_mode, parents=True, exist_ok=True)
        for name, folder in self.state_dirs().items():
            if not folder.is_dir():
                raise ConfigurationError(f"Directory for {name!r} does not exist: {folder}")

        self._pending: deque[str] | None = None
        self._lock: FileLock | None = None

    @property
    def unprocessed_dir(self) -> Path:
        return Path(self.states.constant("unprocessed"))

    def state_dirs(self) -> dict[str, Path]:
        return {name: Path(value) for name, value in self.states.constants().items()}

    def reset(self) -> DirectoryBackend:
        super().reset()
        try:
            with os.scandir(self.unprocessed_dir) as it:
                names = sorted(
                    entry.name
                    for entry in it
                    if entry.is_file() and not entry.name.startswith(".") and entry.name > self.init_id
                )
        except OSError as exc:
            raise BackendError("reset", (str(self.unprocessed_dir),), exc) from exc
        self._pending = deque(names)
        return self

    def acquire(self) -> str | None:
        if self._pending is None:
            self.reset()
        self.release()
        while self._pending:
            name = self._pending.popleft()
            if name <= self.cursor:
                continue
            self.cursor = name
            if self.is_ignored(name):
                continue
            try:
                lock = FileLock.try_acquire(self.unprocessed_dir / name)
            except OSError as exc:
                raise BackendError("acquire", (name,), exc) from exc
            if lock is None:
                logger.debug("lost race on %r", name)
                continue
            self._lock = lock
            self.last_id = name
            logger.debug("acquired %r", name)
            return name
        logger.debug("acquire failed -- resource has been exhausted")
        return None

    def release(self) -> bool:
        lock, self._lock = getattr(self, "_lock", None), None
        if lock is None:
            return False
        try:
            released = lock.release()
        except OSError as exc:
            raise BackendError("release", (str(lock.path),), exc) from exc
        logger.debug("released lock on %s", lock.path)
        return released

    def _locate(self, item_id: str) -> Path | None:
        if self._lock is not None and self._lock.path.name == item_id:
            return self._lock.path
        for folder in self.state_dirs().values():
            candidate = folder / item_id
            if candidate.is_file():
                return candidate
        return None

    def _mark_as(self, state: str, native, item_id: str) -> None:
        source = self._locate(item_id)
        if source is None:
            raise BackendError("mark_as", (state, item_id), "no such item")
        target = Path(native) / item_id
        if source == target:
            return
        try:
            os.replace(source, target)
        except OSError as exc:
            raise BackendError("mark_as", (state, item_id), exc) from exc
        if self._lock is not None and self._lock.path == source:
            self._lock.moved_to(target)

    def counts(self) -> dict[str, int]:
        totals = {}
        for name, folder in self.state_dirs().items():
            try:
                with os.scandir(folder) as it:
                    entries = list(it)
            except OSError as exc:
                raise BackendError("counts", (str(folder),), exc) from exc
            totals[name] = sum(1 for entry in entries if entry.is_file() and not entry.name.startswith("."))
        return totals

    def derive(self, states: StateMap) -> DirectoryBackend:
        return DirectoryBackend(self.root, states=states, init_id=self.init_id, ignore=self.ignored)
