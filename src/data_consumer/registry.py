from __future__ import annotations

import functools
import logging
import re
from typing import Any

from .backends import AdvisoryLockBackend, ConditionalUpdateBackend, DirectoryBackend
from .config import ConsumerConfig
from .consumer import Consumer
from .errors import RegistryError

logger = logging.getLogger(__name__)


def standard_name(cls: type) -> str:
    """``ConditionalUpdateBackend`` -> ``conditional-update``."""
    name = cls.__name__
    if name.endswith("Backend") and name != "Backend":
        name = name[: -len("Backend")]
    return re.sub(r"(?<!^)(?=[A-Z])", "-", name).lower()


class BackendRegistry:
    """Case-insensitive alias -> backend class directory.

    Registration is closed by the first lookup, so an alias can never be
    rebound while consumers are being built from it.
    """

    def __init__(self):
        self._aliases: dict[str, type] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> BackendRegistry:
        self._frozen = True
        return self

    def register(self, cls: type, *aliases: str) -> list[str]:
        if self._frozen:
            raise RegistryError(f"Cannot register {cls.__name__!r}, registry is closed after first lookup")
        names = []
        for name in (cls.__name__, standard_name(cls), *aliases):
            name = name.lower()
            if name not in names:
                names.append(name)
        taken = [name for name in names if self._aliases.get(name, cls) is not cls]
        if taken:
            detail = "\n".join(f"\t{name!r} is already assigned to {self._aliases[name].__name__!r}" for name in taken)
            raise RegistryError(f"Failed to register aliases for {cls.__name__!r} as they are already used\n{detail}")
        for name in names:
            logger.debug("registered %r as an alias of %r", name, cls.__name__)
            self._aliases[name] = cls
        return self.aliases_for(cls)

    def lookup(self, alias: str) -> type:
        self._frozen = True
        try:
            return self._aliases[alias.lower()]
        except KeyError:
            raise RegistryError(f"{alias!r} is not a known alias of any registered backend") from None

    def create(self, alias: str, *args: Any, **options: Any):
        return self.lookup(alias)(*args, **options)

    def aliases(self) -> dict[str, type]:
        return dict(sorted(self._aliases.items()))

    def aliases_for(self, cls: type) -> list[str]:
        return sorted(name for name, registered in self._aliases.items() if registered is cls)

    def __contains__(self, alias: str) -> bool:
        return alias.lower() in self._aliases


@functools.lru_cache(maxsize=None)
def default_registry() -> BackendRegistry:
    registry = BackendRegistry()
    registry.register(DirectoryBackend, "dir", "fs")
    registry.register(AdvisoryLockBackend, "sql-lock", "mysql")
    registry.register(ConditionalUpdateBackend, "sql-update")
    return registry.freeze()


def create_consumer(
    backend_type: str,
    *args: Any,
    registry: BackendRegistry | None = None,
    config: ConsumerConfig | None = None,
    **options: Any,
) -> Consumer:
    backend = (registry or default_registry()).create(backend_type, *args, **options)
    return Consumer(backend, config)
