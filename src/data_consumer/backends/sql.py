from __future__ import annotations

import logging
import re
from typing import Any, Hashable, Iterable

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from ..errors import BackendError, ConfigurationError
from ..types import Constant, StateMap
from .base import BaseBackend

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

# (lock_sql, release_sql) keyed by SQLAlchemy dialect name
ADVISORY_LOCK_SQL = {
    "mysql": ("SELECT GET_LOCK(:lock_name, 0)", "SELECT RELEASE_LOCK(:lock_name)"),
    "mariadb": ("SELECT GET_LOCK(:lock_name, 0)", "SELECT RELEASE_LOCK(:lock_name)"),
    "postgresql": (
        "SELECT pg_try_advisory_lock(hashtext(:lock_name))",
        "SELECT pg_advisory_unlock(hashtext(:lock_name))",
    ),
}


def _identifier(name: str, option: str) -> str:
    if not name or not _IDENTIFIER.match(name):
        raise ConfigurationError(f"Option {option!r} is not a valid SQL identifier: {name!r}")
    return name


def _safe_url(url: str) -> str:
    if "@" not in url or "://" not in url:
        return url
    scheme, rest = url.split("://", 1)
    return f"{scheme}://***@{rest.rsplit('@', 1)[1]}"


class SqlBackend(BaseBackend):
    """Rows of one table; a row's state is the value of its flag column.

    ``bind`` may be an SQLAlchemy Engine, a Connection or a database URL.
    Statements run on one dedicated connection in autocommit mode, since
    session-scoped locks must be taken and released on the same session.
    """

    template_options: tuple[str, ...] = ("select_sql", "update_sql")

    def __init__(
        self,
        bind: Engine | Connection | str,
        *,
        table: str | None = None,
        id_field: str = "id",
        flag_field: str = "process_state",
        unprocessed: Any = None,
        working: Any = None,
        processed: Any = None,
        failed: Any = None,
        init_id: Any = 0,
        ignore: Iterable[Hashable] = (),
        states: StateMap | None = None,
        **templates: str | None,
    ):
        unknown = set(templates) - set(self.template_options)
        if unknown:
            raise TypeError(f"Unexpected options for {type(self).__name__}: {', '.join(sorted(unknown))}")
        if states is None:
            states = StateMap.build(
                unprocessed=unprocessed,
                working=working,
                processed=processed,
                failed=failed,
            )
        self.templates = {name: value for name, value in templates.items() if value}
        super().__init__(
            states=states,
            init_id=init_id,
            ignore=ignore,
            custom_templates=bool(self.templates),
        )
        self.table = _identifier(table, "table") if table is not None else None
        self.id_field = _identifier(id_field, "id_field")
        self.flag_field = _identifier(flag_field, "flag_field")
        if self.table is None and not set(self.template_options) <= set(self.templates):
            raise ConfigurationError("Option 'table' is mandatory unless every SQL template is supplied")

        self._bind = bind
        self._engine: Engine | None = None
        self._owns_connection = not isinstance(bind, Connection)
        if isinstance(bind, str):
            try:
                self._engine = create_engine(bind)
            except (SQLAlchemyError, ImportError) as exc:
                raise ConfigurationError(f"Could not create engine for {_safe_url(bind)!r}: {exc}") from exc
            bind = self._engine
        if isinstance(bind, Engine):
            try:
                connection = bind.connect()
            except SQLAlchemyError as exc:
                raise ConfigurationError(f"Could not connect to {bind.url!r}: {exc}") from exc
        elif isinstance(bind, Connection):
            connection = bind
        else:
            raise ConfigurationError(f"Must have a database engine, connection or URL, got {bind!r}")
        if connection.get_execution_options().get("isolation_level") != "AUTOCOMMIT":
            connection = connection.execution_options(isolation_level="AUTOCOMMIT")
        self.connection = connection
        self._state_clause()

    # -- SQL building ------------------------------------------------------

    def _state_clause(self) -> tuple[str, dict[str, Any]]:
        unprocessed = self.states.unprocessed
        if isinstance(unprocessed, Constant):
            return f"{self.flag_field} = :unprocessed", {"unprocessed": unprocessed.value}
        excluded = [
            self.states.constant(name)
            for name in ("processed", "working", "failed")
            if isinstance(self.states.get(name), Constant)
        ]
        if not excluded:
            raise ConfigurationError("Need 'unprocessed' or at least one other stored state to select candidates")
        names = [f"s{i}" for i in range(len(excluded))]
        placeholders = ", ".join(f":{name}" for name in names)
        clause = f"({self.flag_field} IS NULL OR {self.flag_field} NOT IN ({placeholders}))"
        return clause, dict(zip(names, excluded))

    def _template(self, name: str) -> str:
        custom = self.templates.get(name)
        if custom:
            return custom
        return getattr(self, f"_default_{name}")()

    def _default_select_sql(self) -> str:
        clause, _ = self._state_clause()
        return (
            f"SELECT {self.id_field} FROM {self.table} "
            f"WHERE {self.id_field} > :cursor AND {clause} "
            f"ORDER BY {self.id_field} LIMIT 1"
        )

    def _default_update_sql(self) -> str:
        return f"UPDATE {self.table} SET {self.flag_field} = :state WHERE {self.id_field} = :id"

    def _execute(self, operation: str, sql: str, params: dict[str, Any]):
        try:
            return self.connection.execute(text(sql), params)
        except SQLAlchemyError as exc:
            raise BackendError(operation, (sql, params), exc) from exc

    def _next_candidate(self) -> Hashable | None:
        _, params = self._state_clause()
        params["cursor"] = self.cursor
        row = self._execute("acquire", self._template("select_sql"), params).first()
        return None if row is None else row[0]

    # -- contract ------------------------------------------------------------

    def _mark_as(self, state: str, native: Any, item_id: Hashable) -> None:
        result = self._execute("mark_as", self._template("update_sql"), {"state": native, "id": item_id})
        if result.rowcount == 0:
            raise BackendError("mark_as", (state, item_id), "update resulted in 0 records changing")

    def counts(self) -> dict[str, int]:
        if self.table is None:
            raise ConfigurationError("counts() needs the 'table' option")
        by_value = {value: name for name, value in self.states.constants().items()}
        totals = {name: 0 for name in self.states.constants()}
        sql = f"SELECT {self.flag_field}, COUNT(*) FROM {self.table} GROUP BY {self.flag_field}"
        for value, count in self._execute("counts", sql, {}):
            name = by_value.get(value)
            if name is not None:
                totals[name] += count
        return totals

    def _options(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "id_field": self.id_field,
            "flag_field": self.flag_field,
            "init_id": self.init_id,
            "ignore": self.ignored,
            **self.templates,
        }

    def derive(self, states: StateMap) -> SqlBackend:
        return type(self)(self.connection, states=states, **self._options())

    def close(self) -> None:
        try:
            self.release()
        finally:
            if self._owns_connection:
                self.connection.close()
            if self._engine is not None:
                self._engine.dispose()


class AdvisoryLockBackend(SqlBackend):
    """Claims a row by taking a named, session-scoped advisory lock on it.

    The lock dies with the database session, so rows left in ``working``
    by a crashed worker can be told apart from rows still being processed.
    """

    template_options = ("select_sql", "update_sql", "check_sql", "lock_sql", "release_sql")

    def __init__(self, bind: Engine | Connection | str, *, lock_prefix: str | None = None, **options: Any):
        super().__init__(bind, **options)
        self.lock_prefix = lock_prefix or f"data_consumer:{self.table}"
        if not ({"lock_sql", "release_sql"} <= set(self.templates)):
            dialect = self.connection.dialect.name
            if dialect not in ADVISORY_LOCK_SQL:
                self.close()
                raise ConfigurationError(
                    f"No default advisory lock statements for dialect {dialect!r}; supply lock_sql and release_sql"
                )
        self._held: Hashable | None = None
        self._held_name: str | None = None

    def lock_name(self, item_id: Hashable) -> str:
        return f"{self.lock_prefix}={item_id}"

    def _default_lock_sql(self) -> str:
        return ADVISORY_LOCK_SQL[self.connection.dialect.name][0]

    def _default_release_sql(self) -> str:
        return ADVISORY_LOCK_SQL[self.connection.dialect.name][1]

    def _default_check_sql(self) -> str:
        clause, _ = self._state_clause()
        return f"SELECT {self.id_field} FROM {self.table} WHERE {self.id_field} = :id AND {clause}"

    def acquire(self) -> Hashable | None:
        self.release()
        while True:
            item_id = self._next_candidate()
            if item_id is None:
                logger.debug("acquire failed -- resource has been exhausted")
                return None
            self.cursor = item_id
            if self.is_ignored(item_id):
                continue

            lock_name = self.lock_name(item_id)
            got = self._execute("acquire", self._template("lock_sql"), {"lock_name": lock_name}).scalar()
            if not got:
                logger.debug("lost race on %r, lock %r is taken", item_id, lock_name)
                continue
            self._held, self._held_name = item_id, lock_name

            # the holder before us may have finished the row between select and lock
            _, params = self._state_clause()
            params["id"] = item_id
            if self._execute("acquire", self._template("check_sql"), params).first() is None:
                logger.debug("lost race on %r, no longer a candidate", item_id)
                self.release()
                continue

            self.last_id = item_id
            logger.debug("acquired %r", item_id)
            return item_id

    def release(self) -> bool:
        if getattr(self, "_held_name", None) is None:
            return False
        lock_name = self._held_name
        self._held, self._held_name = None, None
        status = self._execute("release", self._template("release_sql"), {"lock_name": lock_name}).scalar()
        logger.debug("release lock %r status: %r", lock_name, status)
        return True

    def _options(self) -> dict[str, Any]:
        return {**super()._options(), "lock_prefix": self.lock_prefix}


class ConditionalUpdateBackend(SqlBackend):
    """Claims a row with ``UPDATE ... WHERE flag = unprocessed AND id = ?``.

    Exactly one worker sees the update affect a row. There is no lock that
    outlives the claim, so a crashed worker's row cannot be recovered
    automatically.
    """

    recovers_abandoned_claims = False
    template_options = ("select_sql", "update_sql", "claim_sql")

    def __init__(self, bind: Engine | Connection | str, **options: Any):
        super().__init__(bind, **options)
        for name in ("unprocessed", "working"):
            if not isinstance(self.states.get(name), Constant):
                self.close()
                raise ConfigurationError(f"Option {name!r} must be a stored value for {type(self).__name__}")
        self._claimed: Hashable | None = None

    def _default_claim_sql(self) -> str:
        return (
            f"UPDATE {self.table} SET {self.flag_field} = :working "
            f"WHERE {self.flag_field} = :unprocessed AND {self.id_field} = :id"
        )

    def acquire(self) -> Hashable | None:
        self.release()
        params = {
            "working": self.states.constant("working"),
            "unprocessed": self.states.constant("unprocessed"),
        }
        while True:
            item_id = self._next_candidate()
            if item_id is None:
                logger.debug("acquire failed -- resource has been exhausted")
                return None
            self.cursor = item_id
            if self.is_ignored(item_id):
                continue
            claimed = self._execute("acquire", self._template("claim_sql"), {**params, "id": item_id}).rowcount
            if claimed != 1:
                logger.debug("failed to claim %r, claim updated %s rows", item_id, claimed)
                continue
            self._claimed = item_id
            self.last_id = item_id
            logger.debug("acquired %r", item_id)
            return item_id

    def release(self) -> bool:
        if getattr(self, "_claimed", None) is None:
            return False
        self._claimed = None
        return True
