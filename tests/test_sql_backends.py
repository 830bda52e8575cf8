from __future__ import annotations

import tempfile
import threading
import time
import unittest
from pathlib import Path

from sqlalchemy import create_engine, event, text

from data_consumer import (
    AdvisoryLockBackend,
    ConditionalUpdateBackend,
    Consumer,
    ConsumerConfig,
    ConsumerError,
    QuotaConfig,
)
from data_consumer.errors import ConfigurationError

UNPROCESSED, WORKING, PROCESSED, FAILED = 0, 1, 2, 3
STATES = {"unprocessed": UNPROCESSED, "working": WORKING, "processed": PROCESSED, "failed": FAILED}

# MySQL style named locks for SQLite, owned by the DB-API connection that took them
LOCK_SQL = {"lock_sql": "SELECT GET_LOCK(:lock_name, 0)", "release_sql": "SELECT RELEASE_LOCK(:lock_name)"}
_locks: dict[str, int] = {}
_locks_guard = threading.Lock()


def _install_lock_functions(dbapi_connection, connection_record):
    owner = id(dbapi_connection)

    def get_lock(name, timeout):
        with _locks_guard:
            if _locks.get(name, owner) != owner:
                return 0
            _locks[name] = owner
            return 1

    def release_lock(name):
        with _locks_guard:
            if name not in _locks:
                return None
            if _locks[name] != owner:
                return 0
            del _locks[name]
            return 1

    dbapi_connection.create_function("GET_LOCK", 2, get_lock)
    dbapi_connection.create_function("RELEASE_LOCK", 1, release_lock)


class SqlTestCase(unittest.TestCase):
    rows = 5

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        path = Path(self.tmp.name) / "jobs.db"
        self.engine = create_engine(f"sqlite:///{path}", connect_args={"timeout": 30})
        event.listen(self.engine, "connect", _install_lock_functions)
        with self.engine.begin() as conn:
            conn.execute(text("CREATE TABLE jobs (id INTEGER PRIMARY KEY, process_state INTEGER)"))
            for i in range(1, self.rows + 1):
                conn.execute(text("INSERT INTO jobs (id, process_state) VALUES (:id, 0)"), {"id": i})
        self.backends = []

    def tearDown(self):
        for backend in self.backends:
            backend.close()
        self.engine.dispose()
        with _locks_guard:
            _locks.clear()
        self.tmp.cleanup()

    def states(self) -> dict[int, int]:
        with self.engine.connect() as conn:
            return dict(conn.execute(text("SELECT id, process_state FROM jobs ORDER BY id")).all())

    def set_state(self, item_id: int, value: int | None) -> None:
        with self.engine.begin() as conn:
            conn.execute(text("UPDATE jobs SET process_state = :v WHERE id = :id"), {"v": value, "id": item_id})

    def conditional(self, **options) -> ConditionalUpdateBackend:
        backend = ConditionalUpdateBackend(self.engine, table="jobs", **{**STATES, **options})
        self.backends.append(backend)
        return backend

    def advisory(self, **options) -> AdvisoryLockBackend:
        settings = {**STATES, **LOCK_SQL}
        settings.update(options)
        backend = AdvisoryLockBackend(self.engine, table="jobs", **settings)
        self.backends.append(backend)
        return backend


class ConditionalUpdateBackendTests(SqlTestCase):
    def test_all_items_processed(self):
        backend = self.conditional()
        stats = Consumer(backend).consume(lambda item_id, consumer: None)

        self.assertEqual((stats.processed, stats.failed), (5, 0))
        self.assertEqual(set(self.states().values()), {PROCESSED})
        self.assertEqual(backend.last_id, 5)

    def test_callback_failure_on_one_item(self):
        errors = []

        def callback(item_id, consumer):
            if item_id == 3:
                raise ValueError("cannot handle 3")

        stats = Consumer(self.conditional(), ConsumerConfig(on_error=errors.append)).consume(callback)

        self.assertEqual((stats.processed, stats.failed), (4, 1))
        self.assertEqual(self.states()[3], FAILED)
        self.assertEqual(len(errors), 1)
        self.assertIn("3", errors[0])

    def test_default_error_hook_aborts(self):
        def callback(item_id, consumer):
            if item_id == 2:
                raise ValueError("stop here")

        with self.assertRaises(ConsumerError):
            Consumer(self.conditional()).consume(callback)
        self.assertEqual(self.states(), {1: PROCESSED, 2: FAILED, 3: 0, 4: 0, 5: 0})

    def test_zero_row_update_is_reported(self):
        errors = []

        def callback(item_id, consumer):
            with self.engine.begin() as conn:
                conn.execute(text("DELETE FROM jobs WHERE id = :id"), {"id": item_id})

        consumer = Consumer(self.conditional(), ConsumerConfig(on_error=errors.append, quota=QuotaConfig(max_passes=1)))
        consumer.consume(callback)
        self.assertEqual(len(errors), 5)
        self.assertIn("0 records", errors[0])

    def test_lost_race_skips_to_next_row(self):
        # select every row so the claim itself has to lose on row 1
        backend = self.conditional(select_sql="SELECT id FROM jobs WHERE id > :cursor ORDER BY id LIMIT 1")
        backend.reset()
        self.set_state(1, WORKING)
        self.assertEqual(backend.acquire(), 2)
        self.assertEqual(self.states()[2], WORKING)

    def test_release_is_idempotent(self):
        backend = self.conditional()
        self.assertFalse(backend.release())
        backend.reset()
        backend.acquire()
        self.assertTrue(backend.release())
        self.assertFalse(backend.release())
        self.assertFalse(backend.release())

    def test_sweep_is_off_and_cannot_be_forced(self):
        backend = self.conditional()
        self.assertFalse(Consumer(backend).sweep_enabled)
        with self.assertRaises(ConfigurationError):
            Consumer(backend, ConsumerConfig(sweep=True))

    def test_working_state_is_required(self):
        with self.assertRaises(ConfigurationError):
            ConditionalUpdateBackend(self.engine, table="jobs", unprocessed=0, processed=2)

    def test_invalid_identifier_is_rejected(self):
        with self.assertRaises(ConfigurationError):
            ConditionalUpdateBackend(self.engine, table="jobs; DROP TABLE jobs", **STATES)

    def test_ignored_rows_are_never_claimed(self):
        seen = []
        Consumer(self.conditional(ignore={2, 4})).consume(lambda item_id, consumer: seen.append(item_id))
        self.assertEqual(seen, [1, 3, 5])

    def test_counts(self):
        self.set_state(1, PROCESSED)
        self.set_state(2, FAILED)
        self.assertEqual(
            self.conditional().counts(),
            {"unprocessed": 3, "working": 0, "processed": 1, "failed": 1},
        )

    def test_url_bind_owns_its_engine(self):
        url = str(self.engine.url)
        backend = ConditionalUpdateBackend(url, table="jobs", **STATES)
        try:
            backend.reset()
            self.assertEqual(backend.acquire(), 1)
        finally:
            backend.close()


class ConditionalUpdateQuotaTests(SqlTestCase):
    rows = 10

    def test_max_processed(self):
        config = ConsumerConfig(quota=QuotaConfig(max_processed=3))
        stats = Consumer(self.conditional(), config).consume(lambda item_id, consumer: None)
        self.assertEqual(stats.processed, 3)
        self.assertEqual(list(self.states().values()).count(PROCESSED), 3)

    def test_max_failed(self):
        def callback(item_id, consumer):
            raise RuntimeError("always")

        config = ConsumerConfig(quota=QuotaConfig(max_failed=2), on_error=lambda message: None)
        stats = Consumer(self.conditional(), config).consume(callback)
        self.assertEqual((stats.processed, stats.failed), (0, 2))

    def test_proceed_hook_runs_before_ceilings(self):
        calls = []

        def proceed(consumer, stats, pass_number):
            calls.append(pass_number)
            return stats.processed < 4

        config = ConsumerConfig(quota=QuotaConfig(max_processed=8, proceed=proceed))
        stats = Consumer(self.conditional(), config).consume(lambda item_id, consumer: None)
        self.assertEqual(stats.processed, 4)
        self.assertEqual(calls[-1], 1)

    def test_max_elapsed(self):
        config = ConsumerConfig(quota=QuotaConfig(max_elapsed=0.05))
        stats = Consumer(self.conditional(), config).consume(lambda item_id, consumer: time.sleep(0.03))
        self.assertLess(stats.processed, 10)
        self.assertGreaterEqual(stats.processed, 1)

    def test_new_pass_only_after_progress(self):
        stats = Consumer(self.conditional()).consume(lambda item_id, consumer: None)
        self.assertEqual(stats.passes, 2)
        self.assertEqual(stats.history, [(10, 0), (0, 0)])

    def test_concurrent_consumers_claim_each_row_once(self):
        claimed = []
        holders: dict[int, int] = {}
        overlaps = []
        lock = threading.Lock()

        def callback(item_id, consumer):
            with lock:
                holders[item_id] = holders.get(item_id, 0) + 1
                if holders[item_id] > 1:
                    overlaps.append(item_id)
                claimed.append(item_id)
            time.sleep(0.001)
            with lock:
                holders[item_id] -= 1

        def worker():
            backend = ConditionalUpdateBackend(self.engine, table="jobs", **STATES)
            with Consumer(backend) as consumer:
                consumer.consume(callback)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(overlaps, [])
        self.assertEqual(sorted(claimed), list(range(1, 11)))
        self.assertEqual(set(self.states().values()), {PROCESSED})


class AdvisoryLockBackendTests(SqlTestCase):
    def test_all_items_processed_and_locks_released(self):
        backend = self.advisory()
        stats = Consumer(backend).consume(lambda item_id, consumer: None)
        self.assertEqual(stats.processed, 5)
        self.assertEqual(set(self.states().values()), {PROCESSED})
        self.assertEqual(_locks, {})

    def test_lock_is_held_during_callback(self):
        backend = self.advisory()
        held = []

        def callback(item_id, consumer):
            held.append(backend.lock_name(item_id) in _locks)

        Consumer(backend).consume(callback)
        self.assertEqual(held, [True] * 5)

    def test_locked_row_is_skipped(self):
        other = self.engine.connect()
        try:
            other.execute(text("SELECT GET_LOCK('data_consumer:jobs=1', 0)"))
            backend = self.advisory()
            backend.reset()
            self.assertEqual(backend.acquire(), 2)
            backend.release()
        finally:
            other.close()

    def test_dialect_without_defaults_needs_lock_statements(self):
        with self.assertRaises(ConfigurationError):
            AdvisoryLockBackend(self.engine, table="jobs", **STATES)

    def test_sweep_recovers_abandoned_row(self):
        self.set_state(2, WORKING)
        seen = []
        consumer = Consumer(self.advisory(), ConsumerConfig(sweep=True))

        stats = consumer.consume(lambda item_id, consumer: seen.append(item_id))

        self.assertNotIn(2, seen)
        self.assertEqual(stats.swept, 1)
        self.assertEqual(self.states()[2], FAILED)

    def test_sweep_skips_row_locked_by_live_worker(self):
        self.set_state(2, WORKING)
        other = self.engine.connect()
        try:
            other.execute(text("SELECT GET_LOCK('data_consumer:jobs=2', 0)"))
            stats = Consumer(self.advisory(), ConsumerConfig(sweep=True)).consume(lambda item_id, consumer: None)
        finally:
            other.close()
        self.assertEqual(stats.swept, 0)
        self.assertEqual(self.states()[2], WORKING)

    def test_custom_statements_disable_default_sweep(self):
        self.assertTrue(self.advisory().custom_templates)
        self.assertFalse(Consumer(self.advisory()).sweep_enabled)

    def test_candidates_without_unprocessed_state(self):
        self.set_state(1, None)
        self.set_state(3, PROCESSED)
        seen = []
        backend = self.advisory(unprocessed=None, working=None)
        Consumer(backend).consume(lambda item_id, consumer: seen.append(item_id))
        self.assertEqual(seen, [1, 2, 4, 5])

    def test_delegate_state_replaces_the_update(self):
        marked = []
        backend = self.advisory(failed=lambda consumer, state, item_id: marked.append((state, item_id)))

        def callback(item_id, consumer):
            if item_id == 4:
                raise RuntimeError("nope")

        stats = Consumer(backend, ConsumerConfig(on_error=lambda message: None)).consume(callback)
        self.assertEqual(stats.failed, 1)
        self.assertEqual(marked, [("failed", 4)])
        self.assertEqual(self.states()[4], WORKING)


class AdvisoryLockConcurrencyTests(SqlTestCase):
    rows = 30

    def test_concurrent_consumers_claim_each_row_once(self):
        claimed = []
        holders: dict[int, int] = {}
        overlaps = []
        lock = threading.Lock()

        def callback(item_id, consumer):
            with lock:
                holders[item_id] = holders.get(item_id, 0) + 1
                if holders[item_id] > 1:
                    overlaps.append(item_id)
                claimed.append(item_id)
            time.sleep(0.002)
            with lock:
                holders[item_id] -= 1

        def worker():
            backend = AdvisoryLockBackend(self.engine, table="jobs", **STATES, **LOCK_SQL)
            with Consumer(backend) as consumer:
                consumer.consume(callback)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(overlaps, [])
        self.assertEqual(sorted(claimed), list(range(1, 31)))
        self.assertEqual(set(self.states().values()), {PROCESSED})
        self.assertEqual(_locks, {})


if __name__ == "__main__":
    unittest.main()
