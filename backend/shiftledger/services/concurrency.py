# Overview: Service-layer concurrency primitives: row locks, retries, entity locks and the period gate.

from __future__ import annotations

import threading
import time
from contextlib import ExitStack, contextmanager

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrencyConflict, PeriodBusy
from ..extensions import db


"""
Concurrency Model

- Entity locks: every mutation of one receipt/order/register group runs
  inside an in-process critical section keyed by that entity, so two
  add-items calls on the same receipt never interleave.
- Row locks + version_id: rows are loaded FOR UPDATE where the database
  supports it and carry an optimistic version column; a lost race surfaces
  as StaleDataError and is retried.
- Period gate: ledger operations hold a shared slot on their work period.
  Closing the period takes the exclusive slot, waiting a bounded time for
  in-flight operations to drain.

Lock order is always entity locks (sorted), then period gate, then database.
"""

LOCK_STRIPES = 256

_stripes = [threading.RLock() for _ in range(LOCK_STRIPES)]


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


COMPENSATIONS_KEY = "shiftledger.compensations"


def on_rollback(undo) -> None:
    """
    Register `undo()` to run if the current ledger transaction rolls back.

    For side effects outside the database session (external inventory).
    Registrations are dropped when the operation commits.
    """
    db.session.info.setdefault(COMPENSATIONS_KEY, []).append(undo)


def _clear_compensations() -> list:
    return db.session.info.pop(COMPENSATIONS_KEY, [])


def _rollback():
    """Roll the session back, then undo registered external side effects (newest first)."""
    db.session.rollback()
    for undo in reversed(_clear_compensations()):
        try:
            undo()
        except Exception:
            current_app.logger.exception("Compensation after rollback failed")


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.05):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks), StaleDataError (optimistic
    locking conflicts) and ConcurrencyConflict. Any failure rolls the session
    back (and runs on_rollback compensations) before propagating. Exhausted
    retries raise ConcurrencyConflict.
    """
    for attempt in range(attempts):
        _clear_compensations()
        try:
            result = func()
            _clear_compensations()
            return result
        except PeriodBusy:
            _rollback()
            raise
        except (OperationalError, StaleDataError, ConcurrencyConflict) as exc:
            _rollback()
            if attempt >= attempts - 1:
                if isinstance(exc, ConcurrencyConflict):
                    raise
                raise ConcurrencyConflict(
                    "Concurrent update conflict, please retry",
                    {"attempts": attempts},
                ) from exc
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            _rollback()
            raise
    raise ConcurrencyConflict("Concurrent update conflict, please retry", {"attempts": attempts})


@contextmanager
def entity_locks(*keys):
    """
    Hold the in-process critical sections for the given entity keys,
    e.g. entity_locks(("receipt", 12), ("receipt", 15)).

    Keys map onto a fixed set of lock stripes, acquired in index order.
    """
    indexes = sorted({hash(key) % LOCK_STRIPES for key in keys})
    with ExitStack() as stack:
        for index in indexes:
            stack.enter_context(_stripes[index])
        yield


class PeriodGate:
    """
    Reader/writer gate per work period.

    shared(): held by every ledger operation. Fails fast with PeriodBusy
    while a close is in progress.
    exclusive(): held by close. Waits up to `timeout` seconds for in-flight
    shared holders to finish, otherwise raises PeriodBusy.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._in_flight: dict[int, int] = {}
        self._closing: set[int] = set()

    def in_flight(self, period_id: int) -> int:
        with self._cond:
            return self._in_flight.get(period_id, 0)

    @contextmanager
    def shared(self, period_id: int):
        with self._cond:
            if period_id in self._closing:
                raise PeriodBusy(
                    "Work period is closing, please retry",
                    {"work_period_id": period_id},
                )
            self._in_flight[period_id] = self._in_flight.get(period_id, 0) + 1
        try:
            yield
        finally:
            with self._cond:
                remaining = self._in_flight.get(period_id, 1) - 1
                if remaining > 0:
                    self._in_flight[period_id] = remaining
                else:
                    self._in_flight.pop(period_id, None)
                self._cond.notify_all()

    @contextmanager
    def exclusive(self, period_id: int, timeout: float):
        with self._cond:
            if period_id in self._closing:
                raise PeriodBusy(
                    "Work period close already in progress",
                    {"work_period_id": period_id},
                )
            self._closing.add(period_id)
            drained = self._cond.wait_for(
                lambda: self._in_flight.get(period_id, 0) == 0,
                timeout=timeout,
            )
            if not drained:
                self._closing.discard(period_id)
                self._cond.notify_all()
                raise PeriodBusy(
                    "Ledger operations still in flight, close not possible yet",
                    {
                        "work_period_id": period_id,
                        "in_flight": self._in_flight.get(period_id, 0),
                        "waited_seconds": timeout,
                    },
                )
        try:
            yield
        finally:
            with self._cond:
                self._closing.discard(period_id)
                self._cond.notify_all()


def get_period_gate() -> PeriodGate:
    return current_app.extensions["shiftledger.period_gate"]


@contextmanager
def ledger_section(lock_keys, period_ids):
    """Entity locks followed by shared slots on every touched period."""
    with entity_locks(*lock_keys):
        gate = get_period_gate()
        with ExitStack() as stack:
            for period_id in sorted(set(period_ids)):
                stack.enter_context(gate.shared(period_id))
            yield
