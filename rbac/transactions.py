"""
rbac/transactions.py -- Run a unit of work inside one database transaction.

TxManager.with_transaction(fn) owns the whole connection lifecycle:

    acquire connection -> BEGIN -> fn(tx) -> COMMIT -> after-commit hooks
                                       \\-> ROLLBACK on any failure

Outcome contract:
  fn returns a value        commit, run hooks, return the value
  fn raises AppError        rollback, re-raise the same AppError untouched
  anything else raises      rollback, AppError([INTERNAL "Transaction Failed"])
  (including COMMIT itself)   chained from the original exception

The connection is released on every path (context manager), and rollback is
attempted only while the transaction is still active so it never runs twice.

After-commit hooks exist for cache invalidation: a repository writing inside
a transaction must not evict cache entries before the data is durable, or a
concurrent reader could repopulate the cache with the old row. Hooks that
fail are logged and swallowed -- the transaction already committed.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.engine import Connection, Engine

from core.errors import AppError, internal_error

logger = logging.getLogger("gatekeeper.rbac")

T = TypeVar("T")


class Transaction:
    """Handle passed to the unit of work. Repositories run SQL on `conn`."""

    def __init__(self, conn: Connection) -> None:
        self.conn = conn
        self._hooks: list[Callable[[], None]] = []

    def after_commit(self, callback: Callable[[], None]) -> None:
        self._hooks.append(callback)

    def _run_hooks(self) -> None:
        for hook in self._hooks:
            try:
                hook()
            except Exception:
                logger.exception("After-commit hook failed")


class TxManager:
    """Usage:
    tx_manager = TxManager(engine)
    user = tx_manager.with_transaction(lambda tx: users.create(new_user, tx=tx))
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def with_transaction(self, fn: Callable[[Transaction], T]) -> T:
        with self._engine.connect() as conn:
            trans = conn.begin()
            tx = Transaction(conn)
            try:
                result = fn(tx)
                trans.commit()
            except AppError as exc:
                if trans.is_active:
                    trans.rollback()
                logger.warning("Transaction rolled back: %s", exc)
                raise
            except Exception as exc:
                if trans.is_active:
                    trans.rollback()
                logger.exception("Transaction failed unexpectedly")
                raise internal_error(str(exc), title="Transaction Failed") from exc
        tx._run_hooks()
        return result
