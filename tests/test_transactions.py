"""
tests/test_transactions.py -- TxManager commit/rollback contract and the
repository behaviour that depends on it.

Covers:
  - commit path returns the closure's result and persists its writes
  - AppError from the closure rolls back and re-raises the same error
  - any other exception rolls back and becomes INTERNAL "Transaction Failed"
  - after-commit hooks run only after a commit; failing hooks are not raised
  - cache invalidation for transactional writes is deferred until commit
"""

from __future__ import annotations

import pytest

from core.errors import AppError, ErrorKind, not_found
from rbac.models import Role, User


def _user(name: str) -> User:
    return User(username=name, email=f"{name}@example.com", hashed_password="x")


class TestTxManager:
    def test_commit(self, stack) -> None:
        created = stack.tx_manager.with_transaction(lambda tx: stack.users.create(_user("bob"), tx=tx))
        assert created.id is not None
        assert stack.users.get_by_email("bob@example.com").id == created.id

    def test_app_error_rolls_back_and_propagates(self, stack) -> None:
        error = not_found("boom")

        def work(tx):
            stack.users.create(_user("carol"), tx=tx)
            raise error

        with pytest.raises(AppError) as exc_info:
            stack.tx_manager.with_transaction(work)
        assert exc_info.value is error

        with pytest.raises(AppError) as lookup:
            stack.users.get_by_email("carol@example.com")
        assert lookup.value.kind is ErrorKind.NOT_FOUND

    def test_unexpected_exception_becomes_transaction_failed(self, stack) -> None:
        def work(tx):
            stack.users.create(_user("dave"), tx=tx)
            raise RuntimeError("disk on fire")

        with pytest.raises(AppError) as exc_info:
            stack.tx_manager.with_transaction(work)
        err = exc_info.value
        assert err.kind is ErrorKind.INTERNAL
        assert err.errors[0].title == "Transaction Failed"
        assert isinstance(err.__cause__, RuntimeError)

        with pytest.raises(AppError):
            stack.users.get_by_email("dave@example.com")

    def test_hooks_run_after_commit(self, stack) -> None:
        calls: list[str] = []

        def work(tx):
            tx.after_commit(lambda: calls.append("hook"))
            calls.append("body")
            return "done"

        assert stack.tx_manager.with_transaction(work) == "done"
        assert calls == ["body", "hook"]

    def test_hooks_skipped_on_rollback(self, stack) -> None:
        calls: list[str] = []

        def work(tx):
            tx.after_commit(lambda: calls.append("hook"))
            raise not_found("nope")

        with pytest.raises(AppError):
            stack.tx_manager.with_transaction(work)
        assert calls == []

    def test_failing_hook_is_not_raised(self, stack) -> None:
        calls: list[str] = []

        def explode() -> None:
            raise RuntimeError("cache down")

        def work(tx):
            tx.after_commit(explode)
            tx.after_commit(lambda: calls.append("second"))
            return 1

        assert stack.tx_manager.with_transaction(work) == 1
        assert calls == ["second"]


class TestDeferredInvalidation:
    def test_list_cache_survives_until_commit(self, stack) -> None:
        """A transactional write must not evict cache entries before COMMIT."""
        before = stack.roles.list(page=1, per_page=20)
        list_key = "pkg:role:list:page=1&per_page=20"
        assert stack.cache.get(list_key) is not None

        seen_during_tx: list[bool] = []

        def work(tx):
            stack.roles.create(Role(name="auditor"), tx=tx)
            seen_during_tx.append(stack.cache.get(list_key) is not None)

        stack.tx_manager.with_transaction(work)
        assert seen_during_tx == [True]
        assert stack.cache.get(list_key) is None
        after = stack.roles.list(page=1, per_page=20)
        assert len(after) == len(before) + 1

    def test_non_transactional_write_invalidates_immediately(self, stack) -> None:
        stack.roles.list()
        stack.roles.create(Role(name="auditor"))
        assert "auditor" in [r.name for r in stack.roles.list()]

    def test_update_drops_old_email_key(self, stack) -> None:
        user = stack.users.create(_user("erin"))
        stack.users.get_by_email("erin@example.com")
        stack.users.update(user.id, email="erin2@example.com")
        with pytest.raises(AppError):
            stack.users.get_by_email("erin@example.com")
        assert stack.users.get_by_email("erin2@example.com").id == user.id
