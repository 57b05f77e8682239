import asyncio

import pytest

from tandem.base import QueryEngineProvider
from tandem.context import BACKGROUND, current_context
from tandem.exception import DeadlineExceededError
from tandem.transaction import (
    AccessMode,
    BeginError,
    CommitError,
    IsolationLevel,
    RollbackError,
    Transaction,
    TransactionAbortedError,
    TransactionError,
    TransactionManager,
    TransactionRunner,
    with_access_mode,
    with_isolation_level,
)


class Fault(BaseException):
    pass


class ItemRepository:
    def __init__(self, provider):
        self.provider = provider

    async def add(self, ctx, name):
        engine = self.provider.get_query_engine(ctx)
        await engine.execute(f"INSERT INTO items VALUES ('{name}')", ctx=ctx)


@pytest.fixture
def manager(pool):
    return TransactionManager(pool)


async def test_commit_on_success(manager, pool):
    async def work(ctx):
        return "done"

    result = await manager.run_transaction(BACKGROUND, work)

    assert result == "done"
    assert pool.events == ["getconn", "begin", "commit", "putconn"]


async def test_rollback_on_failure(manager, pool):
    error = ValueError("boom")

    async def work(ctx):
        raise error

    with pytest.raises(ValueError) as exc_info:
        await manager.run_transaction(BACKGROUND, work)

    assert exc_info.value is error
    assert pool.events == ["getconn", "begin", "rollback", "putconn"]


async def test_unit_of_work_receives_transaction(manager, pool):
    seen = []

    async def work(ctx):
        seen.append(manager.current_transaction(ctx))
        seen.append(manager.get_query_engine(ctx))

    await manager.run_transaction(BACKGROUND, work)

    transaction, engine = seen
    assert isinstance(transaction, Transaction)
    assert engine is transaction
    assert transaction.is_committed


@pytest.mark.parametrize("depth", (1, 2, 5))
async def test_nesting_reuses_transaction(manager, pool, depth):
    seen = []

    async def work(ctx, level=0):
        seen.append(manager.current_transaction(ctx))
        if level < depth:
            await manager.run_transaction(
                ctx, lambda inner: work(inner, level + 1)
            )

    await manager.run_transaction(BACKGROUND, work)

    assert len(seen) == depth + 1
    assert len(set(map(id, seen))) == 1
    assert pool.count("begin") == 1
    assert pool.count("commit") == 1
    assert pool.count("rollback") == 0


async def test_nested_error_rolls_back_once(manager, pool):
    async def inner(ctx):
        raise KeyError("inner")

    async def outer(ctx):
        await manager.run_transaction(ctx, inner)

    with pytest.raises(KeyError):
        await manager.run_transaction(BACKGROUND, outer)

    assert pool.count("begin") == 1
    assert pool.count("rollback") == 1
    assert pool.count("commit") == 0


async def test_inner_options_are_ignored(manager, pool):
    async def inner(ctx):
        pass

    async def outer(ctx):
        await manager.run_transaction(
            ctx,
            inner,
            with_isolation_level(IsolationLevel.READ_COMMITTED),
            with_access_mode(AccessMode.READ_WRITE),
        )

    await manager.run_transaction(
        BACKGROUND, outer, with_isolation_level(IsolationLevel.SERIALIZABLE)
    )

    assert len(pool.configs) == 1
    config = pool.configs[0]
    assert config.isolation_level is IsolationLevel.SERIALIZABLE
    assert config.access_mode is None


async def test_default_options_are_overridden_by_call_options(pool):
    manager = TransactionManager(
        pool,
        with_isolation_level(IsolationLevel.REPEATABLE_READ),
        with_access_mode(AccessMode.READ_ONLY),
    )

    async def work(ctx):
        pass

    await manager.run_transaction(
        None, work, with_access_mode(AccessMode.READ_WRITE)
    )

    config = pool.configs[0]
    assert config.isolation_level is IsolationLevel.REPEATABLE_READ
    assert config.access_mode is AccessMode.READ_WRITE


async def test_fault_is_contained(manager, pool):
    fault = Fault("unexpected")

    async def work(ctx):
        raise fault

    with pytest.raises(TransactionAbortedError) as exc_info:
        await manager.run_transaction(BACKGROUND, work)

    assert exc_info.value.__cause__ is fault
    assert "unexpected" in str(exc_info.value)
    assert pool.events == ["getconn", "begin", "rollback", "putconn"]


async def test_cancellation_rolls_back_and_propagates(manager, pool):
    async def work(ctx):
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await manager.run_transaction(BACKGROUND, work)

    assert pool.count("rollback") == 1
    assert pool.count("commit") == 0


async def test_cancelled_task_rolls_back(manager, pool):
    started = asyncio.Event()

    async def work(ctx):
        started.set()
        await asyncio.sleep(10)

    task = asyncio.ensure_future(manager.run_transaction(BACKGROUND, work))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert pool.events == ["getconn", "begin", "rollback", "putconn"]


async def test_rollback_failure_takes_precedence(manager, pool):
    original = ValueError("unit of work failed")
    pool.rollback_error = OSError("connection lost")

    async def work(ctx):
        raise original

    with pytest.raises(RollbackError) as exc_info:
        await manager.run_transaction(BACKGROUND, work)

    error = exc_info.value
    assert str(error).startswith("rollback failed")
    assert error.original is original
    assert error.__cause__ is pool.rollback_error
    assert pool.count("putconn") == 1


async def test_rollback_failure_after_fault(manager, pool):
    fault = Fault("unexpected")
    pool.rollback_error = OSError("connection lost")

    async def work(ctx):
        raise fault

    with pytest.raises(RollbackError) as exc_info:
        await manager.run_transaction(BACKGROUND, work)

    assert exc_info.value.original is fault


async def test_commit_failure_rolls_back(manager, pool):
    pool.commit_error = OSError("serialization failure")

    async def work(ctx):
        return "never returned"

    with pytest.raises(CommitError) as exc_info:
        await manager.run_transaction(BACKGROUND, work)

    assert exc_info.value.__cause__ is pool.commit_error
    assert pool.events == [
        "getconn",
        "begin",
        "commit",
        "rollback",
        "putconn",
    ]


async def test_commit_and_rollback_failure(manager, pool):
    pool.commit_error = OSError("commit")
    pool.rollback_error = OSError("rollback")

    async def work(ctx):
        pass

    with pytest.raises(RollbackError) as exc_info:
        await manager.run_transaction(BACKGROUND, work)

    assert isinstance(exc_info.value.original, CommitError)


async def test_begin_failure(manager, pool):
    pool.begin_error = OSError("too many connections")
    called = []

    async def work(ctx):
        called.append(ctx)

    with pytest.raises(BeginError) as exc_info:
        await manager.run_transaction(BACKGROUND, work)

    assert "can't begin transaction" in str(exc_info.value)
    assert exc_info.value.__cause__ is pool.begin_error
    assert not called
    assert pool.events == ["getconn", "begin", "putconn"]


async def test_expired_context_cannot_begin(manager, pool):
    ctx = BACKGROUND.with_timeout(-1)

    async def work(ctx):
        pass

    with pytest.raises(BeginError) as exc_info:
        await manager.run_transaction(ctx, work)

    assert isinstance(exc_info.value.__cause__, DeadlineExceededError)
    assert pool.events == []


async def test_deadline_in_unit_of_work_rolls_back(manager, pool):
    async def work(ctx):
        await ctx.with_timeout(0.01).wait(asyncio.sleep(1))

    with pytest.raises(DeadlineExceededError):
        await manager.run_transaction(BACKGROUND, work)

    assert pool.count("rollback") == 1


async def test_transaction_deadline_elapses_in_unit_of_work(manager, pool):
    async def work(ctx):
        await ctx.wait(asyncio.sleep(1))

    with pytest.raises(RollbackError) as exc_info:
        await manager.run_transaction(BACKGROUND.with_timeout(0.01), work)

    assert isinstance(exc_info.value.original, DeadlineExceededError)
    assert isinstance(exc_info.value.__cause__, DeadlineExceededError)
    assert pool.events == ["getconn", "begin", "putconn"]


async def test_transaction_deadline_elapses_before_commit(manager, pool):
    async def work(ctx):
        await asyncio.sleep(0.05)
        return "done"

    with pytest.raises(RollbackError) as exc_info:
        await manager.run_transaction(BACKGROUND.with_timeout(0.01), work)

    commit_error = exc_info.value.original
    assert isinstance(commit_error, CommitError)
    assert isinstance(commit_error.__cause__, DeadlineExceededError)
    assert pool.events == ["getconn", "begin", "putconn"]


async def test_unit_of_work_error_survives_early_commit(manager, pool):
    async def work(ctx):
        await manager.get_query_engine(ctx).commit()
        raise ValueError("after commit")

    with pytest.raises(ValueError, match="after commit"):
        await manager.run_transaction(None, work)

    assert pool.events == ["getconn", "begin", "commit", "putconn"]


async def test_early_commit_is_reported(manager, pool):
    async def work(ctx):
        await manager.get_query_engine(ctx).commit()

    with pytest.raises(TransactionError, match="already finalized"):
        await manager.run_transaction(None, work)

    assert pool.count("commit") == 1
    assert pool.count("rollback") == 0


def test_manager_is_a_runner_and_provider(manager):
    assert isinstance(manager, TransactionRunner)
    assert isinstance(manager, QueryEngineProvider)


def test_no_transaction_gives_pool(manager, pool):
    assert manager.get_query_engine() is pool
    assert manager.get_query_engine(BACKGROUND) is pool
    assert manager.current_transaction() is None


async def test_transaction_is_bound_ambiently(manager, pool):
    seen = []

    async def work(ctx):
        assert current_context() is ctx
        seen.append(manager.get_query_engine())

    await manager.run_transaction(None, work)

    assert isinstance(seen[0], Transaction)
    assert current_context() is BACKGROUND
    assert manager.get_query_engine() is pool


async def test_finalized_transaction_cannot_be_joined(manager, pool):
    captured = []

    async def work(ctx):
        captured.append(ctx)

    await manager.run_transaction(BACKGROUND, work)

    with pytest.raises(TransactionError):
        await manager.run_transaction(captured[0], work)
    assert pool.count("begin") == 1


async def test_transactions_of_other_pools_are_not_joined(pool, other_pool):
    manager = TransactionManager(pool)
    other = TransactionManager(other_pool)

    async def inner(ctx):
        assert other.get_query_engine(ctx) is not manager.get_query_engine(ctx)

    async def outer(ctx):
        await other.run_transaction(ctx, inner)

    await manager.run_transaction(BACKGROUND, outer)

    assert pool.count("begin") == 1
    assert other_pool.count("begin") == 1


async def test_independent_call_chains(manager, pool):
    seen = []

    async def work(ctx):
        await asyncio.sleep(0)
        seen.append(manager.current_transaction(ctx))

    await asyncio.gather(
        manager.run_transaction(BACKGROUND, work),
        manager.run_transaction(BACKGROUND, work),
    )

    assert seen[0] is not seen[1]
    assert pool.count("begin") == 2
    assert pool.count("commit") == 2


async def test_repositories_share_transaction(manager, pool):
    repository = ItemRepository(manager)

    async def work(ctx):
        await repository.add(ctx, "foo")
        await repository.add(ctx, "bar")

    await manager.run_transaction(BACKGROUND, work)

    assert pool.count("begin") == 1
    assert pool.count("commit") == 1
    assert pool.count("acquire") == 0
    connections = {connection for connection, _ in pool.statements}
    assert len(pool.statements) == 2
    assert len(connections) == 1
    assert connections.pop().kind == "transaction"


async def test_failing_repository_rolls_back(manager, pool):
    repository = ItemRepository(manager)
    pool.failures["INSERT INTO items VALUES ('bar')"] = ValueError("dup")

    async def work(ctx):
        await repository.add(ctx, "foo")
        await repository.add(ctx, "bar")

    with pytest.raises(ValueError):
        await manager.run_transaction(BACKGROUND, work)

    assert pool.count("begin") == 1
    assert pool.count("rollback") == 1
    assert pool.count("commit") == 0
    assert len(pool.statements) == 2


async def test_repository_outside_transaction_uses_pool(manager, pool):
    repository = ItemRepository(manager)

    await repository.add(BACKGROUND, "foo")

    assert pool.events == ["acquire", "release"]
    assert pool.statements[0][0].kind == "pool"
