"""Tests for optimistic apply / commit / reconcile / rollback."""

import asyncio

import pytest

from tubesession.service.errors import NetworkError, OptimisticRollback, ServerError
from tubesession.service.optimistic import (
    EntityCollection,
    MutationStatus,
    MutationTarget,
    OptimisticMutationEngine,
    OptimisticState,
    TargetKind,
)

LIKE = MutationTarget(TargetKind.VIDEO_LIKE, "v1")


class MockGateway:
    """Runs commit functions with a fixed token, like a signed-in gateway."""

    def __init__(self):
        self.calls = 0

    async def authed_call(self, request_fn):
        self.calls += 1
        return await request_fn("token")


class ControlledCommit:
    """Commit function whose outcome is decided by the test."""

    def __init__(self):
        self.future = None
        self.started = asyncio.Event()

    async def __call__(self, token):
        self.future = asyncio.get_running_loop().create_future()
        self.started.set()
        return await self.future

    def succeed(self, value):
        self.future.set_result(value)

    def fail(self, error):
        self.future.set_exception(error)


def toggle(state):
    state = state or {"isLiked": False, "likesCount": 0}
    liked = not state["isLiked"]
    return {"isLiked": liked, "likesCount": state["likesCount"] + (1 if liked else -1)}


def server_wins(response, applied):
    return dict(response)


def _engine():
    state = OptimisticState()
    return state, OptimisticMutationEngine(state, MockGateway())


class TestApplyOptimistic:
    async def test_state_applied_before_commit_settles(self):
        state, engine = _engine()
        state.seed(LIKE, {"isLiked": False, "likesCount": 4})
        commit = ControlledCommit()

        task = asyncio.create_task(engine.apply_optimistic(LIKE, toggle, commit, reconcile=server_wins))
        await commit.started.wait()

        assert state.read(LIKE) == {"isLiked": True, "likesCount": 5}
        assert engine.pending(LIKE) is not None

        commit.succeed({"isLiked": True, "likesCount": 9})
        record = await task

        assert record.status is MutationStatus.CONFIRMED
        assert record.previous_state == {"isLiked": False, "likesCount": 4}
        # server wins on confirmation
        assert state.read(LIKE) == {"isLiked": True, "likesCount": 9}
        assert record.confirmed_state == {"isLiked": True, "likesCount": 9}

    async def test_failure_restores_previous_state(self):
        state, engine = _engine()
        state.seed(LIKE, {"isLiked": False, "likesCount": 4})

        async def commit(token):
            raise ServerError("boom")

        with pytest.raises(OptimisticRollback) as excinfo:
            await engine.apply_optimistic(LIKE, toggle, commit)

        assert state.read(LIKE) == {"isLiked": False, "likesCount": 4}
        assert excinfo.value.reverted is True
        assert isinstance(excinfo.value.cause, ServerError)
        assert excinfo.value.target == LIKE
        assert engine.latest(LIKE).status is MutationStatus.ROLLED_BACK

    async def test_reconciliation_is_idempotent(self):
        state, engine = _engine()

        async def commit(token):
            return {"isLiked": True, "likesCount": 3}

        await engine.apply_optimistic(LIKE, toggle, commit, reconcile=server_wins)
        once = state.read(LIKE)
        state.write(LIKE, server_wins({"isLiked": True, "likesCount": 3}, once))

        assert state.read(LIKE) == once

    async def test_cancelled_commit_rolls_back(self):
        state, engine = _engine()
        state.seed(LIKE, {"isLiked": False, "likesCount": 1})
        commit = ControlledCommit()

        task = asyncio.create_task(engine.apply_optimistic(LIKE, toggle, commit))
        await commit.started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert state.read(LIKE) == {"isLiked": False, "likesCount": 1}

    async def test_different_targets_are_independent(self):
        state, engine = _engine()
        other = MutationTarget(TargetKind.VIDEO_LIKE, "v2")
        first, second = ControlledCommit(), ControlledCommit()

        t1 = asyncio.create_task(engine.apply_optimistic(LIKE, toggle, first))
        t2 = asyncio.create_task(engine.apply_optimistic(other, toggle, second))
        await first.started.wait()
        await second.started.wait()
        first.fail(NetworkError("offline"))
        second.succeed({"isLiked": True, "likesCount": 1})

        with pytest.raises(OptimisticRollback):
            await t1
        await t2
        assert state.read(LIKE) is None
        assert state.read(other) == {"isLiked": True, "likesCount": 1}


class TestSupersede:
    async def test_stale_confirmation_does_not_overwrite_latest(self):
        state, engine = _engine()
        state.seed(LIKE, {"isLiked": False, "likesCount": 10})
        like, unlike = ControlledCommit(), ControlledCommit()

        first = asyncio.create_task(engine.apply_optimistic(LIKE, toggle, like, reconcile=server_wins))
        await like.started.wait()
        second = asyncio.create_task(engine.apply_optimistic(LIKE, toggle, unlike, reconcile=server_wins))
        await unlike.started.wait()

        assert state.read(LIKE) == {"isLiked": False, "likesCount": 10}

        like.succeed({"isLiked": True, "likesCount": 11})
        first_record = await first

        assert first_record.status is MutationStatus.SUPERSEDED
        assert state.read(LIKE) == {"isLiked": False, "likesCount": 10}

        unlike.succeed({"isLiked": False, "likesCount": 10})
        second_record = await second
        assert second_record.status is MutationStatus.CONFIRMED
        assert state.read(LIKE) == {"isLiked": False, "likesCount": 10}

    async def test_failed_latest_restores_state_before_its_own_apply(self):
        state, engine = _engine()
        state.seed(LIKE, {"isLiked": False, "likesCount": 10})
        like, unlike = ControlledCommit(), ControlledCommit()

        first = asyncio.create_task(engine.apply_optimistic(LIKE, toggle, like))
        await like.started.wait()
        second = asyncio.create_task(engine.apply_optimistic(LIKE, toggle, unlike))
        await unlike.started.wait()

        like.succeed({"isLiked": True, "likesCount": 11})
        await first
        unlike.fail(ServerError("boom"))

        with pytest.raises(OptimisticRollback) as excinfo:
            await second
        assert excinfo.value.reverted is True
        # the state right before the unlike was applied
        assert state.read(LIKE) == {"isLiked": True, "likesCount": 11}

    async def test_failed_superseded_commit_leaves_state_alone(self):
        state, engine = _engine()
        state.seed(LIKE, {"isLiked": False, "likesCount": 10})
        like, unlike = ControlledCommit(), ControlledCommit()

        first = asyncio.create_task(engine.apply_optimistic(LIKE, toggle, like))
        await like.started.wait()
        second = asyncio.create_task(engine.apply_optimistic(LIKE, toggle, unlike))
        await unlike.started.wait()

        like.fail(ServerError("boom"))
        with pytest.raises(OptimisticRollback) as excinfo:
            await first
        assert excinfo.value.reverted is False
        assert state.read(LIKE) == {"isLiked": False, "likesCount": 10}

        unlike.succeed({"isLiked": False, "likesCount": 10})
        await second
        assert state.read(LIKE) == {"isLiked": False, "likesCount": 10}

    async def test_rolled_back_latest_hands_target_back_to_earlier_commit(self):
        state, engine = _engine()
        state.seed(LIKE, {"isLiked": False, "likesCount": 5})
        like, unlike = ControlledCommit(), ControlledCommit()

        first = asyncio.create_task(engine.apply_optimistic(LIKE, toggle, like))
        await like.started.wait()
        second = asyncio.create_task(engine.apply_optimistic(LIKE, toggle, unlike))
        await unlike.started.wait()

        unlike.fail(ServerError("boom"))
        with pytest.raises(OptimisticRollback):
            await second
        assert state.read(LIKE) == {"isLiked": True, "likesCount": 6}
        assert engine.pending(LIKE) is not None

        like.fail(ServerError("boom"))
        with pytest.raises(OptimisticRollback) as excinfo:
            await first

        assert excinfo.value.reverted is True
        assert state.read(LIKE) == {"isLiked": False, "likesCount": 5}
        assert engine.pending(LIKE) is None

    async def test_handed_back_commit_applies_server_state(self):
        state, engine = _engine()
        state.seed(LIKE, {"isLiked": False, "likesCount": 5})
        like, unlike = ControlledCommit(), ControlledCommit()

        first = asyncio.create_task(engine.apply_optimistic(LIKE, toggle, like, reconcile=server_wins))
        await like.started.wait()
        second = asyncio.create_task(engine.apply_optimistic(LIKE, toggle, unlike, reconcile=server_wins))
        await unlike.started.wait()

        unlike.fail(ServerError("boom"))
        with pytest.raises(OptimisticRollback):
            await second
        like.succeed({"isLiked": True, "likesCount": 8})
        record = await first

        assert record.status is MutationStatus.CONFIRMED
        assert state.read(LIKE) == {"isLiked": True, "likesCount": 8}

    async def test_rollback_after_earlier_confirmation_shows_server_state(self):
        state, engine = _engine()
        state.seed(LIKE, {"isLiked": False, "likesCount": 5})
        like, unlike = ControlledCommit(), ControlledCommit()

        first = asyncio.create_task(engine.apply_optimistic(LIKE, toggle, like, reconcile=server_wins))
        await like.started.wait()
        second = asyncio.create_task(engine.apply_optimistic(LIKE, toggle, unlike, reconcile=server_wins))
        await unlike.started.wait()

        like.succeed({"isLiked": True, "likesCount": 9})
        first_record = await first
        assert first_record.confirmed_state == {"isLiked": True, "likesCount": 9}
        unlike.fail(ServerError("boom"))
        with pytest.raises(OptimisticRollback):
            await second

        assert state.read(LIKE) == {"isLiked": True, "likesCount": 9}

    async def test_failed_reconcile_rolls_back(self):
        state, engine = _engine()
        state.seed(LIKE, {"isLiked": False, "likesCount": 4})

        async def commit(token):
            return {"unexpected": True}

        def strict(response, applied):
            raise ServerError("unexpected like payload")

        with pytest.raises(OptimisticRollback) as excinfo:
            await engine.apply_optimistic(LIKE, toggle, commit, reconcile=strict)

        assert isinstance(excinfo.value.cause, ServerError)
        assert state.read(LIKE) == {"isLiked": False, "likesCount": 4}
        assert engine.pending(LIKE) is None

    async def test_reset_orphans_pending_records(self):
        state, engine = _engine()
        commit = ControlledCommit()

        task = asyncio.create_task(engine.apply_optimistic(LIKE, toggle, commit))
        await commit.started.wait()
        engine.reset()
        commit.fail(ServerError("boom"))

        with pytest.raises(OptimisticRollback) as excinfo:
            await task
        assert excinfo.value.reverted is False
        assert state.read(LIKE) is None


class TestCollections:
    async def test_delete_rollback_restores_original_position(self):
        state, engine = _engine()
        state.seed_collection("comments:v1", [{"_id": "a"}, {"_id": "b"}, {"_id": "c"}])
        target = MutationTarget(TargetKind.COMMENT, "b", "comments:v1")

        async def commit(token):
            raise ServerError("boom")

        with pytest.raises(OptimisticRollback):
            await engine.apply_optimistic(target, lambda current: None, commit)

        assert state.collection("comments:v1").ids() == ["a", "b", "c"]

    async def test_update_replaces_in_place(self):
        state, engine = _engine()
        state.seed_collection("comments:v1", [{"_id": "a", "content": "x"}, {"_id": "b", "content": "y"}])
        target = MutationTarget(TargetKind.COMMENT, "a", "comments:v1")

        async def commit(token):
            return {"_id": "a", "content": "edited"}

        await engine.apply_optimistic(
            target,
            lambda current: {**current, "content": "edited"},
            commit,
        )

        assert state.collection("comments:v1").items() == [
            {"_id": "a", "content": "edited"},
            {"_id": "b", "content": "y"},
        ]

    async def test_placeholder_replaced_by_server_entity(self):
        state, engine = _engine()
        state.seed_collection("comments:v1", [{"_id": "old"}])
        commit = ControlledCommit()

        task = asyncio.create_task(engine.create_with_placeholder("comments:v1", {"content": "hi"}, commit))
        await commit.started.wait()

        items = state.collection("comments:v1").items()
        assert items[0]["isPending"] is True
        assert items[0]["_id"].startswith("tmp-")
        assert items[1]["_id"] == "old"

        commit.succeed({"_id": "c9", "content": "hi"})
        entity = await task

        assert entity == {"_id": "c9", "content": "hi"}
        assert state.collection("comments:v1").ids() == ["c9", "old"]

    async def test_placeholder_removed_on_failure(self):
        state, engine = _engine()
        state.seed_collection("comments:v1", [{"_id": "old"}])

        async def commit(token):
            raise NetworkError("offline")

        with pytest.raises(OptimisticRollback) as excinfo:
            await engine.create_with_placeholder("comments:v1", {"content": "hi"}, commit)

        assert isinstance(excinfo.value.cause, NetworkError)
        assert state.collection("comments:v1").ids() == ["old"]

    async def test_placeholder_removed_when_response_cannot_be_adopted(self):
        state, engine = _engine()
        state.seed_collection("comments:v1", [{"_id": "old"}])

        async def commit(token):
            return {"content": "hi"}

        def adopt(response):
            raise ServerError("unexpected comment payload")

        with pytest.raises(OptimisticRollback) as excinfo:
            await engine.create_with_placeholder("comments:v1", {"content": "hi"}, commit, adopt=adopt)

        assert isinstance(excinfo.value.cause, ServerError)
        assert state.collection("comments:v1").ids() == ["old"]

    def test_entity_collection_positions(self):
        entities = EntityCollection([{"_id": "a"}, {"_id": "b"}])

        assert entities.insert({"_id": "z"}, 99) == 2
        assert entities.remove("a") == 0
        assert entities.index_of("z") == 1
        assert "b" in entities and "a" not in entities
        assert entities.replace("missing", {"_id": "q"}) is None


class TestStateListeners:
    async def test_listeners_see_every_visible_change(self):
        state, engine = _engine()
        seen = []
        unsubscribe = state.subscribe(seen.append)

        async def commit(token):
            return {"isLiked": True, "likesCount": 1}

        await engine.apply_optimistic(LIKE, toggle, commit, reconcile=server_wins)
        unsubscribe()
        state.seed(LIKE, None)

        # applied, then reconciled
        assert seen == [LIKE, LIKE]
