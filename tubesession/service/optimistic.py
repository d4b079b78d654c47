from __future__ import annotations

import asyncio
import copy
import itertools
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from tubesession.logging import get_logger
from tubesession.service.errors import OptimisticRollback
from tubesession.service.gateway import RequestGateway

logger = get_logger(__name__)

PLACEHOLDER_PREFIX = "tmp-"


class TargetKind(str, Enum):
    VIDEO_LIKE = "video_like"
    COMMENT_LIKE = "comment_like"
    TWEET_LIKE = "tweet_like"
    SUBSCRIPTION = "subscription"
    PLAYLIST_MEMBERSHIP = "playlist_membership"
    COMMENT = "comment"


class MutationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class MutationTarget:
    """What a mutation touches.

    With a ``scope`` the target is the entity ``target_id`` inside the
    collection of that name; otherwise it is a keyed value.
    """

    kind: TargetKind
    target_id: str
    scope: Optional[str] = None


@dataclass
class MutationRecord:
    target: MutationTarget
    previous_state: Any
    applied_state: Any
    sequence: int
    status: MutationStatus = MutationStatus.PENDING
    confirmed_state: Any = None
    previous_position: Optional[int] = None
    # pending record this one superseded; owns the state again if this one rolls back
    prior: Optional["MutationRecord"] = field(default=None, repr=False, compare=False)
    # None until the commit settles
    committed: Optional[bool] = None


class EntityCollection:
    """Ordered list of entity mappings addressed by their ``_id``."""

    def __init__(self, items: Iterable[Mapping[str, Any]] = ()) -> None:
        self._items: List[Dict[str, Any]] = [dict(item) for item in items]

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, entity_id: object) -> bool:
        return self.index_of(entity_id) is not None  # type: ignore[arg-type]

    def items(self) -> List[Dict[str, Any]]:
        return [dict(item) for item in self._items]

    def ids(self) -> List[str]:
        return [item.get("_id") for item in self._items]

    def index_of(self, entity_id: str) -> Optional[int]:
        for index, item in enumerate(self._items):
            if item.get("_id") == entity_id:
                return index
        return None

    def get(self, entity_id: str) -> Optional[Dict[str, Any]]:
        index = self.index_of(entity_id)
        return dict(self._items[index]) if index is not None else None

    def insert(self, entity: Mapping[str, Any], position: Optional[int] = None) -> int:
        if position is None or position > len(self._items):
            position = len(self._items)
        position = max(0, position)
        self._items.insert(position, dict(entity))
        return position

    def replace(self, entity_id: str, entity: Mapping[str, Any]) -> Optional[int]:
        index = self.index_of(entity_id)
        if index is not None:
            self._items[index] = dict(entity)
        return index

    def remove(self, entity_id: str) -> Optional[int]:
        index = self.index_of(entity_id)
        if index is not None:
            del self._items[index]
        return index

    def extend(self, entities: Iterable[Mapping[str, Any]]) -> None:
        for entity in entities:
            if entity.get("_id") in self:
                self.replace(entity["_id"], entity)
            else:
                self._items.append(dict(entity))


StateListener = Callable[[Any], Any]


class OptimisticState:
    """Visible client state that optimistic mutations operate on."""

    def __init__(self) -> None:
        self._values: Dict[MutationTarget, Any] = {}
        self._collections: Dict[str, EntityCollection] = {}
        self._listeners: List[StateListener] = []

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def collection(self, scope: str) -> EntityCollection:
        if scope not in self._collections:
            self._collections[scope] = EntityCollection()
        return self._collections[scope]

    def read(self, target: MutationTarget) -> Any:
        if target.scope is not None:
            return self.collection(target.scope).get(target.target_id)
        return copy.deepcopy(self._values.get(target))

    def position(self, target: MutationTarget) -> Optional[int]:
        if target.scope is None:
            return None
        return self.collection(target.scope).index_of(target.target_id)

    def write(self, target: MutationTarget, value: Any, *, position: Optional[int] = None) -> None:
        if target.scope is None:
            self._values[target] = value
        else:
            entities = self.collection(target.scope)
            if value is None:
                entities.remove(target.target_id)
            elif entities.replace(target.target_id, value) is None:
                entities.insert(value, position)
        self._notify(target)

    def seed(self, target: MutationTarget, value: Any) -> None:
        """Record server-loaded state without going through a mutation."""
        self.write(target, value)

    def seed_collection(self, scope: str, entities: Iterable[Mapping[str, Any]], *, append: bool = False) -> None:
        if append:
            self.collection(scope).extend(entities)
        else:
            self._collections[scope] = EntityCollection(entities)
        self._notify(scope)

    def insert_entity(self, scope: str, entity: Mapping[str, Any], position: Optional[int] = None) -> int:
        index = self.collection(scope).insert(entity, position)
        self._notify(scope)
        return index

    def replace_entity(self, scope: str, entity_id: str, entity: Mapping[str, Any]) -> Optional[int]:
        index = self.collection(scope).replace(entity_id, entity)
        if index is not None:
            self._notify(scope)
        return index

    def remove_entity(self, scope: str, entity_id: str) -> Optional[int]:
        index = self.collection(scope).remove(entity_id)
        if index is not None:
            self._notify(scope)
        return index

    def reset(self) -> None:
        self._values.clear()
        self._collections.clear()
        self._notify(None)

    def _notify(self, key: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(key)
            except Exception as exc:
                logger.error("state_listener_failed", error=str(exc))


class OptimisticMutationEngine:
    """Apply, commit, then reconcile or roll back client-side mutations.

    At most one record per target is pending. A new mutation for the same
    target supersedes the pending one immediately. Superseded commits are
    allowed to finish without touching visible state, unless the mutation
    that superseded them rolls back first and hands the target back.
    """

    def __init__(self, state: OptimisticState, gateway: RequestGateway) -> None:
        self.state = state
        self.gateway = gateway
        self._latest: Dict[MutationTarget, MutationRecord] = {}
        self._sequence = itertools.count(1)

    def latest(self, target: MutationTarget) -> Optional[MutationRecord]:
        return self._latest.get(target)

    def pending(self, target: MutationTarget) -> Optional[MutationRecord]:
        record = self._latest.get(target)
        if record is not None and record.status is MutationStatus.PENDING:
            return record
        return None

    def reset(self) -> None:
        """Forget all records and visible state, e.g. after logout."""
        for record in self._latest.values():
            if record.status is MutationStatus.PENDING:
                record.status = MutationStatus.SUPERSEDED
        self._latest.clear()
        self.state.reset()

    async def apply_optimistic(
        self,
        target: MutationTarget,
        compute_next_state: Callable[[Any], Any],
        commit_fn: Callable[[Optional[str]], Awaitable[Any]],
        *,
        reconcile: Optional[Callable[[Any, Any], Any]] = None,
    ) -> MutationRecord:
        """Show ``compute_next_state(current)`` now and commit it through the gateway.

        On success ``reconcile(response, applied_state)`` yields the server's
        state, which replaces the visible one if this record is still the
        latest for the target. A failed reconcile counts as a failed commit.
        On failure the latest record rolls back and ``OptimisticRollback`` is
        raised. If the record it superseded is still in flight, that record
        owns the target again; otherwise the last state the server accepted
        is restored.
        """
        prior = self.pending(target)
        if prior is not None:
            prior.status = MutationStatus.SUPERSEDED

        previous_state = self.state.read(target)
        previous_position = self.state.position(target)
        applied_state = compute_next_state(copy.deepcopy(previous_state))
        record = MutationRecord(
            target=target,
            previous_state=previous_state,
            applied_state=applied_state,
            sequence=next(self._sequence),
            previous_position=previous_position,
            prior=prior,
        )
        self._latest[target] = record
        self.state.write(target, applied_state, position=previous_position)

        try:
            response = await self.gateway.authed_call(commit_fn)
            confirmed = reconcile(response, applied_state) if reconcile else applied_state
        except asyncio.CancelledError:
            record.committed = False
            self._restore(record)
            raise
        except Exception as exc:
            record.committed = False
            reverted = self._restore(record)
            logger.info(
                "optimistic_rollback",
                kind=target.kind.value,
                target_id=target.target_id,
                sequence=record.sequence,
                reverted=reverted,
                cause=getattr(exc, "error_code", type(exc).__name__),
            )
            raise OptimisticRollback(
                f"{target.kind.value} change was not saved",
                target=target,
                cause=exc,
                restored_state=self.state.read(target) if reverted else None,
                reverted=reverted,
            ) from exc

        record.committed = True
        record.confirmed_state = confirmed
        if self._latest.get(target) is record:
            record.status = MutationStatus.CONFIRMED
            record.prior = None
            self.state.write(target, confirmed, position=previous_position)
        # otherwise a newer mutation owns the visible state; confirmed_state is
        # kept as the fallback should that mutation roll back
        return record

    async def create_with_placeholder(
        self,
        scope: str,
        draft: Mapping[str, Any],
        commit_fn: Callable[[Optional[str]], Awaitable[Any]],
        *,
        adopt: Optional[Callable[[Any], Mapping[str, Any]]] = None,
        kind: TargetKind = TargetKind.COMMENT,
        position: int = 0,
    ) -> Dict[str, Any]:
        """Insert a temporary entity, then swap in the server's entity or remove it."""
        placeholder_id = f"{PLACEHOLDER_PREFIX}{uuid.uuid4().hex}"
        placeholder = {**dict(draft), "_id": placeholder_id, "isPending": True}
        target = MutationTarget(kind=kind, target_id=placeholder_id, scope=scope)
        record = MutationRecord(
            target=target,
            previous_state=None,
            applied_state=placeholder,
            sequence=next(self._sequence),
        )
        self.state.insert_entity(scope, placeholder, position)

        try:
            response = await self.gateway.authed_call(commit_fn)
            entity = dict(adopt(response) if adopt else response)
        except asyncio.CancelledError:
            self.state.remove_entity(scope, placeholder_id)
            raise
        except Exception as exc:
            self.state.remove_entity(scope, placeholder_id)
            record.committed = False
            record.status = MutationStatus.ROLLED_BACK
            logger.info(
                "optimistic_rollback",
                kind=kind.value,
                scope=scope,
                placeholder=True,
                cause=getattr(exc, "error_code", type(exc).__name__),
            )
            raise OptimisticRollback(
                f"{kind.value} could not be created",
                target=target,
                cause=exc,
                reverted=True,
            ) from exc

        entity.pop("isPending", None)
        self.state.replace_entity(scope, placeholder_id, entity)
        record.committed = True
        record.confirmed_state = entity
        record.status = MutationStatus.CONFIRMED
        return entity

    def _restore(self, record: MutationRecord) -> bool:
        if self._latest.get(record.target) is not record:
            return False
        if record.status is not MutationStatus.PENDING:
            return False
        record.status = MutationStatus.ROLLED_BACK
        fallback, owner = self._fallback(record)
        if owner is not None:
            owner.status = MutationStatus.PENDING
            self._latest[record.target] = owner
        self.state.write(record.target, fallback, position=record.previous_position)
        return True

    def _fallback(self, record: MutationRecord) -> Tuple[Any, Optional[MutationRecord]]:
        """State to show once ``record`` rolls back, and the record that owns it."""
        prior = record.prior
        while prior is not None:
            if prior.committed is None:
                # still in flight: its applied state is what record replaced
                return record.previous_state, prior
            if prior.committed:
                return prior.confirmed_state, None
            record, prior = prior, prior.prior
        return record.previous_state, None


__all__ = [
    "EntityCollection",
    "MutationRecord",
    "MutationStatus",
    "MutationTarget",
    "OptimisticMutationEngine",
    "OptimisticState",
    "TargetKind",
]
