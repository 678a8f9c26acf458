"""
Unit tests for ConditionAwaiter.

Test Coverage:
=============

1. Already satisfied conditions return without opening a watch
2. Conditions satisfied later are observed through the watch
3. Timeouts fire at the deadline and name the condition
4. Deletion of the awaited object raises NotFound
5. Duplicate and out-of-order events are ignored
6. Ended watches are resumed, expired watches relist
7. List + predicate awaits
"""

import asyncio
import time
from contextlib import asynccontextmanager

import pytest

from workplane.conditions.awaiter import ConditionAwaiter
from workplane.exceptions import ConditionTimeoutException, ResourceNotFoundException, WatchExpiredException
from workplane.models.conditions import Condition, ConditionStatus
from workplane.models.meta import LocalObjectReference, ObjectMeta
from workplane.models.tenants import Namespace
from workplane.models.workloads import Task, TaskSpec
from workplane.store.base import CONTROLLER_IDENTITY, EventType, WatchEvent
from workplane.store.memory import InMemoryStore
from workplane.utils.deadline import Deadline

NAMESPACE = "space-ns"


class NoWatchStore(InMemoryStore):
    """Fails the test if anybody opens a watch"""

    def watch(self, *args, **kwargs):
        raise AssertionError("watch must not be established for an already satisfied condition")


class ScriptedWatchStore(InMemoryStore):
    """Serves a fixed list of events on every watch"""

    def __init__(self, events):
        super().__init__()
        self.events = events
        self.watch_calls = []

    @asynccontextmanager
    async def watch(self, identity, model, namespace=None, resource_version=None, label_selector=None, name=None):
        self.watch_calls.append(resource_version)

        async def stream():
            for event in self.events:
                yield event

        yield stream()


class ExpiringWatchStore(InMemoryStore):
    """The first watch fails with an expired resource version"""

    def __init__(self):
        super().__init__()
        self.expired = False

    @asynccontextmanager
    async def watch(self, *args, **kwargs):
        if not self.expired:
            self.expired = True
            raise WatchExpiredException("too old")
        async with super().watch(*args, **kwargs) as events:
            yield events


def new_task(name="task-guid"):
    return Task(
        metadata=ObjectMeta(name=name, namespace=NAMESPACE),
        spec=TaskSpec(command="echo hello", app_ref=LocalObjectReference(name="app-guid")),
    )


def with_condition(task: Task, condition_type: str, status=ConditionStatus.TRUE, version=None) -> Task:
    task = task.copy_deep()
    task.status.conditions.append(Condition(type=condition_type, status=status))
    if version is not None:
        task.metadata.resource_version = str(version)
    return task


async def set_condition(store, task: Task, condition_type: str, status=ConditionStatus.TRUE) -> Task:
    current = await store.get(CONTROLLER_IDENTITY, Task, task.name, task.namespace)
    current.status.conditions.append(Condition(type=condition_type, status=status))
    return await store.update_status(CONTROLLER_IDENTITY, current)


async def seed_task(store, name="task-guid") -> Task:
    await store.create(CONTROLLER_IDENTITY, Namespace(metadata=ObjectMeta(name=NAMESPACE)))
    return await store.create(CONTROLLER_IDENTITY, new_task(name))


class TestImmediateReturn:
    @pytest.mark.asyncio
    async def test_satisfied_snapshot_returns_without_watch(self):
        store = NoWatchStore()
        task = await seed_task(store)
        task = await set_condition(store, task, "Initialized")

        awaiter = ConditionAwaiter(store, Task)
        result = await awaiter.await_condition(
            CONTROLLER_IDENTITY, NAMESPACE, task.name, "Initialized", Deadline(1), snapshot=task
        )

        assert result.metadata.resource_version == task.metadata.resource_version

    @pytest.mark.asyncio
    async def test_satisfied_initial_get_returns_without_watch(self):
        store = NoWatchStore()
        task = await seed_task(store)
        await set_condition(store, task, "Initialized")

        awaiter = ConditionAwaiter(store, Task)
        result = await awaiter.await_condition(CONTROLLER_IDENTITY, NAMESPACE, task.name, "Initialized", Deadline(1))

        assert result.status.conditions[0].type == "Initialized"

    @pytest.mark.asyncio
    async def test_missing_object_raises_not_found(self):
        store = NoWatchStore()
        awaiter = ConditionAwaiter(store, Task)

        with pytest.raises(ResourceNotFoundException):
            await awaiter.await_condition(CONTROLLER_IDENTITY, NAMESPACE, "nope", "Initialized", Deadline(1))


class TestWatching:
    @pytest.mark.asyncio
    async def test_condition_set_after_the_write_is_observed(self, watchers):
        store = InMemoryStore()
        task = await seed_task(store)
        awaiter = ConditionAwaiter(store, Task)

        waiting = asyncio.create_task(
            awaiter.await_condition(
                CONTROLLER_IDENTITY, NAMESPACE, task.name, "Initialized", Deadline(2), snapshot=task
            )
        )
        await watchers(store)
        await set_condition(store, task, "Started")
        updated = await set_condition(store, task, "Initialized")

        result = await waiting
        assert result.metadata.resource_version == updated.metadata.resource_version

    @pytest.mark.asyncio
    async def test_change_between_write_and_watch_is_not_missed(self):
        store = InMemoryStore()
        task = await seed_task(store)
        # The controller reacts before the awaiter even starts
        await set_condition(store, task, "Initialized")

        awaiter = ConditionAwaiter(store, Task)
        result = await awaiter.await_condition(
            CONTROLLER_IDENTITY, NAMESPACE, task.name, "Initialized", Deadline(1), snapshot=task
        )

        assert result.status.conditions[0].type == "Initialized"

    @pytest.mark.asyncio
    async def test_desired_false_status(self, watchers):
        store = InMemoryStore()
        task = await seed_task(store)
        awaiter = ConditionAwaiter(store, Task)

        waiting = asyncio.create_task(
            awaiter.await_condition(
                CONTROLLER_IDENTITY,
                NAMESPACE,
                task.name,
                "Initialized",
                Deadline(2),
                desired=ConditionStatus.FALSE,
                snapshot=task,
            )
        )
        await watchers(store)
        await set_condition(store, task, "Initialized", ConditionStatus.FALSE)

        result = await waiting
        assert result.status.conditions[0].status == ConditionStatus.FALSE

    @pytest.mark.asyncio
    async def test_deleted_object_raises_not_found(self, watchers):
        store = InMemoryStore()
        task = await seed_task(store)
        awaiter = ConditionAwaiter(store, Task)

        waiting = asyncio.create_task(
            awaiter.await_condition(
                CONTROLLER_IDENTITY, NAMESPACE, task.name, "Initialized", Deadline(2), snapshot=task
            )
        )
        await watchers(store)
        await store.delete(CONTROLLER_IDENTITY, Task, task.name, NAMESPACE)

        with pytest.raises(ResourceNotFoundException):
            await waiting

    @pytest.mark.asyncio
    async def test_ended_watch_is_resumed(self, watchers):
        store = InMemoryStore()
        task = await seed_task(store)
        awaiter = ConditionAwaiter(store, Task)

        waiting = asyncio.create_task(
            awaiter.await_condition(
                CONTROLLER_IDENTITY, NAMESPACE, task.name, "Initialized", Deadline(2), snapshot=task
            )
        )
        await watchers(store)
        store.close_watches()
        await set_condition(store, task, "Initialized")

        result = await waiting
        assert result.status.conditions[0].type == "Initialized"

    @pytest.mark.asyncio
    async def test_expired_watch_relists(self):
        store = ExpiringWatchStore()
        task = await seed_task(store)
        await set_condition(store, task, "Initialized")
        awaiter = ConditionAwaiter(store, Task)

        # The stale snapshot forces a watch, which expires, the relist finds the condition
        result = await awaiter.await_condition(
            CONTROLLER_IDENTITY, NAMESPACE, task.name, "Initialized", Deadline(1), snapshot=task
        )

        assert store.expired is True
        assert result.status.conditions[0].type == "Initialized"


class TestEventOrdering:
    @pytest.mark.asyncio
    async def test_duplicate_and_stale_events_are_ignored(self):
        snapshot = new_task()
        snapshot.metadata.resource_version = "10"
        events = [
            WatchEvent(EventType.MODIFIED, with_condition(snapshot, "Started", version=11)),
            WatchEvent(EventType.MODIFIED, with_condition(snapshot, "Started", version=11)),
            # Older than the snapshot, must not count even though it carries the condition
            WatchEvent(EventType.MODIFIED, with_condition(snapshot, "Initialized", version=9)),
            WatchEvent(EventType.MODIFIED, with_condition(snapshot, "Initialized", version=12)),
        ]
        store = ScriptedWatchStore(events)
        awaiter = ConditionAwaiter(store, Task)

        result = await awaiter.await_condition(
            CONTROLLER_IDENTITY, NAMESPACE, snapshot.name, "Initialized", Deadline(1), snapshot=snapshot
        )

        assert result.metadata.resource_version == "12"
        assert store.watch_calls == ["10"]

    @pytest.mark.asyncio
    async def test_stale_deleted_event_is_ignored(self):
        snapshot = new_task()
        snapshot.metadata.resource_version = "10"
        events = [
            WatchEvent(EventType.DELETED, with_condition(snapshot, "Started", version=8)),
            WatchEvent(EventType.MODIFIED, with_condition(snapshot, "Initialized", version=11)),
        ]
        store = ScriptedWatchStore(events)
        awaiter = ConditionAwaiter(store, Task)

        result = await awaiter.await_condition(
            CONTROLLER_IDENTITY, NAMESPACE, snapshot.name, "Initialized", Deadline(1), snapshot=snapshot
        )

        assert result.metadata.resource_version == "11"


class TestTimeout:
    @pytest.mark.asyncio
    async def test_times_out_at_deadline(self):
        store = InMemoryStore()
        task = await seed_task(store)
        awaiter = ConditionAwaiter(store, Task)

        started = time.monotonic()
        with pytest.raises(ConditionTimeoutException) as exc_info:
            await awaiter.await_condition(
                CONTROLLER_IDENTITY, NAMESPACE, task.name, "Initialized", Deadline(0.2), snapshot=task
            )
        elapsed = time.monotonic() - started

        assert elapsed < 0.2 + 0.5
        assert "did not get the Initialized condition" in str(exc_info.value)
        assert "True" in str(exc_info.value)
        assert exc_info.value.condition_type == "Initialized"

    @pytest.mark.asyncio
    async def test_times_out_with_a_silent_stream(self):
        # A stream that keeps ending without events must not turn into a hang
        store = ScriptedWatchStore([])
        snapshot = new_task()
        snapshot.metadata.resource_version = "3"
        awaiter = ConditionAwaiter(store, Task)

        with pytest.raises(ConditionTimeoutException):
            await awaiter.await_condition(
                CONTROLLER_IDENTITY, NAMESPACE, snapshot.name, "Canceled", Deadline(0.1), snapshot=snapshot
            )


class TestAwaitMatch:
    @pytest.mark.asyncio
    async def test_matches_an_object_appearing_in_the_list(self, watchers):
        store = InMemoryStore()
        await seed_task(store, "other-task")
        awaiter = ConditionAwaiter(store, Task)

        waiting = asyncio.create_task(
            awaiter.await_match(
                CONTROLLER_IDENTITY,
                NAMESPACE,
                lambda t: t.spec.app_ref.name == "app-guid" and t.name.startswith("wanted"),
                "Initialized",
                Deadline(2),
            )
        )
        await watchers(store)
        wanted = await store.create(CONTROLLER_IDENTITY, new_task("wanted-task"))
        await set_condition(store, wanted, "Initialized")

        result = await waiting
        assert result.name == "wanted-task"

    @pytest.mark.asyncio
    async def test_returns_existing_match_from_the_list(self):
        store = NoWatchStore()
        task = await seed_task(store)
        await set_condition(store, task, "Initialized")
        awaiter = ConditionAwaiter(store, Task)

        result = await awaiter.await_match(
            CONTROLLER_IDENTITY, NAMESPACE, lambda t: True, "Initialized", Deadline(1)
        )

        assert result.name == task.name
