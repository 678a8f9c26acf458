"""
Unit tests for TaskRepository.

The task controller runs in a background control loop against the in-memory
store, so create and cancel exercise the full write, reconcile and await path.
"""

import time

import pytest

from workplane.exceptions import ConditionTimeoutException, ForbiddenException, ResourceNotFoundException
from workplane.models.conditions import Condition, ConditionStatus
from workplane.models.meta import LocalObjectReference, ObjectMeta
from workplane.models.tenants import Namespace
from workplane.models.workloads import Task, TaskSpec, TaskWorkload
from workplane.reconciler.task import TaskController
from workplane.repositories.base import Metadata, MetadataPatch
from workplane.repositories.task_repository import (
    CreateTaskMessage,
    ListTaskMessage,
    TaskRepository,
    task_state,
)
from workplane.store.base import CONTROLLER_IDENTITY, Identity
from workplane.store.memory import InMemoryStore
from workplane.utils.deadline import Deadline

NAMESPACE = "space-ns"
USER = Identity(user="alice", token="alice-token")


def create_message(**kwargs):
    return CreateTaskMessage(command="rake db:migrate", space_guid=NAMESPACE, app_guid="app-guid", **kwargs)


def task_with(*conditions, canceled=False):
    task = Task(
        metadata=ObjectMeta(name="task-guid", namespace=NAMESPACE),
        spec=TaskSpec(command="echo", app_ref=LocalObjectReference(name="app-guid"), canceled=canceled),
    )
    for condition_type, status, reason, message in conditions:
        task.status.conditions.append(Condition(type=condition_type, status=status, reason=reason, message=message))
    return task


TRUE = ConditionStatus.TRUE


class TestTaskState:
    def test_pending(self):
        assert task_state(task_with(("Initialized", TRUE, "", ""))) == ("PENDING", "")

    def test_running(self):
        assert task_state(task_with(("Started", TRUE, "", ""))) == ("RUNNING", "")

    def test_succeeded(self):
        assert task_state(task_with(("Started", TRUE, "", ""), ("Succeeded", TRUE, "", ""))) == ("SUCCEEDED", "")

    def test_failed_with_runner_message(self):
        task = task_with(("Started", TRUE, "", ""), ("Failed", TRUE, "Error", "exit status 3"))
        assert task_state(task) == ("FAILED", "exit status 3")

    def test_failed_by_cancellation(self):
        task = task_with(("Failed", TRUE, "TaskCanceled", "killed"))
        assert task_state(task) == ("FAILED", "task was cancelled")

    def test_canceling_until_acknowledged(self):
        assert task_state(task_with(("Started", TRUE, "", ""), canceled=True)) == ("CANCELING", "")

    def test_canceled_marker_wins(self):
        task = task_with(
            ("Started", TRUE, "", ""),
            ("Succeeded", TRUE, "", ""),
            ("Canceled", TRUE, "TaskCanceled", "task was cancelled"),
            canceled=True,
        )
        assert task_state(task) == ("FAILED", "task was cancelled")


class TestTaskRepository:
    @pytest.mark.asyncio
    async def test_create_waits_for_initialization(self, store, make_staged_app, run_controllers):
        await make_staged_app(NAMESPACE)
        repo = TaskRepository(store)

        async with run_controllers(TaskController(store)):
            record = await repo.create_task(
                CONTROLLER_IDENTITY, create_message(metadata=Metadata(labels={"team": "a"})), Deadline(5)
            )

        assert record.sequence_id == 1
        assert record.state == "PENDING"
        assert record.droplet_guid == "droplet-guid"
        assert record.memory_mb == 256
        assert record.disk_mb == 128
        assert record.labels == {"team": "a"}
        assert record.created_at is not None

    @pytest.mark.asyncio
    async def test_create_times_out_without_controller(self, store, make_staged_app):
        await make_staged_app(NAMESPACE)
        repo = TaskRepository(store)

        started = time.monotonic()
        with pytest.raises(ConditionTimeoutException) as exc_info:
            await repo.create_task(CONTROLLER_IDENTITY, create_message(), Deadline(0.2))

        assert time.monotonic() - started < 1.0
        assert "did not get the Initialized condition" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_uninitialized_task_is_not_visible(self, store, seed, make_namespace):
        await make_namespace(NAMESPACE)
        task = await seed(task_with())

        with pytest.raises(ResourceNotFoundException):
            await TaskRepository(store).get_task(CONTROLLER_IDENTITY, task.name)

    @pytest.mark.asyncio
    async def test_get_and_list(self, store, make_staged_app, run_controllers):
        await make_staged_app(NAMESPACE)
        repo = TaskRepository(store)

        async with run_controllers(TaskController(store)):
            first = await repo.create_task(CONTROLLER_IDENTITY, create_message(), Deadline(5))
            second = await repo.create_task(CONTROLLER_IDENTITY, create_message(), Deadline(5))

        fetched = await repo.get_task(CONTROLLER_IDENTITY, first.guid)
        assert fetched.sequence_id == 1
        assert sorted(r.sequence_id for r in await repo.list_tasks(CONTROLLER_IDENTITY)) == [1, 2]
        only_second = await repo.list_tasks(CONTROLLER_IDENTITY, ListTaskMessage(sequence_ids=[2]))
        assert [r.guid for r in only_second] == [second.guid]
        assert await repo.list_tasks(CONTROLLER_IDENTITY, ListTaskMessage(app_guids=["other-app"])) == []

    @pytest.mark.asyncio
    async def test_cancel(self, store, make_staged_app, run_controllers):
        await make_staged_app(NAMESPACE)
        repo = TaskRepository(store)

        async with run_controllers(TaskController(store)):
            record = await repo.create_task(CONTROLLER_IDENTITY, create_message(), Deadline(5))
            canceled = await repo.cancel_task(CONTROLLER_IDENTITY, record.guid, Deadline(5))

        assert canceled.state == "FAILED"
        assert canceled.failure_reason == "task was cancelled"
        assert (await store.list(CONTROLLER_IDENTITY, TaskWorkload, NAMESPACE)).items == []

    @pytest.mark.asyncio
    async def test_cancel_unknown_task(self, store):
        with pytest.raises(ResourceNotFoundException):
            await TaskRepository(store).cancel_task(CONTROLLER_IDENTITY, "missing", Deadline(1))

    @pytest.mark.asyncio
    async def test_patch_metadata(self, store, make_staged_app, run_controllers):
        await make_staged_app(NAMESPACE)
        repo = TaskRepository(store)
        async with run_controllers(TaskController(store)):
            record = await repo.create_task(
                CONTROLLER_IDENTITY,
                create_message(metadata=Metadata(labels={"keep": "1", "drop": "1"}, annotations={"a": "1"})),
                Deadline(5),
            )

        patched = await repo.patch_task_metadata(
            CONTROLLER_IDENTITY,
            record.guid,
            MetadataPatch(labels={"drop": None, "new": "2"}, annotations={"a": "2"}),
            Deadline(1),
        )

        assert patched.labels == {"keep": "1", "new": "2"}
        assert patched.annotations == {"a": "2"}

    @pytest.mark.asyncio
    async def test_invisible_namespaces_look_empty(self):
        store = InMemoryStore(authorizer=lambda identity, verb, kind, namespace: identity != USER)
        await store.create(CONTROLLER_IDENTITY, Namespace(metadata=ObjectMeta(name=NAMESPACE)))
        await store.create(CONTROLLER_IDENTITY, task_with())
        repo = TaskRepository(store)

        assert await repo.list_tasks(USER) == []
        with pytest.raises(ResourceNotFoundException):
            await repo.get_task(USER, "task-guid")

    @pytest.mark.asyncio
    async def test_caller_with_one_space_sees_only_that_space(self):
        def only_space_a(identity, verb, kind, namespace):
            return identity == CONTROLLER_IDENTITY or namespace == "space-a"

        store = InMemoryStore(authorizer=only_space_a)
        for namespace in ("space-a", "space-b"):
            await store.create(CONTROLLER_IDENTITY, Namespace(metadata=ObjectMeta(name=namespace)))
            task = task_with(("Initialized", TRUE, "", ""))
            task.metadata.name = f"task-in-{namespace}"
            task.metadata.namespace = namespace
            created = await store.create(CONTROLLER_IDENTITY, task)
            created.status = task.status
            await store.update_status(CONTROLLER_IDENTITY, created)
        repo = TaskRepository(store)

        assert [t.guid for t in await repo.list_tasks(USER)] == ["task-in-space-a"]
        assert (await repo.get_task(USER, "task-in-space-a")).space_guid == "space-a"
        with pytest.raises(ResourceNotFoundException):
            await repo.get_task(USER, "task-in-space-b")
        # The caller could never have listed across namespaces itself
        with pytest.raises(ForbiddenException):
            await store.list(USER, Task)
