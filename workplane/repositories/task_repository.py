# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from workplane.conditions.awaiter import ConditionAwaiter
from workplane.exceptions import ResourceNotFoundException
from workplane.models.conditions import find_status_condition, is_status_condition_true
from workplane.models.meta import LocalObjectReference, ObjectMeta, new_guid
from workplane.models.workloads import (
    REASON_TASK_CANCELED,
    TASK_CANCELED,
    TASK_FAILED,
    TASK_INITIALIZED,
    TASK_STARTED,
    TASK_SUCCEEDED,
    Task,
    TaskSpec,
)
from workplane.reconciler.task import TASK_CANCELLED_MESSAGE
from workplane.repositories.base import Metadata, MetadataPatch, Repository
from workplane.store.base import CONTROLLER_IDENTITY, Identity, Store
from workplane.utils.deadline import Deadline
from workplane.utils.retry import retry_transient

logger = logging.getLogger(__name__)

TASK_STATE_PENDING = "PENDING"
TASK_STATE_RUNNING = "RUNNING"
TASK_STATE_SUCCEEDED = "SUCCEEDED"
TASK_STATE_FAILED = "FAILED"
TASK_STATE_CANCELING = "CANCELING"


@dataclass
class TaskRecord:
    guid: str
    space_guid: str
    command: str
    app_guid: str
    sequence_id: int
    memory_mb: int
    disk_mb: int
    droplet_guid: str
    state: str
    failure_reason: str = ""
    created_at: Optional[datetime] = None
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)


@dataclass
class CreateTaskMessage:
    command: str
    space_guid: str
    app_guid: str
    metadata: Metadata = field(default_factory=Metadata)


@dataclass
class ListTaskMessage:
    app_guids: List[str] = field(default_factory=list)
    sequence_ids: List[int] = field(default_factory=list)


def task_state(task: Task) -> Tuple[str, str]:
    """
    Externally visible (state, failure reason) of a task.

    A Canceled marker wins over every other condition.
    """
    conditions = task.status.conditions
    if is_status_condition_true(conditions, TASK_CANCELED):
        return TASK_STATE_FAILED, TASK_CANCELLED_MESSAGE
    if task.spec.canceled:
        return TASK_STATE_CANCELING, ""
    if is_status_condition_true(conditions, TASK_SUCCEEDED):
        return TASK_STATE_SUCCEEDED, ""
    if is_status_condition_true(conditions, TASK_FAILED):
        failed = find_status_condition(conditions, TASK_FAILED)
        if failed.reason == REASON_TASK_CANCELED:
            return TASK_STATE_FAILED, TASK_CANCELLED_MESSAGE
        return TASK_STATE_FAILED, failed.message
    if is_status_condition_true(conditions, TASK_STARTED):
        return TASK_STATE_RUNNING, ""
    return TASK_STATE_PENDING, ""


def task_to_record(task: Task) -> TaskRecord:
    state, failure_reason = task_state(task)
    return TaskRecord(
        guid=task.name,
        space_guid=task.namespace,
        command=task.spec.command,
        app_guid=task.spec.app_ref.name,
        sequence_id=task.status.sequence_id,
        memory_mb=task.status.memory_mb,
        disk_mb=task.status.disk_quota_mb,
        droplet_guid=task.status.droplet_ref.name,
        state=state,
        failure_reason=failure_reason,
        created_at=task.metadata.creation_timestamp,
        labels=dict(task.metadata.labels),
        annotations=dict(task.metadata.annotations),
    )


class TaskRepository(Repository):
    def __init__(self, store: Store, lookup_identity: Identity = CONTROLLER_IDENTITY):
        super().__init__(store, lookup_identity)
        self.awaiter: ConditionAwaiter[Task] = ConditionAwaiter(store, Task)

    async def create_task(self, identity: Identity, message: CreateTaskMessage, deadline: Deadline) -> TaskRecord:
        """Create a task and wait until the task controller has initialized it"""
        task = Task(
            metadata=ObjectMeta(
                name=new_guid(),
                namespace=message.space_guid,
                labels=dict(message.metadata.labels),
                annotations=dict(message.metadata.annotations),
            ),
            spec=TaskSpec(command=message.command, app_ref=LocalObjectReference(name=message.app_guid)),
        )
        created = await self.store.create(identity, task)
        logger.info(f"Created task {created.key} for app {message.app_guid}")

        initialized = await self.awaiter.await_condition(
            identity, created.namespace, created.name, TASK_INITIALIZED, deadline, snapshot=created
        )
        return task_to_record(initialized)

    async def get_task(self, identity: Identity, guid: str) -> TaskRecord:
        """Tasks are not visible until they have been initialized"""
        task = await self.locate(identity, Task, guid)
        if not is_status_condition_true(task.status.conditions, TASK_INITIALIZED):
            raise ResourceNotFoundException(Task.KIND, guid, task.namespace)
        return task_to_record(task)

    async def list_tasks(self, identity: Identity, message: Optional[ListTaskMessage] = None) -> List[TaskRecord]:
        message = message or ListTaskMessage()
        records = []
        for task in await self.list_visible(identity, Task):
            if message.app_guids and task.spec.app_ref.name not in message.app_guids:
                continue
            if message.sequence_ids and task.status.sequence_id not in message.sequence_ids:
                continue
            records.append(task_to_record(task))
        return records

    async def cancel_task(self, identity: Identity, guid: str, deadline: Deadline) -> TaskRecord:
        """Request cancellation and wait for the controller to acknowledge it"""
        located = await self.locate(identity, Task, guid)

        async def request_cancel() -> Task:
            current = await self.store.get(identity, Task, guid, located.namespace)
            if current.spec.canceled:
                return current
            current.spec.canceled = True
            return await self.store.update(identity, current)

        updated = await retry_transient(request_cancel, deadline, description=f"cancel of task {guid}")
        logger.info(f"Requested cancellation of task {updated.key}")
        canceled = await self.awaiter.await_condition(
            identity, updated.namespace, updated.name, TASK_CANCELED, deadline, snapshot=updated
        )
        return task_to_record(canceled)

    async def patch_task_metadata(
        self, identity: Identity, guid: str, patch: MetadataPatch, deadline: Deadline
    ) -> TaskRecord:
        task = await self.patch_metadata(identity, Task, guid, patch, deadline)
        return task_to_record(task)
