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

"""
Task reconciliation.

A task is initialized once its app and the app's current droplet resolve: it
gets a per-app sequence id, its resource limits and a droplet reference. The
runner side is a TaskWorkload owned by the task, whose Started, Succeeded and
Failed conditions are mirrored onto the task. Cancelling deletes the workload
and sets the Canceled marker, which overrides every other condition when the
task is presented to callers.
"""

import logging
from datetime import datetime
from typing import Optional

from workplane.config import settings
from workplane.exceptions import AlreadyExistsException, InvalidStateException, ResourceNotFoundException
from workplane.models.conditions import ConditionStatus, find_status_condition, is_status_condition_true
from workplane.models.meta import LocalObjectReference, ObjectMeta
from workplane.models.workloads import (
    REASON_APP_DROPLET_MISSING,
    REASON_APP_NOT_FOUND,
    REASON_TASK_CANCELED,
    TASK_CANCELED,
    TASK_FAILED,
    TASK_INITIALIZED,
    TASK_STARTED,
    TASK_SUCCEEDED,
    App,
    Build,
    BuildDroplet,
    Task,
    TaskStatus,
    TaskWorkload,
    TaskWorkloadSpec,
)
from workplane.reconciler.base import Controller, ReconcileResult, is_stale, owner_mapper, set_condition
from workplane.utils.deadline import Deadline
from workplane.utils.retry import retry_transient

logger = logging.getLogger(__name__)

TASK_CANCELLED_MESSAGE = "task was cancelled"

# Runner conditions copied verbatim from the TaskWorkload
MIRRORED_CONDITIONS = (TASK_STARTED, TASK_SUCCEEDED, TASK_FAILED)


def compute_task_status(
    task: Task,
    app: Optional[App],
    droplet: Optional[BuildDroplet],
    workload: Optional[TaskWorkload],
    sequence_id: Optional[int],
    now: datetime,
    memory_mb: Optional[int] = None,
    disk_mb: Optional[int] = None,
) -> TaskStatus:
    """
    Next status of task. A stale task is returned unchanged.

    app, droplet and sequence_id are only consulted while the task is not yet
    initialized; a sequence id is required as soon as app and droplet resolve.
    """
    if is_stale(task):
        return task.status.model_copy(deep=True)

    status = task.status.model_copy(deep=True)
    generation = task.metadata.generation
    status.observed_generation = generation

    if task.spec.canceled:
        set_condition(
            status.conditions,
            TASK_CANCELED,
            ConditionStatus.TRUE,
            REASON_TASK_CANCELED,
            TASK_CANCELLED_MESSAGE,
            generation,
            now,
        )
        return status

    if not is_status_condition_true(status.conditions, TASK_INITIALIZED):
        if app is None:
            set_condition(
                status.conditions,
                TASK_INITIALIZED,
                ConditionStatus.FALSE,
                REASON_APP_NOT_FOUND,
                f"app {task.spec.app_ref.name} not found",
                generation,
                now,
            )
            return status
        if droplet is None:
            set_condition(
                status.conditions,
                TASK_INITIALIZED,
                ConditionStatus.FALSE,
                REASON_APP_DROPLET_MISSING,
                f"app {app.name} does not have a current droplet",
                generation,
                now,
            )
            return status
        if sequence_id is None:
            raise InvalidStateException(f"task {task.name} cannot be initialized without a sequence id")

        status.sequence_id = sequence_id
        status.memory_mb = memory_mb if memory_mb is not None else settings.default_task_memory_mb
        status.disk_quota_mb = disk_mb if disk_mb is not None else settings.default_task_disk_mb
        status.droplet_ref = app.spec.current_droplet_ref.model_copy()
        set_condition(
            status.conditions, TASK_INITIALIZED, ConditionStatus.TRUE, "Initialized", "", generation, now
        )

    if workload is not None:
        for condition_type in MIRRORED_CONDITIONS:
            source = find_status_condition(workload.status.conditions, condition_type)
            if source is not None:
                set_condition(
                    status.conditions,
                    condition_type,
                    source.status,
                    source.reason,
                    source.message,
                    generation,
                    source.last_transition_time or now,
                )
    return status


class TaskController(Controller[Task]):
    model = Task

    def related(self):
        return [(TaskWorkload, owner_mapper(Task.KIND))]

    async def reconcile_object(self, task: Task) -> ReconcileResult:
        namespace = task.namespace

        if task.spec.canceled:
            await self._delete_workload(task)
            await self.write_status(task, compute_task_status(task, None, None, None, None, self.clock()))
            return ReconcileResult()

        app = None
        droplet = None
        sequence_id = None
        initialized = is_status_condition_true(task.status.conditions, TASK_INITIALIZED)
        if initialized:
            droplet = await self._droplet(task.status.droplet_ref.name, namespace)
        else:
            app = await self.get_optional(App, task.spec.app_ref.name, namespace)
            if app is not None:
                droplet = await self._droplet(app.spec.current_droplet_ref.name, namespace)
            if app is not None and droplet is not None:
                sequence_id = await self._next_sequence_id(app)

        workload = await self.get_optional(TaskWorkload, task.name, namespace)
        status = compute_task_status(task, app, droplet, workload, sequence_id, self.clock())

        if workload is None and droplet is not None and is_status_condition_true(status.conditions, TASK_INITIALIZED):
            await self._create_workload(task, status, droplet)

        await self.write_status(task, status)
        return ReconcileResult()

    async def _droplet(self, build_name: str, namespace: str) -> Optional[BuildDroplet]:
        build = await self.get_optional(Build, build_name, namespace)
        return build.status.droplet if build is not None else None

    async def _next_sequence_id(self, app: App) -> int:
        """Increment the app's task sequence annotation, retrying on conflicting writers"""
        annotation = settings.task_sequence_annotation

        async def bump() -> int:
            current = await self.store.get(self.identity, App, app.name, app.namespace)
            raw = current.metadata.annotations.get(annotation, "0")
            try:
                sequence_id = int(raw) + 1
            except ValueError:
                raise InvalidStateException(
                    f"expected {annotation} on app {app.name} to be an integer, got {raw!r}"
                ) from None
            current.metadata.annotations[annotation] = str(sequence_id)
            await self.store.update(self.identity, current)
            return sequence_id

        return await retry_transient(
            bump, Deadline(settings.reconcile_timeout), description=f"task sequence of {app.key}"
        )

    async def _create_workload(self, task: Task, status: TaskStatus, droplet: BuildDroplet) -> None:
        workload = TaskWorkload(
            metadata=ObjectMeta(name=task.name, namespace=task.namespace),
            spec=TaskWorkloadSpec(
                task_ref=LocalObjectReference(name=task.name),
                image=droplet.registry.image,
                image_pull_secrets=[s.model_copy() for s in droplet.registry.image_pull_secrets],
                command=task.spec.command,
                memory_mb=status.memory_mb,
                disk_mb=status.disk_quota_mb,
            ),
        )
        workload.set_owner(task)
        try:
            await self.store.create(self.identity, workload)
            logger.info(f"Created task workload {workload.key}")
        except AlreadyExistsException:
            logger.debug(f"Task workload {workload.key} already exists")

    async def _delete_workload(self, task: Task) -> None:
        try:
            await self.store.delete(self.identity, TaskWorkload, task.name, task.namespace)
            logger.info(f"Deleted workload of cancelled task {task.key}")
        except ResourceNotFoundException:
            pass
