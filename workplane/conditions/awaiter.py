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
Condition awaiter.

Turns asynchronous convergence into a blocking call for the repository layer.
The protocol is two-phase: the caller mutates an object and hands the
post-mutation snapshot (or nothing, in which case the awaiter reads it), the
awaiter evaluates the snapshot and, only if it is not yet satisfied, watches
from the snapshot's resource version. Nothing that happens after the mutation
can be missed, and an already-satisfied condition never opens a watch.

Watch delivery is at-least-once and not strictly ordered, so every event is
evaluated against the full object it carries and events older than the newest
version already seen for that object are ignored.
"""

import asyncio
import logging
from typing import Callable, Dict, Generic, Optional, Type

from workplane.config import settings
from workplane.exceptions import ConditionTimeoutException, ResourceNotFoundException, WatchExpiredException
from workplane.models.conditions import ConditionStatus, find_status_condition
from workplane.store.base import EventType, Identity, LabelSelector, R, Store
from workplane.utils.deadline import Deadline

logger = logging.getLogger(__name__)

Predicate = Callable[[R], bool]


def condition_is(condition_type: str, desired: ConditionStatus = ConditionStatus.TRUE) -> Predicate:
    """Predicate matching objects whose condition_type has status desired"""

    def check(obj) -> bool:
        condition = find_status_condition(obj.status.conditions, condition_type)
        return condition is not None and condition.status == desired

    return check


def _version_of(obj) -> Optional[int]:
    try:
        return int(obj.metadata.resource_version)
    except (TypeError, ValueError):
        return None


class ConditionAwaiter(Generic[R]):
    """Waits for a condition on objects of one kind"""

    def __init__(self, store: Store, model: Type[R]):
        self.store = store
        self.model = model

    async def await_condition(
        self,
        identity: Identity,
        namespace: Optional[str],
        name: str,
        condition_type: str,
        deadline: Deadline,
        desired: ConditionStatus = ConditionStatus.TRUE,
        snapshot: Optional[R] = None,
    ) -> R:
        """
        Block until the named object's condition_type has status desired.

        Args:
            snapshot: The object as returned by the caller's own write, if any.
                When omitted the object is read first.

        Returns:
            The first object version satisfying the condition

        Raises:
            ConditionTimeoutException: deadline elapsed first
            ResourceNotFoundException: the object is absent or got deleted
        """
        return await self._await(
            identity,
            namespace,
            condition_is(condition_type, desired),
            deadline,
            condition_type=condition_type,
            desired=desired.value,
            name=name,
            snapshot=snapshot,
        )

    async def await_match(
        self,
        identity: Identity,
        namespace: Optional[str],
        predicate: Predicate,
        condition_type: str,
        deadline: Deadline,
        desired: ConditionStatus = ConditionStatus.TRUE,
        label_selector: Optional[LabelSelector] = None,
    ) -> R:
        """
        Block until some object in namespace matches predicate and has
        condition_type set to desired. Starts with a list, then watches the
        collection from the list's resource version.
        """
        check = condition_is(condition_type, desired)
        return await self._await(
            identity,
            namespace,
            lambda obj: predicate(obj) and check(obj),
            deadline,
            condition_type=condition_type,
            desired=desired.value,
            label_selector=label_selector,
        )

    async def _await(
        self,
        identity: Identity,
        namespace: Optional[str],
        predicate: Predicate,
        deadline: Deadline,
        condition_type: str,
        desired: str,
        name: Optional[str] = None,
        label_selector: Optional[LabelSelector] = None,
        snapshot: Optional[R] = None,
    ) -> R:
        if snapshot is not None and predicate(snapshot):
            return snapshot

        try:
            return await asyncio.wait_for(
                self._run(identity, namespace, predicate, name, label_selector, snapshot),
                timeout=deadline.remaining(),
            )
        except asyncio.TimeoutError:
            target = name or "matching object"
            logger.info(f"Timed out waiting for {self.model.KIND} {target} condition {condition_type}={desired}")
            raise ConditionTimeoutException(
                self.model.KIND, target, condition_type, desired, deadline.timeout
            ) from None

    async def _initial(
        self,
        identity: Identity,
        namespace: Optional[str],
        predicate: Predicate,
        name: Optional[str],
        label_selector: Optional[LabelSelector],
        seen: Dict[str, int],
    ):
        """Read the current state, returns (match or None, resource version to watch from)"""
        if name is not None:
            obj = await self.store.get(identity, self.model, name, namespace)
            self._remember(seen, obj)
            return (obj if predicate(obj) else None), obj.metadata.resource_version

        result = await self.store.list(identity, self.model, namespace, label_selector)
        for obj in result.items:
            self._remember(seen, obj)
            if predicate(obj):
                return obj, result.resource_version
        return None, result.resource_version

    @staticmethod
    def _remember(seen: Dict[str, int], obj) -> bool:
        """Record obj's version, False when it is not newer than what was already seen"""
        version = _version_of(obj)
        if version is None:
            return True
        if seen.get(obj.name, -1) >= version:
            return False
        seen[obj.name] = version
        return True

    async def _run(
        self,
        identity: Identity,
        namespace: Optional[str],
        predicate: Predicate,
        name: Optional[str],
        label_selector: Optional[LabelSelector],
        snapshot: Optional[R],
    ) -> R:
        seen: Dict[str, int] = {}
        if snapshot is not None:
            self._remember(seen, snapshot)
            resource_version = snapshot.metadata.resource_version
        else:
            match, resource_version = await self._initial(identity, namespace, predicate, name, label_selector, seen)
            if match is not None:
                return match

        while True:
            received = False
            try:
                async with self.store.watch(
                    identity,
                    self.model,
                    namespace=namespace,
                    resource_version=resource_version,
                    label_selector=label_selector,
                    name=name,
                ) as events:
                    async for event in events:
                        received = True
                        obj = event.object
                        if not self._remember(seen, obj):
                            continue
                        resource_version = obj.metadata.resource_version or resource_version
                        if event.type == EventType.DELETED:
                            if name is not None:
                                raise ResourceNotFoundException(self.model.KIND, name, namespace)
                            continue
                        if predicate(obj):
                            return obj
            except WatchExpiredException:
                logger.debug(f"Watch on {self.model.KIND} expired, listing again")
                match, resource_version = await self._initial(
                    identity, namespace, predicate, name, label_selector, seen
                )
                if match is not None:
                    return match
                continue
            logger.debug(f"Watch on {self.model.KIND} ended, resuming from version {resource_version}")
            if not received:
                await asyncio.sleep(settings.retry_base_delay)
