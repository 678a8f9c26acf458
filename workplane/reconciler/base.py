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
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Generic, List, Optional, Tuple, Type

from workplane.exceptions import ResourceNotFoundException
from workplane.models.conditions import Condition, ConditionStatus, set_status_condition
from workplane.models.meta import ObjectKey, Resource, utc_now
from workplane.store.base import CONTROLLER_IDENTITY, Identity, R, Store

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Maps a changed object of a related kind to the keys of the objects to reconcile
KeyMapper = Callable[[Resource], Awaitable[List[ObjectKey]]]


@dataclass
class ReconcileResult:
    requeue: bool = False
    requeue_after: Optional[float] = None


def is_stale(obj: Resource) -> bool:
    """
    True when the object's spec generation is behind the generation its status
    was computed for. Such an object is a stale read and must not be processed.
    """
    return obj.metadata.generation < obj.status.observed_generation


def set_condition(
    conditions: List[Condition],
    condition_type: str,
    status: ConditionStatus,
    reason: str,
    message: str,
    generation: int,
    now: datetime,
) -> None:
    set_status_condition(
        conditions,
        Condition(
            type=condition_type,
            status=status,
            reason=reason,
            message=message,
            observed_generation=generation,
        ),
        now=now,
    )


class Controller(ABC, Generic[R]):
    """
    Reconciles objects of one kind.

    Subclasses keep the decision logic in a pure transition function and use
    reconcile_object only to gather inputs, call it, and write the result.
    """

    model: Type[R]

    def __init__(self, store: Store, identity: Identity = CONTROLLER_IDENTITY, clock: Clock = utc_now):
        self.store = store
        self.identity = identity
        self.clock = clock

    @property
    def name(self) -> str:
        return self.model.KIND

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        try:
            obj = await self.store.get(self.identity, self.model, key.name, key.namespace)
        except ResourceNotFoundException:
            logger.debug(f"{self.model.KIND} {key} is gone")
            await self.finalize(key)
            return ReconcileResult()

        if is_stale(obj):
            logger.debug(
                f"Skipping stale read of {self.model.KIND} {key}: generation {obj.metadata.generation} "
                f"< observed {obj.status.observed_generation}"
            )
            return ReconcileResult()
        return await self.reconcile_object(obj)

    @abstractmethod
    async def reconcile_object(self, obj: R) -> ReconcileResult:
        pass

    async def finalize(self, key: ObjectKey) -> None:
        """Clean up after an object that no longer exists"""

    def related(self) -> List[Tuple[Type[Resource], KeyMapper]]:
        """Other kinds whose changes should trigger reconciliation, with their key mappers"""
        return []

    async def get_optional(self, model: Type[Resource], name: str, namespace: Optional[str] = None):
        if not name:
            return None
        try:
            return await self.store.get(self.identity, model, name, namespace)
        except ResourceNotFoundException:
            return None

    async def write_status(self, obj: R, status) -> R:
        """Persist status through the status subresource, skipping no-op writes"""
        if status == obj.status:
            return obj
        updated = obj.copy_deep()
        updated.status = status
        result = await self.store.update_status(self.identity, updated)
        logger.debug(f"Updated status of {self.model.KIND} {obj.key}")
        return result


def owner_mapper(owner_kind: str) -> KeyMapper:
    """Map an owned object to its controlling owner of owner_kind in the same namespace"""

    async def map_keys(obj: Resource) -> List[ObjectKey]:
        return [
            ObjectKey(obj.namespace, ref.name)
            for ref in obj.metadata.owner_references
            if ref.kind == owner_kind and ref.controller
        ]

    return map_keys
