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
Declarative store adapter contract.

Every call takes the caller's Identity explicitly; the store evaluates
permissions for that identity and never falls back to an ambient one.
Objects are versioned: metadata.resource_version is the optimistic concurrency
token checked by update/update_status, metadata.generation is bumped by the
store whenever an update changes anything outside metadata and status.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncContextManager, AsyncIterator, Dict, Generic, List, Mapping, Optional, Tuple, Type, TypeVar

from workplane.models.meta import Resource

R = TypeVar("R", bound=Resource)

# Equality-based label selector, a None value means "key exists"
LabelSelector = Mapping[str, Optional[str]]


@dataclass(frozen=True)
class Identity:
    """The caller on whose behalf a store operation runs"""

    user: str
    token: Optional[str] = None
    groups: Tuple[str, ...] = ()


CONTROLLER_IDENTITY = Identity(user="system:serviceaccount:workplane-system:workplane-controllers")


class EventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class WatchEvent(Generic[R]):
    type: EventType
    object: R


@dataclass
class ResourceList(Generic[R]):
    items: List[R] = field(default_factory=list)
    # Version of the collection at list time, watch from here to see every later change
    resource_version: str = ""


def matches_labels(labels: Optional[Dict[str, str]], selector: Optional[LabelSelector]) -> bool:
    if not selector:
        return True
    labels = labels or {}
    for key, value in selector.items():
        if key not in labels:
            return False
        if value is not None and labels[key] != value:
            return False
    return True


def format_label_selector(selector: Optional[LabelSelector]) -> Optional[str]:
    if not selector:
        return None
    return ",".join(key if value is None else f"{key}={value}" for key, value in selector.items())


class Store(ABC):
    """Abstract base class for declarative store adapters"""

    @abstractmethod
    async def get(self, identity: Identity, model: Type[R], name: str, namespace: Optional[str] = None) -> R:
        """
        Get a single object

        Raises:
            ResourceNotFoundException: the object does not exist
            ForbiddenException: identity may not read it
        """

    @abstractmethod
    async def list(
        self,
        identity: Identity,
        model: Type[R],
        namespace: Optional[str] = None,
        label_selector: Optional[LabelSelector] = None,
    ) -> ResourceList[R]:
        """
        List objects of a kind, in one namespace or (namespace=None) in every
        namespace the identity may list.
        """

    @abstractmethod
    def watch(
        self,
        identity: Identity,
        model: Type[R],
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
        label_selector: Optional[LabelSelector] = None,
        name: Optional[str] = None,
    ) -> AsyncContextManager[AsyncIterator[WatchEvent[R]]]:
        """
        Open a watch stream, used as

            async with store.watch(identity, Task, namespace="ns", resource_version=rv) as events:
                async for event in events:
                    ...

        Events strictly after resource_version are delivered, at least once.
        The stream may end at any time, callers re-watch from the last version
        they saw. WatchExpiredException means that version is no longer
        available and the caller has to list again.
        """

    @abstractmethod
    async def create(self, identity: Identity, obj: R) -> R:
        """Create obj, status is dropped for kinds with a status subresource"""

    @abstractmethod
    async def update(self, identity: Identity, obj: R) -> R:
        """
        Replace metadata and spec of obj.

        When obj carries a resource_version the write is rejected with
        ConflictException if the stored object has moved on. Status is never
        written through this call.
        """

    @abstractmethod
    async def update_status(self, identity: Identity, obj: R) -> R:
        """Replace only the status of obj, same concurrency rules as update"""

    @abstractmethod
    async def delete(self, identity: Identity, model: Type[R], name: str, namespace: Optional[str] = None) -> None:
        """Delete an object, dependents are garbage collected through owner references"""


def create_store(store_type: Optional[str] = None, **kwargs) -> Store:
    """
    Factory function to create a store adapter

    Args:
        store_type: Type of store ('memory' or 'kubernetes'), defaults to settings.store_type
        **kwargs: Additional arguments for the store

    Returns:
        Store instance
    """
    from workplane.config import settings

    store_type = store_type or settings.store_type
    if store_type == "memory":
        from workplane.store.memory import InMemoryStore

        return InMemoryStore(**kwargs)
    elif store_type == "kubernetes":
        from workplane.store.kubernetes import KubernetesStore

        return KubernetesStore(**kwargs)
    else:
        raise ValueError(f"Unknown store type: {store_type}")
