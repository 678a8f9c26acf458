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
In-process implementation of the store contract.

Used by the unit tests and by single-process deployments (store_type=memory).
It reproduces the store semantics the core depends on: a global monotonically
increasing resource version, generation bumps on spec changes, a status
subresource, watch replay from a resource version, cascading deletion of
namespace contents and owner-reference garbage collection.
"""

import asyncio
import copy
import logging
import uuid
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional, Set, Tuple, Type

from workplane.exceptions import (
    AlreadyExistsException,
    ConflictException,
    ForbiddenException,
    InvalidStateException,
    ResourceNotFoundException,
    WatchExpiredException,
)
from workplane.models.meta import Resource, kind_for, utc_now
from workplane.models.tenants import Namespace
from workplane.store.base import (
    EventType,
    Identity,
    LabelSelector,
    R,
    ResourceList,
    Store,
    WatchEvent,
    matches_labels,
)

logger = logging.getLogger(__name__)

# (identity, verb, kind, namespace) -> allowed
Authorizer = Callable[[Identity, str, str, Optional[str]], bool]

_Key = Tuple[str, Optional[str], str]

# Fields that never take part in generation bookkeeping
_NON_SPEC_FIELDS = ("metadata", "status", "apiVersion", "kind")

_CLOSED = object()


class _Watcher:
    def __init__(self, kind: str, namespace: Optional[str], name: Optional[str], selector: Optional[LabelSelector]):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.selector = selector
        self.queue: asyncio.Queue = asyncio.Queue()

    def wants(self, kind: str, data: Dict[str, Any]) -> bool:
        meta = data["metadata"]
        if kind != self.kind:
            return False
        if self.namespace is not None and meta.get("namespace") != self.namespace:
            return False
        if self.name is not None and meta.get("name") != self.name:
            return False
        return matches_labels(meta.get("labels"), self.selector)


class InMemoryStore(Store):
    def __init__(self, authorizer: Optional[Authorizer] = None, history_size: int = 1000):
        self._authorizer = authorizer
        self._objects: Dict[_Key, Dict[str, Any]] = {}
        self._resource_version = 0
        # (resource_version, kind, event type, object) of recent writes, for watch replay
        self._history: Deque[Tuple[int, str, EventType, Dict[str, Any]]] = deque(maxlen=history_size)
        self._watchers: Set[_Watcher] = set()

    @property
    def resource_version(self) -> str:
        return str(self._resource_version)

    def _authorize(self, identity: Identity, verb: str, kind: str, namespace: Optional[str]) -> None:
        if self._authorizer is not None and not self._authorizer(identity, verb, kind, namespace):
            raise ForbiddenException(identity.user, verb, kind, namespace)

    @staticmethod
    def _key(model: Type[Resource], name: str, namespace: Optional[str]) -> _Key:
        return (model.KIND, namespace if model.NAMESPACED else None, name)

    def _next_version(self) -> int:
        self._resource_version += 1
        return self._resource_version

    def _record(self, kind: str, event_type: EventType, data: Dict[str, Any]) -> None:
        version = int(data["metadata"]["resourceVersion"])
        self._history.append((version, kind, event_type, copy.deepcopy(data)))
        model = kind_for(kind)
        for watcher in list(self._watchers):
            if watcher.wants(kind, data):
                watcher.queue.put_nowait(WatchEvent(event_type, model.from_dict(copy.deepcopy(data))))

    def _require_namespace(self, namespace: Optional[str]) -> None:
        if (Namespace.KIND, None, namespace) not in self._objects:
            raise ResourceNotFoundException(Namespace.KIND, namespace or "")

    async def get(self, identity: Identity, model: Type[R], name: str, namespace: Optional[str] = None) -> R:
        self._authorize(identity, "get", model.KIND, namespace)
        data = self._objects.get(self._key(model, name, namespace))
        if data is None:
            raise ResourceNotFoundException(model.KIND, name, namespace)
        return model.from_dict(copy.deepcopy(data))

    async def list(
        self,
        identity: Identity,
        model: Type[R],
        namespace: Optional[str] = None,
        label_selector: Optional[LabelSelector] = None,
    ) -> ResourceList[R]:
        # Listing across namespaces is authorized at cluster scope
        self._authorize(identity, "list", model.KIND, namespace)

        items = []
        for (kind, ns, _), data in sorted(self._objects.items(), key=lambda kv: (kv[0][1] or "", kv[0][2])):
            if kind != model.KIND:
                continue
            if namespace is not None and model.NAMESPACED and ns != namespace:
                continue
            if not matches_labels(data["metadata"].get("labels"), label_selector):
                continue
            items.append(model.from_dict(copy.deepcopy(data)))
        return ResourceList(items=items, resource_version=self.resource_version)

    @asynccontextmanager
    async def watch(
        self,
        identity: Identity,
        model: Type[R],
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
        label_selector: Optional[LabelSelector] = None,
        name: Optional[str] = None,
    ) -> AsyncIterator[AsyncIterator[WatchEvent[R]]]:
        self._authorize(identity, "watch", model.KIND, namespace)
        watcher = _Watcher(model.KIND, namespace if model.NAMESPACED else None, name, label_selector)

        if resource_version:
            since = int(resource_version)
            # Every version bump is recorded, so a gap before the oldest entry means events were dropped
            if self._history and since + 1 < self._history[0][0]:
                raise WatchExpiredException(f"resource version {resource_version} is too old")
            for version, kind, event_type, data in self._history:
                if version > since and watcher.wants(kind, data):
                    watcher.queue.put_nowait(WatchEvent(event_type, model.from_dict(copy.deepcopy(data))))

        self._watchers.add(watcher)
        events = self._drain(watcher)
        try:
            yield events
        finally:
            self._watchers.discard(watcher)
            await events.aclose()

    @staticmethod
    async def _drain(watcher: _Watcher) -> AsyncIterator[WatchEvent]:
        while True:
            event = await watcher.queue.get()
            if event is _CLOSED:
                return
            yield event

    def close_watches(self) -> None:
        """End every open watch stream, as a store does when a watch times out server side"""
        for watcher in list(self._watchers):
            watcher.queue.put_nowait(_CLOSED)

    async def create(self, identity: Identity, obj: R) -> R:
        model = type(obj)
        namespace = obj.namespace if model.NAMESPACED else None
        self._authorize(identity, "create", model.KIND, namespace)
        if not obj.name:
            raise InvalidStateException(f"{model.KIND} must have a name")
        if model.NAMESPACED:
            if not namespace:
                raise InvalidStateException(f"{model.KIND} {obj.name} must have a namespace")
            self._require_namespace(namespace)

        key = self._key(model, obj.name, namespace)
        if key in self._objects:
            raise AlreadyExistsException(model.KIND, obj.name)

        data = obj.to_dict()
        if model.HAS_STATUS:
            data.pop("status", None)
        meta = data["metadata"]
        if not model.NAMESPACED:
            meta.pop("namespace", None)
        meta["uid"] = str(uuid.uuid4())
        meta["generation"] = 1
        meta["creationTimestamp"] = utc_now().isoformat()
        meta.pop("deletionTimestamp", None)
        meta["resourceVersion"] = str(self._next_version())
        self._objects[key] = data
        self._record(model.KIND, EventType.ADDED, data)
        logger.debug(f"Created {model.KIND} {obj.key} at version {meta['resourceVersion']}")
        return model.from_dict(copy.deepcopy(data))

    def _existing_for_write(self, identity: Identity, obj: Resource) -> Tuple[_Key, Dict[str, Any]]:
        model = type(obj)
        namespace = obj.namespace if model.NAMESPACED else None
        self._authorize(identity, "update", model.KIND, namespace)
        key = self._key(model, obj.name, namespace)
        existing = self._objects.get(key)
        if existing is None:
            raise ResourceNotFoundException(model.KIND, obj.name, namespace)
        wanted = obj.metadata.resource_version
        if wanted and wanted != existing["metadata"]["resourceVersion"]:
            raise ConflictException(
                model.KIND,
                obj.name,
                f"resource version {wanted} is stale, current is {existing['metadata']['resourceVersion']}",
            )
        return key, existing

    async def update(self, identity: Identity, obj: R) -> R:
        model = type(obj)
        key, existing = self._existing_for_write(identity, obj)

        data = obj.to_dict()
        meta = data["metadata"]
        old_meta = existing["metadata"]
        # Server-owned metadata always comes from the stored object
        for field_name in ("uid", "creationTimestamp", "generation", "resourceVersion", "deletionTimestamp"):
            if field_name in old_meta:
                meta[field_name] = old_meta[field_name]
            else:
                meta.pop(field_name, None)
        if not model.NAMESPACED:
            meta.pop("namespace", None)
        if model.HAS_STATUS:
            data.pop("status", None)
            if "status" in existing:
                data["status"] = existing["status"]

        if data == existing:
            return model.from_dict(copy.deepcopy(existing))

        if _spec_of(data) != _spec_of(existing):
            meta["generation"] = old_meta.get("generation", 1) + 1
        meta["resourceVersion"] = str(self._next_version())
        self._objects[key] = data
        self._record(model.KIND, EventType.MODIFIED, data)
        logger.debug(f"Updated {model.KIND} {obj.key} to version {meta['resourceVersion']}")
        return model.from_dict(copy.deepcopy(data))

    async def update_status(self, identity: Identity, obj: R) -> R:
        model = type(obj)
        if not model.HAS_STATUS:
            raise InvalidStateException(f"{model.KIND} has no status subresource")
        key, existing = self._existing_for_write(identity, obj)

        data = copy.deepcopy(existing)
        data["status"] = obj.to_dict().get("status", {})
        if data == existing:
            return model.from_dict(copy.deepcopy(existing))

        data["metadata"]["resourceVersion"] = str(self._next_version())
        self._objects[key] = data
        self._record(model.KIND, EventType.MODIFIED, data)
        logger.debug(f"Updated status of {model.KIND} {obj.key} to version {data['metadata']['resourceVersion']}")
        return model.from_dict(copy.deepcopy(data))

    async def delete(self, identity: Identity, model: Type[R], name: str, namespace: Optional[str] = None) -> None:
        self._authorize(identity, "delete", model.KIND, namespace)
        key = self._key(model, name, namespace)
        if key not in self._objects:
            raise ResourceNotFoundException(model.KIND, name, namespace)
        self._remove(key)
        self._collect_garbage()

    def _remove(self, key: _Key) -> None:
        data = self._objects.pop(key)
        data["metadata"]["resourceVersion"] = str(self._next_version())
        data["metadata"]["deletionTimestamp"] = utc_now().isoformat()
        kind = key[0]
        self._record(kind, EventType.DELETED, data)
        logger.debug(f"Deleted {kind} {key[1]}/{key[2]}")

        if kind == Namespace.KIND:
            for other in [k for k in self._objects if k[1] == key[2]]:
                if other in self._objects:
                    self._remove(other)

    def _collect_garbage(self) -> None:
        """Delete objects whose owners are all gone, until nothing changes"""
        while True:
            live_uids = {data["metadata"]["uid"] for data in self._objects.values()}
            orphans: List[_Key] = []
            for key, data in self._objects.items():
                owners = data["metadata"].get("ownerReferences") or []
                if owners and not any(owner["uid"] in live_uids for owner in owners):
                    orphans.append(key)
            if not orphans:
                return
            for key in orphans:
                if key in self._objects:
                    self._remove(key)


def _spec_of(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k not in _NON_SPEC_FIELDS}
