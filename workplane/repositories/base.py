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
Repository layer: the seam between the synchronous API and the asynchronous
core. Every operation takes the caller's Identity, talks to the store as that
caller, and where a write has to converge first, waits for it through the
ConditionAwaiter within the caller's Deadline.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Type

from workplane.exceptions import ForbiddenException, ResourceNotFoundException
from workplane.models.meta import Resource
from workplane.store.base import CONTROLLER_IDENTITY, Identity, R, Store
from workplane.utils.deadline import Deadline
from workplane.utils.retry import retry_transient

logger = logging.getLogger(__name__)


@dataclass
class Metadata:
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)


@dataclass
class MetadataPatch:
    """Label/annotation changes, a None value removes the key"""

    labels: Dict[str, Optional[str]] = field(default_factory=dict)
    annotations: Dict[str, Optional[str]] = field(default_factory=dict)


def apply_patch(values: Dict[str, str], patch: Mapping[str, Optional[str]]) -> Dict[str, str]:
    merged = dict(values)
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


def created_at(obj: Resource) -> Optional[datetime]:
    return obj.metadata.creation_timestamp


class Repository:
    def __init__(self, store: Store, lookup_identity: Identity = CONTROLLER_IDENTITY):
        self.store = store
        # Only resolves which namespaces hold an object, data is always read as the caller
        self.lookup_identity = lookup_identity

    async def namespaces_with(self, model: Type[R], guid: Optional[str] = None) -> List[str]:
        """Namespaces holding objects of model, or only the one named guid"""
        result = await self.store.list(self.lookup_identity, model)
        return sorted({obj.namespace for obj in result.items if obj.namespace and (guid is None or obj.name == guid)})

    async def list_visible(
        self, identity: Identity, model: Type[R], namespaces: Optional[Iterable[str]] = None
    ) -> List[R]:
        """
        List model namespace by namespace as the caller. Namespaces the caller
        may not list contribute nothing, so a caller without any access gets an
        empty list rather than an error.
        """
        if namespaces is None:
            namespaces = await self.namespaces_with(model)
        items: List[R] = []
        for namespace in namespaces:
            try:
                result = await self.store.list(identity, model, namespace)
            except ForbiddenException:
                logger.debug(f"{identity.user} may not list {model.KIND} in {namespace}, skipping")
                continue
            items.extend(result.items)
        return items

    async def get_visible(self, identity: Identity, model: Type[R], guid: str, namespace: Optional[str]) -> R:
        """Get as the caller, objects the caller may not read are reported as not found"""
        try:
            return await self.store.get(identity, model, guid, namespace)
        except ForbiddenException as e:
            raise ResourceNotFoundException(model.KIND, guid, namespace) from e

    async def locate(self, identity: Identity, model: Type[R], guid: str) -> R:
        """Find an object by GUID in whatever namespace holds it, read as the caller"""
        namespaces = await self.namespaces_with(model, guid)
        if not namespaces:
            raise ResourceNotFoundException(model.KIND, guid)
        return await self.get_visible(identity, model, guid, namespaces[0])

    async def patch_metadata(
        self, identity: Identity, model: Type[R], guid: str, patch: MetadataPatch, deadline: Deadline
    ) -> R:
        """Merge patch into the object's labels and annotations, re-reading on conflicts"""
        located = await self.locate(identity, model, guid)

        async def update() -> R:
            current = await self.store.get(identity, model, guid, located.namespace)
            current.metadata.labels = apply_patch(current.metadata.labels, patch.labels)
            current.metadata.annotations = apply_patch(current.metadata.annotations, patch.annotations)
            return await self.store.update(identity, current)

        return await retry_transient(update, deadline, description=f"metadata patch of {model.KIND} {guid}")
