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
from typing import Dict, List, Optional, Type, Union

from workplane.conditions.awaiter import ConditionAwaiter
from workplane.config import settings
from workplane.models.conditions import READY
from workplane.models.meta import ObjectMeta, new_guid
from workplane.models.tenants import Org, Space, TenantSpec
from workplane.repositories.base import Metadata, Repository
from workplane.store.base import CONTROLLER_IDENTITY, Identity, Store
from workplane.utils.deadline import Deadline

logger = logging.getLogger(__name__)


@dataclass
class OrgRecord:
    guid: str
    name: str
    created_at: Optional[datetime] = None
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)


@dataclass
class SpaceRecord:
    guid: str
    name: str
    organization_guid: str
    created_at: Optional[datetime] = None
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)


@dataclass
class CreateOrgMessage:
    name: str
    metadata: Metadata = field(default_factory=Metadata)


@dataclass
class CreateSpaceMessage:
    name: str
    organization_guid: str
    metadata: Metadata = field(default_factory=Metadata)


def org_to_record(org: Org) -> OrgRecord:
    return OrgRecord(
        guid=org.name,
        name=org.spec.display_name,
        created_at=org.metadata.creation_timestamp,
        labels=dict(org.metadata.labels),
        annotations=dict(org.metadata.annotations),
    )


def space_to_record(space: Space) -> SpaceRecord:
    return SpaceRecord(
        guid=space.name,
        name=space.spec.display_name,
        organization_guid=space.namespace,
        created_at=space.metadata.creation_timestamp,
        labels=dict(space.metadata.labels),
        annotations=dict(space.metadata.annotations),
    )


class OrgSpaceRepository(Repository):
    """
    Orgs live in the root namespace and spaces in their org's namespace. Both
    are only returned once their own namespace is set up and propagated, i.e.
    once Ready is True.
    """

    def __init__(
        self, store: Store, root_namespace: Optional[str] = None, lookup_identity: Identity = CONTROLLER_IDENTITY
    ):
        super().__init__(store, lookup_identity)
        self.root_namespace = root_namespace or settings.root_namespace
        self.org_awaiter: ConditionAwaiter[Org] = ConditionAwaiter(store, Org)
        self.space_awaiter: ConditionAwaiter[Space] = ConditionAwaiter(store, Space)

    async def _create_tenant(
        self,
        identity: Identity,
        model: Type[Union[Org, Space]],
        awaiter: ConditionAwaiter,
        namespace: str,
        name: str,
        metadata: Metadata,
        deadline: Deadline,
    ):
        tenant = model(
            metadata=ObjectMeta(
                name=new_guid(),
                namespace=namespace,
                labels=dict(metadata.labels),
                annotations=dict(metadata.annotations),
            ),
            spec=TenantSpec(display_name=name),
        )
        created = await self.store.create(identity, tenant)
        logger.info(f"Created {model.KIND} {created.key} ({name})")
        return await awaiter.await_condition(identity, namespace, created.name, READY, deadline, snapshot=created)

    async def create_org(self, identity: Identity, message: CreateOrgMessage, deadline: Deadline) -> OrgRecord:
        org = await self._create_tenant(
            identity, Org, self.org_awaiter, self.root_namespace, message.name, message.metadata, deadline
        )
        return org_to_record(org)

    async def create_space(self, identity: Identity, message: CreateSpaceMessage, deadline: Deadline) -> SpaceRecord:
        space = await self._create_tenant(
            identity,
            Space,
            self.space_awaiter,
            message.organization_guid,
            message.name,
            message.metadata,
            deadline,
        )
        return space_to_record(space)

    async def get_org(self, identity: Identity, guid: str) -> OrgRecord:
        return org_to_record(await self.get_visible(identity, Org, guid, self.root_namespace))

    async def list_orgs(self, identity: Identity) -> List[OrgRecord]:
        orgs = await self.list_visible(identity, Org, [self.root_namespace])
        return [org_to_record(org) for org in orgs]

    async def get_space(self, identity: Identity, guid: str) -> SpaceRecord:
        return space_to_record(await self.locate(identity, Space, guid))

    async def list_spaces(
        self, identity: Identity, organization_guids: Optional[List[str]] = None
    ) -> List[SpaceRecord]:
        spaces = await self.list_visible(identity, Space)
        return [
            space_to_record(space)
            for space in spaces
            if not organization_guids or space.namespace in organization_guids
        ]

    async def delete_org(self, identity: Identity, guid: str) -> None:
        """Delete an org; its namespace, spaces and their namespaces follow asynchronously"""
        await self.store.delete(identity, Org, guid, self.root_namespace)
        logger.info(f"Deleted org {guid}")

    async def delete_space(self, identity: Identity, guid: str) -> None:
        space = await self.locate(identity, Space, guid)
        await self.store.delete(identity, Space, space.name, space.namespace)
        logger.info(f"Deleted space {space.key}")
