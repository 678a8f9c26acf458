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
from typing import Dict, List, Optional

from workplane.conditions.awaiter import ConditionAwaiter
from workplane.models.meta import GROUP_VERSION, LocalObjectReference, ObjectMeta, ObjectReference, new_guid
from workplane.models.workloads import (
    BINDING_SECRET_AVAILABLE,
    ServiceBinding,
    ServiceBindingSpec,
    ServiceInstance,
)
from workplane.repositories.base import Metadata, Repository
from workplane.store.base import CONTROLLER_IDENTITY, Identity, Store
from workplane.utils.deadline import Deadline

logger = logging.getLogger(__name__)


@dataclass
class ServiceBindingRecord:
    guid: str
    space_guid: str
    type: str
    name: Optional[str]
    app_guid: str
    service_instance_guid: str
    binding_secret_name: str
    created_at: Optional[datetime] = None
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)


@dataclass
class CreateServiceBindingMessage:
    app_guid: str
    service_instance_guid: str
    space_guid: str
    name: Optional[str] = None
    metadata: Metadata = field(default_factory=Metadata)


@dataclass
class ListServiceBindingsMessage:
    app_guids: List[str] = field(default_factory=list)
    service_instance_guids: List[str] = field(default_factory=list)


def binding_to_record(binding: ServiceBinding) -> ServiceBindingRecord:
    return ServiceBindingRecord(
        guid=binding.name,
        space_guid=binding.namespace,
        type=binding.spec.type,
        name=binding.spec.display_name,
        app_guid=binding.spec.app_ref.name,
        service_instance_guid=binding.spec.service.name,
        binding_secret_name=binding.status.binding.name,
        created_at=binding.metadata.creation_timestamp,
        labels=dict(binding.metadata.labels),
        annotations=dict(binding.metadata.annotations),
    )


class ServiceBindingRepository(Repository):
    def __init__(self, store: Store, lookup_identity: Identity = CONTROLLER_IDENTITY):
        super().__init__(store, lookup_identity)
        self.awaiter: ConditionAwaiter[ServiceBinding] = ConditionAwaiter(store, ServiceBinding)

    async def create_service_binding(
        self, identity: Identity, message: CreateServiceBindingMessage, deadline: Deadline
    ) -> ServiceBindingRecord:
        """Create a binding and wait until its credentials secret is available"""
        binding = ServiceBinding(
            metadata=ObjectMeta(
                name=new_guid(),
                namespace=message.space_guid,
                labels=dict(message.metadata.labels),
                annotations=dict(message.metadata.annotations),
            ),
            spec=ServiceBindingSpec(
                display_name=message.name,
                service=ObjectReference(
                    kind=ServiceInstance.KIND, api_version=GROUP_VERSION, name=message.service_instance_guid
                ),
                app_ref=LocalObjectReference(name=message.app_guid),
            ),
        )
        created = await self.store.create(identity, binding)
        logger.info(f"Created service binding {created.key} of app {message.app_guid}")

        available = await self.awaiter.await_condition(
            identity, created.namespace, created.name, BINDING_SECRET_AVAILABLE, deadline, snapshot=created
        )
        return binding_to_record(available)

    async def get_service_binding(self, identity: Identity, guid: str) -> ServiceBindingRecord:
        return binding_to_record(await self.locate(identity, ServiceBinding, guid))

    async def list_service_bindings(
        self, identity: Identity, message: Optional[ListServiceBindingsMessage] = None
    ) -> List[ServiceBindingRecord]:
        message = message or ListServiceBindingsMessage()
        bindings = await self.list_visible(identity, ServiceBinding)
        return [
            binding_to_record(b)
            for b in bindings
            if (not message.app_guids or b.spec.app_ref.name in message.app_guids)
            and (not message.service_instance_guids or b.spec.service.name in message.service_instance_guids)
        ]

    async def delete_service_binding(self, identity: Identity, guid: str) -> None:
        binding = await self.locate(identity, ServiceBinding, guid)
        await self.store.delete(identity, ServiceBinding, binding.name, binding.namespace)
        logger.info(f"Deleted service binding {binding.key}")
