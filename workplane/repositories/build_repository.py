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

from workplane.models.conditions import ConditionStatus, find_status_condition
from workplane.models.meta import LocalObjectReference, ObjectMeta, new_guid
from workplane.models.workloads import BUILD_SUCCEEDED, App, Build, BuildSpec, Lifecycle, LifecycleData
from workplane.repositories.base import Metadata, Repository
from workplane.store.base import Identity

logger = logging.getLogger(__name__)

BUILD_STATE_STAGING = "STAGING"
BUILD_STATE_STAGED = "STAGED"
BUILD_STATE_FAILED = "FAILED"


@dataclass
class BuildRecord:
    guid: str
    space_guid: str
    state: str
    app_guid: str
    package_guid: str
    staging_memory_mb: int
    staging_disk_mb: int
    lifecycle_type: str
    buildpacks: List[str]
    stack: str
    droplet_guid: str = ""
    staging_error: str = ""
    created_at: Optional[datetime] = None
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)


@dataclass
class CreateBuildMessage:
    app_guid: str
    package_guid: str
    space_guid: str
    staging_memory_mb: int
    staging_disk_mb: int
    buildpacks: List[str] = field(default_factory=list)
    stack: str = ""
    lifecycle_type: str = "buildpack"
    metadata: Metadata = field(default_factory=Metadata)


def build_to_record(build: Build) -> BuildRecord:
    state = BUILD_STATE_STAGING
    staging_error = ""
    droplet_guid = ""
    succeeded = find_status_condition(build.status.conditions, BUILD_SUCCEEDED)
    if succeeded is not None and succeeded.status == ConditionStatus.TRUE:
        state = BUILD_STATE_STAGED
        # A successful build is its own droplet
        droplet_guid = build.name
    elif succeeded is not None and succeeded.status == ConditionStatus.FALSE:
        state = BUILD_STATE_FAILED
        staging_error = succeeded.message

    return BuildRecord(
        guid=build.name,
        space_guid=build.namespace,
        state=state,
        app_guid=build.spec.app_ref.name,
        package_guid=build.spec.package_ref.name,
        staging_memory_mb=build.spec.staging_memory_mb,
        staging_disk_mb=build.spec.staging_disk_mb,
        lifecycle_type=build.spec.lifecycle.type,
        buildpacks=list(build.spec.lifecycle.data.buildpacks),
        stack=build.spec.lifecycle.data.stack,
        droplet_guid=droplet_guid,
        staging_error=staging_error,
        created_at=build.metadata.creation_timestamp,
        labels=dict(build.metadata.labels),
        annotations=dict(build.metadata.annotations),
    )


class BuildRepository(Repository):
    async def create_build(self, identity: Identity, message: CreateBuildMessage) -> BuildRecord:
        """Create a build owned by its app, staging happens asynchronously"""
        app = await self.store.get(identity, App, message.app_guid, message.space_guid)
        build = Build(
            metadata=ObjectMeta(
                name=new_guid(),
                namespace=message.space_guid,
                labels=dict(message.metadata.labels),
                annotations=dict(message.metadata.annotations),
            ),
            spec=BuildSpec(
                package_ref=LocalObjectReference(name=message.package_guid),
                app_ref=LocalObjectReference(name=message.app_guid),
                staging_memory_mb=message.staging_memory_mb,
                staging_disk_mb=message.staging_disk_mb,
                lifecycle=Lifecycle(
                    type=message.lifecycle_type,
                    data=LifecycleData(buildpacks=list(message.buildpacks), stack=message.stack),
                ),
            ),
        )
        build.set_owner(app)
        created = await self.store.create(identity, build)
        logger.info(f"Created build {created.key} of package {message.package_guid}")
        return build_to_record(created)

    async def get_build(self, identity: Identity, guid: str) -> BuildRecord:
        return build_to_record(await self.locate(identity, Build, guid))

