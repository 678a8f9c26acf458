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

from workplane.repositories.base import Metadata, MetadataPatch, Repository
from workplane.repositories.build_repository import BuildRecord, BuildRepository, CreateBuildMessage
from workplane.repositories.deployment_repository import (
    CreateDeploymentMessage,
    DeploymentRecord,
    DeploymentRepository,
)
from workplane.repositories.org_space_repository import (
    CreateOrgMessage,
    CreateSpaceMessage,
    OrgRecord,
    OrgSpaceRepository,
    SpaceRecord,
)
from workplane.repositories.service_binding_repository import (
    CreateServiceBindingMessage,
    ListServiceBindingsMessage,
    ServiceBindingRecord,
    ServiceBindingRepository,
)
from workplane.repositories.task_repository import (
    CreateTaskMessage,
    ListTaskMessage,
    TaskRecord,
    TaskRepository,
)

__all__ = [
    "Metadata",
    "MetadataPatch",
    "Repository",
    "BuildRecord",
    "BuildRepository",
    "CreateBuildMessage",
    "CreateDeploymentMessage",
    "DeploymentRecord",
    "DeploymentRepository",
    "CreateOrgMessage",
    "CreateSpaceMessage",
    "OrgRecord",
    "OrgSpaceRepository",
    "SpaceRecord",
    "CreateServiceBindingMessage",
    "ListServiceBindingsMessage",
    "ServiceBindingRecord",
    "ServiceBindingRepository",
    "CreateTaskMessage",
    "ListTaskMessage",
    "TaskRecord",
    "TaskRepository",
]
