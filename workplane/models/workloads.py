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

from enum import Enum
from typing import List, Optional

from pydantic import Field

from workplane.models.conditions import ConditionedStatus
from workplane.models.meta import GROUP_VERSION, LocalObjectReference, ObjectReference, Resource, WireModel

# App
APP_STATE_STOPPED = "STOPPED"
APP_STATE_STARTED = "STARTED"

# Build conditions and reasons
BUILD_STAGING = "Staging"
BUILD_SUCCEEDED = "Succeeded"
BUILD_REFERENCES_RESOLVED = "ReferencesResolved"
REASON_BUILD_RUNNING = "BuildRunning"
REASON_BUILD_NOT_RUNNING = "BuildNotRunning"
REASON_BUILD_FAILED = "BuildFailed"
REASON_BUILD_SUCCEEDED = "BuildSucceeded"
REASON_APP_NOT_FOUND = "AppNotFound"
REASON_PACKAGE_NOT_FOUND = "PackageNotFound"

# Task conditions and reasons
TASK_INITIALIZED = "Initialized"
TASK_STARTED = "Started"
TASK_SUCCEEDED = "Succeeded"
TASK_FAILED = "Failed"
TASK_CANCELED = "Canceled"
REASON_TASK_CANCELED = "TaskCanceled"
REASON_APP_DROPLET_MISSING = "AppDropletMissing"

# Service binding conditions and reasons
BINDING_SECRET_AVAILABLE = "BindingSecretAvailable"
REASON_SECRET_FOUND = "SecretFound"
REASON_SECRET_NOT_FOUND = "SecretNotFound"
REASON_SERVICE_INSTANCE_NOT_FOUND = "ServiceInstanceNotFound"


class DesiredState(str, Enum):
    STOPPED = APP_STATE_STOPPED
    STARTED = APP_STATE_STARTED


class Registry(WireModel):
    image: str = ""
    image_pull_secrets: List[LocalObjectReference] = Field(default_factory=list)


class ProcessType(WireModel):
    type: str
    command: str = ""


class LifecycleData(WireModel):
    buildpacks: List[str] = Field(default_factory=list)
    stack: str = ""


class Lifecycle(WireModel):
    type: str = "buildpack"
    data: LifecycleData = Field(default_factory=LifecycleData)


class AppSpec(WireModel):
    display_name: str = ""
    desired_state: DesiredState = DesiredState.STOPPED
    current_droplet_ref: LocalObjectReference = Field(default_factory=LocalObjectReference)
    env_secret_name: str = ""
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)


class App(Resource):
    API_VERSION = GROUP_VERSION
    KIND = "CFApp"
    PLURAL = "cfapps"
    HAS_STATUS = True

    spec: AppSpec = Field(default_factory=AppSpec)
    status: ConditionedStatus = Field(default_factory=ConditionedStatus)


class PackageSource(WireModel):
    registry: Registry = Field(default_factory=Registry)


class PackageSpec(WireModel):
    type: str = "bits"
    app_ref: LocalObjectReference = Field(default_factory=LocalObjectReference)
    source: PackageSource = Field(default_factory=PackageSource)


class Package(Resource):
    API_VERSION = GROUP_VERSION
    KIND = "CFPackage"
    PLURAL = "cfpackages"
    HAS_STATUS = True

    spec: PackageSpec = Field(default_factory=PackageSpec)
    status: ConditionedStatus = Field(default_factory=ConditionedStatus)


class BuildSpec(WireModel):
    package_ref: LocalObjectReference = Field(default_factory=LocalObjectReference)
    app_ref: LocalObjectReference = Field(default_factory=LocalObjectReference)
    staging_memory_mb: int = 0
    staging_disk_mb: int = 0
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)


class BuildDroplet(WireModel):
    """The artifact of a successful build"""

    registry: Registry = Field(default_factory=Registry)
    stack: str = ""
    process_types: List[ProcessType] = Field(default_factory=list)
    ports: List[int] = Field(default_factory=list)


class BuildStatus(ConditionedStatus):
    droplet: Optional[BuildDroplet] = None


class Build(Resource):
    API_VERSION = GROUP_VERSION
    KIND = "CFBuild"
    PLURAL = "cfbuilds"
    HAS_STATUS = True

    spec: BuildSpec = Field(default_factory=BuildSpec)
    status: BuildStatus = Field(default_factory=BuildStatus)


class BuildWorkloadSpec(WireModel):
    build_ref: LocalObjectReference = Field(default_factory=LocalObjectReference)
    source: PackageSource = Field(default_factory=PackageSource)
    buildpacks: List[str] = Field(default_factory=list)
    stack: str = ""


class BuildWorkloadStatus(ConditionedStatus):
    """Written by the external image builder; Succeeded is its ready tri-state"""

    latest_image: str = ""
    latest_stack: str = ""


class BuildWorkload(Resource):
    API_VERSION = GROUP_VERSION
    KIND = "BuildWorkload"
    PLURAL = "buildworkloads"
    HAS_STATUS = True

    spec: BuildWorkloadSpec = Field(default_factory=BuildWorkloadSpec)
    status: BuildWorkloadStatus = Field(default_factory=BuildWorkloadStatus)


class TaskSpec(WireModel):
    command: str = ""
    app_ref: LocalObjectReference = Field(default_factory=LocalObjectReference)
    canceled: bool = False


class TaskStatus(ConditionedStatus):
    sequence_id: int = 0
    memory_mb: int = 0
    disk_quota_mb: int = 0
    droplet_ref: LocalObjectReference = Field(default_factory=LocalObjectReference)


class Task(Resource):
    API_VERSION = GROUP_VERSION
    KIND = "CFTask"
    PLURAL = "cftasks"
    HAS_STATUS = True

    spec: TaskSpec = Field(default_factory=TaskSpec)
    status: TaskStatus = Field(default_factory=TaskStatus)


class TaskWorkloadSpec(WireModel):
    task_ref: LocalObjectReference = Field(default_factory=LocalObjectReference)
    image: str = ""
    image_pull_secrets: List[LocalObjectReference] = Field(default_factory=list)
    command: str = ""
    memory_mb: int = 0
    disk_mb: int = 0


class TaskWorkload(Resource):
    """Runner-side object; its Started/Succeeded/Failed conditions are written by the task runner"""

    API_VERSION = GROUP_VERSION
    KIND = "TaskWorkload"
    PLURAL = "taskworkloads"
    HAS_STATUS = True

    spec: TaskWorkloadSpec = Field(default_factory=TaskWorkloadSpec)
    status: ConditionedStatus = Field(default_factory=ConditionedStatus)


class ServiceInstanceSpec(WireModel):
    display_name: str = ""
    secret_name: str = ""
    type: str = "user-provided"
    tags: List[str] = Field(default_factory=list)


class ServiceInstance(Resource):
    API_VERSION = GROUP_VERSION
    KIND = "CFServiceInstance"
    PLURAL = "cfserviceinstances"
    HAS_STATUS = True

    spec: ServiceInstanceSpec = Field(default_factory=ServiceInstanceSpec)
    status: ConditionedStatus = Field(default_factory=ConditionedStatus)


class ServiceBindingSpec(WireModel):
    display_name: Optional[str] = None
    type: str = "app"
    service: ObjectReference = Field(default_factory=ObjectReference)
    app_ref: LocalObjectReference = Field(default_factory=LocalObjectReference)


class ServiceBindingStatus(ConditionedStatus):
    binding: LocalObjectReference = Field(default_factory=LocalObjectReference)


class ServiceBinding(Resource):
    API_VERSION = GROUP_VERSION
    KIND = "CFServiceBinding"
    PLURAL = "cfservicebindings"
    HAS_STATUS = True

    spec: ServiceBindingSpec = Field(default_factory=ServiceBindingSpec)
    status: ServiceBindingStatus = Field(default_factory=ServiceBindingStatus)
