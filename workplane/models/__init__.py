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

from workplane.models.conditions import (
    Condition,
    ConditionedStatus,
    ConditionStatus,
    find_status_condition,
    is_status_condition_false,
    is_status_condition_true,
    set_status_condition,
)
from workplane.models.meta import (
    KIND_REGISTRY,
    LocalObjectReference,
    ObjectKey,
    ObjectMeta,
    ObjectReference,
    OwnerReference,
    Resource,
    kind_for,
)
from workplane.models.tenants import Namespace, Org, RoleBinding, Secret, Space
from workplane.models.workloads import (
    App,
    Build,
    BuildWorkload,
    Package,
    ServiceBinding,
    ServiceInstance,
    Task,
    TaskWorkload,
)

__all__ = [
    "Condition",
    "ConditionedStatus",
    "ConditionStatus",
    "find_status_condition",
    "is_status_condition_false",
    "is_status_condition_true",
    "set_status_condition",
    "KIND_REGISTRY",
    "LocalObjectReference",
    "ObjectKey",
    "ObjectMeta",
    "ObjectReference",
    "OwnerReference",
    "Resource",
    "kind_for",
    "Namespace",
    "Org",
    "RoleBinding",
    "Secret",
    "Space",
    "App",
    "Build",
    "BuildWorkload",
    "Package",
    "ServiceBinding",
    "ServiceInstance",
    "Task",
    "TaskWorkload",
]
