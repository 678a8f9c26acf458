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

from typing import Dict, List, Optional

from pydantic import Field

from workplane.models.conditions import ConditionedStatus
from workplane.models.meta import GROUP_VERSION, Resource, WireModel

# Org/Space Ready reasons
REASON_READY = "Ready"
REASON_NAMESPACE_CREATE_FAILED = "NamespaceCreateFailed"
REASON_PROPAGATION_FAILED = "PropagationFailed"
REASON_PARENT_NAMESPACE_NOT_FOUND = "ParentNamespaceNotFound"


class TenantSpec(WireModel):
    display_name: str = ""


class TenantStatus(ConditionedStatus):
    guid: str = ""


class Org(Resource):
    """An organization, lives in the root namespace and owns one namespace named after it"""

    API_VERSION = GROUP_VERSION
    KIND = "CFOrg"
    PLURAL = "cforgs"
    HAS_STATUS = True

    spec: TenantSpec = Field(default_factory=TenantSpec)
    status: TenantStatus = Field(default_factory=TenantStatus)


class Space(Resource):
    """A space, lives in its org's namespace and owns one namespace named after it"""

    API_VERSION = GROUP_VERSION
    KIND = "CFSpace"
    PLURAL = "cfspaces"
    HAS_STATUS = True

    spec: TenantSpec = Field(default_factory=TenantSpec)
    status: TenantStatus = Field(default_factory=TenantStatus)


class Namespace(Resource):
    KIND = "Namespace"
    PLURAL = "namespaces"
    NAMESPACED = False


class Secret(Resource):
    KIND = "Secret"
    PLURAL = "secrets"

    data: Dict[str, str] = Field(default_factory=dict)
    string_data: Dict[str, str] = Field(default_factory=dict)
    type: str = "Opaque"
    immutable: Optional[bool] = None


class Subject(WireModel):
    kind: str
    name: str
    api_group: str = ""
    namespace: Optional[str] = None


class RoleRef(WireModel):
    api_group: str = "rbac.authorization.k8s.io"
    kind: str = "ClusterRole"
    name: str = ""


class RoleBinding(Resource):
    API_VERSION = "rbac.authorization.k8s.io/v1"
    KIND = "RoleBinding"
    PLURAL = "rolebindings"

    subjects: List[Subject] = Field(default_factory=list)
    role_ref: RoleRef = Field(default_factory=RoleRef)
