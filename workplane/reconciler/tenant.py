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
Org and space reconciliation.

Each tenant object owns a namespace of the same name. Reconciling a tenant
creates or merges that namespace, propagates the registry secrets and the
propagate-eligible role bindings from the parent namespace into it, and then
reports the outcome on the Ready condition. Orgs are children of the root
namespace, spaces of the namespace of the org they live in.

Namespaces are cluster scoped and cannot be owned by a namespaced tenant
object, so the tenant's namespace is deleted by finalize once the tenant is
gone. Spaces live inside their org's namespace, which makes deleting an org
cascade down to its spaces and from there to their namespaces.
"""

import logging
from abc import abstractmethod
from datetime import datetime
from typing import Dict, List, Union

from workplane.config import settings
from workplane.exceptions import (
    InvalidStateException,
    PropagationException,
    ResourceNotFoundException,
    WorkplaneException,
)
from workplane.models.conditions import READY, ConditionStatus
from workplane.models.meta import ObjectKey, Resource
from workplane.models.tenants import (
    REASON_NAMESPACE_CREATE_FAILED,
    REASON_PARENT_NAMESPACE_NOT_FOUND,
    REASON_PROPAGATION_FAILED,
    REASON_READY,
    Namespace,
    Org,
    RoleBinding,
    Secret,
    Space,
    TenantStatus,
)
from workplane.propagation.engine import PropagationEngine
from workplane.reconciler.base import Controller, ReconcileResult, is_stale, set_condition
from workplane.store.base import CONTROLLER_IDENTITY, Identity, Store
from workplane.utils.deadline import Deadline

logger = logging.getLogger(__name__)

Tenant = Union[Org, Space]


def compute_tenant_status(
    tenant: Tenant, ready: bool, reason: str, message: str, now: datetime
) -> TenantStatus:
    """Next status of tenant given the outcome of namespace setup and propagation"""
    if is_stale(tenant):
        return tenant.status.model_copy(deep=True)

    status = tenant.status.model_copy(deep=True)
    status.observed_generation = tenant.metadata.generation
    status.guid = tenant.name
    set_condition(
        status.conditions,
        READY,
        ConditionStatus.TRUE if ready else ConditionStatus.FALSE,
        reason,
        message,
        tenant.metadata.generation,
        now,
    )
    return status


class TenantController(Controller):
    """Shared namespace and propagation handling of orgs and spaces"""

    def __init__(self, store: Store, identity: Identity = CONTROLLER_IDENTITY, **kwargs):
        super().__init__(store, identity=identity, **kwargs)
        self.propagation = PropagationEngine(store, identity)

    @abstractmethod
    def parent_namespace(self, tenant: Tenant) -> str:
        """Namespace the tenant object lives in, and the source of everything propagated"""

    @abstractmethod
    def namespace_labels(self, tenant: Tenant) -> Dict[str, str]:
        pass

    def related(self):
        return [(Secret, self._tenants_in_namespace), (RoleBinding, self._tenants_in_namespace)]

    async def _tenants_in_namespace(self, obj: Resource) -> List[ObjectKey]:
        """A changed source object in a parent namespace re-propagates every tenant below it"""
        return [tenant.key for tenant in (await self.store.list(self.identity, self.model, obj.namespace)).items]

    async def reconcile_object(self, tenant: Tenant) -> ReconcileResult:
        deadline = Deadline(settings.reconcile_timeout)
        parent = self.parent_namespace(tenant)
        ready, reason, message = await self._converge(tenant, parent, deadline)
        if ready:
            logger.debug(f"{self.model.KIND} {tenant.key} namespace is ready")
        else:
            logger.warning(f"{self.model.KIND} {tenant.key} is not ready: {reason}: {message}")
        await self.write_status(tenant, compute_tenant_status(tenant, ready, reason, message, self.clock()))
        return ReconcileResult(requeue=not ready)

    async def _converge(self, tenant: Tenant, parent: str, deadline: Deadline):
        try:
            await self.store.get(self.identity, Namespace, parent)
        except ResourceNotFoundException:
            return False, REASON_PARENT_NAMESPACE_NOT_FOUND, f"parent namespace {parent} does not exist"

        try:
            await self.propagation.ensure_namespace(tenant.name, self.namespace_labels(tenant), deadline=deadline)
        except WorkplaneException as e:
            if e.retryable:
                raise
            return False, REASON_NAMESPACE_CREATE_FAILED, str(e)

        try:
            await self.propagation.propagate(
                parent, tenant.name, settings.container_registry_secret_names, deadline=deadline
            )
        except (InvalidStateException, PropagationException) as e:
            return False, REASON_PROPAGATION_FAILED, str(e)
        return True, REASON_READY, ""

    @abstractmethod
    def guid_label(self) -> str:
        """Label that marks a namespace as created for a tenant of this kind"""

    async def finalize(self, key: ObjectKey) -> None:
        try:
            namespace = await self.store.get(self.identity, Namespace, key.name)
        except ResourceNotFoundException:
            return
        # Only namespaces this controller created for the tenant
        if namespace.metadata.labels.get(self.guid_label()) != key.name:
            return
        try:
            await self.store.delete(self.identity, Namespace, key.name)
            logger.info(f"Deleted namespace {key.name} of removed {self.model.KIND}")
        except ResourceNotFoundException:
            pass


class OrgController(TenantController):
    model = Org

    def parent_namespace(self, org: Org) -> str:
        return settings.root_namespace

    def namespace_labels(self, org: Org) -> Dict[str, str]:
        return {settings.org_guid_label: org.name}

    def guid_label(self) -> str:
        return settings.org_guid_label


class SpaceController(TenantController):
    model = Space

    def parent_namespace(self, space: Space) -> str:
        return space.namespace

    def namespace_labels(self, space: Space) -> Dict[str, str]:
        return {settings.space_guid_label: space.name, settings.parent_namespace_label: space.namespace}

    def guid_label(self) -> str:
        return settings.space_guid_label
