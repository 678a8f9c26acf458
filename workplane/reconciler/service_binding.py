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
from datetime import datetime
from typing import List, Optional

from workplane.models.conditions import READY, ConditionStatus
from workplane.models.meta import LocalObjectReference, ObjectKey, Resource
from workplane.models.tenants import Secret
from workplane.models.workloads import (
    BINDING_SECRET_AVAILABLE,
    REASON_APP_NOT_FOUND,
    REASON_SECRET_FOUND,
    REASON_SECRET_NOT_FOUND,
    REASON_SERVICE_INSTANCE_NOT_FOUND,
    App,
    ServiceBinding,
    ServiceBindingStatus,
    ServiceInstance,
)
from workplane.reconciler.base import Controller, ReconcileResult, is_stale, set_condition

logger = logging.getLogger(__name__)


def compute_binding_status(
    binding: ServiceBinding,
    instance: Optional[ServiceInstance],
    secret: Optional[Secret],
    app: Optional[App],
    now: datetime,
) -> ServiceBindingStatus:
    """Next status of binding, a stale binding is returned unchanged"""
    if is_stale(binding):
        return binding.status.model_copy(deep=True)

    status = binding.status.model_copy(deep=True)
    generation = binding.metadata.generation
    status.observed_generation = generation

    def mark(condition_type: str, value: ConditionStatus, reason: str, message: str = "") -> None:
        set_condition(status.conditions, condition_type, value, reason, message, generation, now)

    def not_ready(reason: str, message: str) -> ServiceBindingStatus:
        mark(BINDING_SECRET_AVAILABLE, ConditionStatus.FALSE, reason, message)
        mark(READY, ConditionStatus.FALSE, reason, message)
        return status

    if instance is None:
        return not_ready(
            REASON_SERVICE_INSTANCE_NOT_FOUND, f"service instance {binding.spec.service.name} not found"
        )
    if secret is None:
        return not_ready(REASON_SECRET_NOT_FOUND, f"credentials secret {instance.spec.secret_name!r} not found")

    status.binding = LocalObjectReference(name=secret.name)
    mark(BINDING_SECRET_AVAILABLE, ConditionStatus.TRUE, REASON_SECRET_FOUND)

    if app is None:
        mark(READY, ConditionStatus.FALSE, REASON_APP_NOT_FOUND, f"app {binding.spec.app_ref.name} not found")
    else:
        mark(READY, ConditionStatus.TRUE, "Ready")
    return status


class ServiceBindingController(Controller[ServiceBinding]):
    model = ServiceBinding

    def related(self):
        return [(ServiceInstance, self._bindings_of_instance)]

    async def _bindings_of_instance(self, instance: Resource) -> List[ObjectKey]:
        bindings = await self.store.list(self.identity, ServiceBinding, instance.namespace)
        return [b.key for b in bindings.items if b.spec.service.name == instance.name]

    async def reconcile_object(self, binding: ServiceBinding) -> ReconcileResult:
        namespace = binding.namespace
        instance = await self.get_optional(ServiceInstance, binding.spec.service.name, namespace)
        secret = None
        if instance is not None:
            secret = await self.get_optional(Secret, instance.spec.secret_name, namespace)
        app = await self.get_optional(App, binding.spec.app_ref.name, namespace)

        # The binding goes away with its app
        if app is not None and not any(ref.uid == app.metadata.uid for ref in binding.metadata.owner_references):
            owned = binding.copy_deep()
            owned.set_owner(app)
            binding = await self.store.update(self.identity, owned)
            logger.debug(f"Set app {app.name} as owner of service binding {binding.key}")

        status = compute_binding_status(binding, instance, secret, app, self.clock())
        await self.write_status(binding, status)
        return ReconcileResult(requeue=secret is None)
