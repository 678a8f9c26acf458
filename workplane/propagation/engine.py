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
Propagation engine.

Keeps a child tenant namespace consistent with its parent: named secrets and
role bindings annotated as propagate-eligible are mirrored into the child and
labelled with the namespace they came from, copies whose source is gone are
removed. A run is split in three phases:

1. read: every source secret, the parent's role bindings and the child's
   existing propagated objects. Any failure here aborts the run before a
   single write happens.
2. write: create-or-replace each copy, conflicts are retried with a fresh read.
3. cleanup: delete propagated copies without an eligible source, one by one.
   Cleanup is best effort per item; failures are collected and raised together
   once every orphan has been tried.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Type, Union

from workplane.config import settings
from workplane.exceptions import (
    AlreadyExistsException,
    InvalidStateException,
    PropagationException,
    ResourceNotFoundException,
    WorkplaneException,
)
from workplane.models.meta import ObjectMeta, Resource
from workplane.models.tenants import Namespace, RoleBinding, Secret
from workplane.store.base import CONTROLLER_IDENTITY, Identity, Store
from workplane.utils.deadline import Deadline
from workplane.utils.retry import retry_transient

logger = logging.getLogger(__name__)

Propagated = Union[Secret, RoleBinding]


@dataclass
class PropagationResult:
    """Names written and deleted in the child namespace by one run"""

    secrets: List[str] = field(default_factory=list)
    role_bindings: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)


def strip_bookkeeping(values: Optional[Mapping[str, str]], prefixes: Optional[Iterable[str]] = None) -> Dict[str, str]:
    """Drop keys written by package/infra managers"""
    prefixes = tuple(settings.package_manager_key_prefixes if prefixes is None else prefixes)
    return {k: v for k, v in (values or {}).items() if not k.startswith(prefixes)}


class PropagationEngine:
    def __init__(self, store: Store, identity: Identity = CONTROLLER_IDENTITY):
        self.store = store
        self.identity = identity

    async def ensure_namespace(
        self,
        name: str,
        labels: Optional[Mapping[str, str]] = None,
        annotations: Optional[Mapping[str, str]] = None,
        deadline: Optional[Deadline] = None,
    ) -> Namespace:
        """
        Create the namespace if absent, otherwise merge labels and annotations
        into the existing maps. Nothing outside those maps is touched.
        """
        deadline = deadline or Deadline(settings.reconcile_timeout)
        labels = dict(labels or {})
        annotations = dict(annotations or {})

        async def create_or_merge() -> Namespace:
            try:
                existing = await self.store.get(self.identity, Namespace, name)
            except ResourceNotFoundException:
                namespace = Namespace(metadata=ObjectMeta(name=name, labels=labels, annotations=annotations))
                try:
                    created = await self.store.create(self.identity, namespace)
                except AlreadyExistsException:
                    # Lost a race with another writer, merge on the next attempt
                    return await create_or_merge()
                logger.info(f"Created namespace {name}")
                return created

            merged_labels = {**existing.metadata.labels, **labels}
            merged_annotations = {**existing.metadata.annotations, **annotations}
            if merged_labels == existing.metadata.labels and merged_annotations == existing.metadata.annotations:
                return existing
            existing.metadata.labels = merged_labels
            existing.metadata.annotations = merged_annotations
            return await self.store.update(self.identity, existing)

        return await retry_transient(create_or_merge, deadline, description=f"namespace {name}")

    async def propagate(
        self,
        parent_namespace: str,
        child_namespace: str,
        secret_names: Iterable[str],
        annotation_filter: Optional[Mapping[str, str]] = None,
        deadline: Optional[Deadline] = None,
    ) -> PropagationResult:
        """
        Mirror secrets and eligible role bindings from parent_namespace into
        child_namespace and remove stale copies.

        Args:
            secret_names: Secrets that must exist in the parent and are always copied
            annotation_filter: Annotations a parent role binding must carry to be
                copied, defaults to the propagate-cf-role annotation set to "true"

        Raises:
            InvalidStateException: a named secret is missing from the parent
            PropagationException: at least one stale copy could not be deleted
        """
        deadline = deadline or Deadline(settings.reconcile_timeout)
        if annotation_filter is None:
            annotation_filter = {settings.propagate_role_binding_annotation: "true"}
        source_label = {settings.propagated_from_label: parent_namespace}

        # Phase 1: read everything, no writes on failure
        secrets: List[Secret] = []
        for secret_name in secret_names:
            try:
                secrets.append(await self.store.get(self.identity, Secret, secret_name, parent_namespace))
            except ResourceNotFoundException as e:
                raise InvalidStateException(
                    f"error fetching secret {secret_name!r} from namespace {parent_namespace!r}: {e}"
                ) from e
        parent_bindings = await self.store.list(self.identity, RoleBinding, parent_namespace)
        eligible_bindings = [
            binding
            for binding in parent_bindings.items
            if all(binding.metadata.annotations.get(k) == v for k, v in annotation_filter.items())
        ]
        existing_secrets = await self.store.list(self.identity, Secret, child_namespace, label_selector=source_label)
        existing_bindings = await self.store.list(
            self.identity, RoleBinding, child_namespace, label_selector=source_label
        )

        # Phase 2: create or replace copies
        result = PropagationResult()
        for secret in secrets:
            await self._apply(self._copy_secret(secret, child_namespace, parent_namespace), deadline)
            result.secrets.append(secret.name)
        for binding in eligible_bindings:
            await self._apply(self._copy_role_binding(binding, child_namespace, parent_namespace), deadline)
            result.role_bindings.append(binding.name)

        # Phase 3: best-effort removal of copies without an eligible source
        failures: List[str] = []
        for model, existing, wanted in (
            (Secret, existing_secrets.items, set(result.secrets)),
            (RoleBinding, existing_bindings.items, set(result.role_bindings)),
        ):
            for obj in existing:
                if obj.name in wanted:
                    continue
                if obj.metadata.annotations.get(settings.propagate_deletion_annotation) == "false":
                    logger.debug(f"Keeping {model.KIND} {child_namespace}/{obj.name}, deletion is disabled")
                    continue
                try:
                    await self.store.delete(self.identity, model, obj.name, child_namespace)
                    result.deleted.append(f"{model.KIND}/{obj.name}")
                    logger.info(f"Deleted stale propagated {model.KIND} {child_namespace}/{obj.name}")
                except ResourceNotFoundException:
                    result.deleted.append(f"{model.KIND}/{obj.name}")
                except WorkplaneException as e:
                    logger.warning(f"Failed to delete propagated {model.KIND} {child_namespace}/{obj.name}: {e}")
                    failures.append(f"{model.KIND}/{obj.name}: {e}")

        if failures:
            raise PropagationException(child_namespace, failures)

        logger.debug(
            f"Propagated {len(result.secrets)} secrets and {len(result.role_bindings)} role bindings "
            f"from {parent_namespace} to {child_namespace}"
        )
        return result

    @staticmethod
    def _copy_meta(source: Resource, child_namespace: str, parent_namespace: str) -> ObjectMeta:
        labels = strip_bookkeeping(source.metadata.labels)
        labels[settings.propagated_from_label] = parent_namespace
        return ObjectMeta(
            name=source.name,
            namespace=child_namespace,
            labels=labels,
            annotations=strip_bookkeeping(source.metadata.annotations),
        )

    def _copy_secret(self, secret: Secret, child_namespace: str, parent_namespace: str) -> Secret:
        return Secret(
            metadata=self._copy_meta(secret, child_namespace, parent_namespace),
            data=dict(secret.data),
            string_data=dict(secret.string_data),
            type=secret.type,
            immutable=secret.immutable,
        )

    def _copy_role_binding(self, binding: RoleBinding, child_namespace: str, parent_namespace: str) -> RoleBinding:
        return RoleBinding(
            metadata=self._copy_meta(binding, child_namespace, parent_namespace),
            subjects=[subject.model_copy() for subject in binding.subjects],
            role_ref=binding.role_ref.model_copy(),
        )

    async def _apply(self, desired: Propagated, deadline: Deadline) -> Propagated:
        """Create desired or replace the existing copy, recreating it where the store forbids an in-place change"""
        model: Type[Propagated] = type(desired)

        async def create_or_replace() -> Propagated:
            try:
                existing = await self.store.get(self.identity, model, desired.name, desired.namespace)
            except ResourceNotFoundException:
                return await self.store.create(self.identity, desired)

            if _same_content(existing, desired):
                return existing
            if _needs_recreate(existing, desired):
                logger.debug(f"Recreating {model.KIND} {desired.key}, the stored copy cannot be changed in place")
                await self.store.delete(self.identity, model, desired.name, desired.namespace)
                return await self.store.create(self.identity, desired)

            replacement = desired.copy_deep()
            replacement.metadata.resource_version = existing.metadata.resource_version
            replacement.metadata.owner_references = existing.metadata.owner_references
            return await self.store.update(self.identity, replacement)

        return await retry_transient(create_or_replace, deadline, description=f"propagate {model.KIND} {desired.key}")


def _same_content(existing: Propagated, desired: Propagated) -> bool:
    if existing.metadata.labels != desired.metadata.labels:
        return False
    if existing.metadata.annotations != desired.metadata.annotations:
        return False
    if isinstance(desired, Secret):
        return (
            existing.data == desired.data
            and existing.string_data == desired.string_data
            and existing.type == desired.type
            and existing.immutable == desired.immutable
        )
    return existing.subjects == desired.subjects and existing.role_ref == desired.role_ref


def _needs_recreate(existing: Propagated, desired: Propagated) -> bool:
    if isinstance(desired, Secret):
        return bool(existing.immutable) or existing.type != desired.type
    return existing.role_ref != desired.role_ref
