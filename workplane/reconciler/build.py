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
Build reconciliation.

compute_build_status is the pure transition: it maps the build, its resolved
references and the image builder's BuildWorkload onto the next BuildStatus.
BuildController gathers those inputs, owns the BuildWorkload, and calls the
ImageConfigFetcher once when a build first succeeds.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from workplane.exceptions import AlreadyExistsException, InvalidStateException
from workplane.models.conditions import ConditionStatus, condition_status, find_status_condition
from workplane.models.meta import LocalObjectReference, ObjectMeta
from workplane.models.workloads import (
    BUILD_REFERENCES_RESOLVED,
    BUILD_STAGING,
    BUILD_SUCCEEDED,
    REASON_APP_NOT_FOUND,
    REASON_BUILD_FAILED,
    REASON_BUILD_NOT_RUNNING,
    REASON_BUILD_RUNNING,
    REASON_BUILD_SUCCEEDED,
    REASON_PACKAGE_NOT_FOUND,
    App,
    Build,
    BuildDroplet,
    BuildStatus,
    BuildWorkload,
    BuildWorkloadSpec,
    Package,
    PackageSource,
    ProcessType,
    Registry,
)
from workplane.reconciler.base import Controller, ReconcileResult, is_stale, owner_mapper, set_condition
from workplane.store.base import CONTROLLER_IDENTITY, Identity, Store

logger = logging.getLogger(__name__)


@dataclass
class ImageConfig:
    """Process and port metadata read from a built image"""

    process_types: List[ProcessType] = field(default_factory=list)
    ports: List[int] = field(default_factory=list)


class ImageConfigFetcher(ABC):
    """Reads the config of a built image from its registry"""

    @abstractmethod
    async def fetch(self, image: str, image_pull_secrets: List[str], namespace: str) -> ImageConfig:
        pass


def compute_build_status(
    build: Build,
    app: Optional[App],
    package: Optional[Package],
    workload: Optional[BuildWorkload],
    image_config: Optional[ImageConfig],
    now: datetime,
) -> BuildStatus:
    """
    Next status of build. A stale build is returned unchanged.

    Raises:
        InvalidStateException: the workload succeeded, no droplet is recorded
            yet and no image_config was supplied
    """
    if is_stale(build):
        return build.status.model_copy(deep=True)

    status = build.status.model_copy(deep=True)
    generation = build.metadata.generation
    status.observed_generation = generation

    def mark(condition_type: str, value: ConditionStatus, reason: str, message: str = "") -> None:
        set_condition(status.conditions, condition_type, value, reason, message, generation, now)

    if app is None:
        mark(
            BUILD_REFERENCES_RESOLVED,
            ConditionStatus.FALSE,
            REASON_APP_NOT_FOUND,
            f"app {build.spec.app_ref.name} not found",
        )
        return status
    if package is None:
        mark(
            BUILD_REFERENCES_RESOLVED,
            ConditionStatus.FALSE,
            REASON_PACKAGE_NOT_FOUND,
            f"package {build.spec.package_ref.name} not found",
        )
        return status
    mark(BUILD_REFERENCES_RESOLVED, ConditionStatus.TRUE, "Resolved")

    # Tri-state reported by the image builder
    ready = ConditionStatus.UNKNOWN
    ready_message = ""
    if workload is not None:
        workload_condition = find_status_condition(workload.status.conditions, BUILD_SUCCEEDED)
        if workload_condition is not None:
            ready = workload_condition.status
            ready_message = workload_condition.message

    if ready == ConditionStatus.UNKNOWN:
        mark(BUILD_STAGING, ConditionStatus.TRUE, REASON_BUILD_RUNNING, "Build is running")
        mark(BUILD_SUCCEEDED, ConditionStatus.UNKNOWN, REASON_BUILD_RUNNING, "Build is running")
        return status

    mark(BUILD_STAGING, ConditionStatus.FALSE, REASON_BUILD_NOT_RUNNING)
    if ready == ConditionStatus.FALSE:
        mark(BUILD_SUCCEEDED, ConditionStatus.FALSE, REASON_BUILD_FAILED, ready_message)
        return status

    if status.droplet is None:
        if image_config is None:
            raise InvalidStateException(f"build {build.name} succeeded but its image config was not fetched")
        status.droplet = BuildDroplet(
            registry=Registry(
                image=workload.status.latest_image,
                image_pull_secrets=[s.model_copy() for s in package.spec.source.registry.image_pull_secrets],
            ),
            stack=workload.status.latest_stack,
            process_types=[p.model_copy() for p in image_config.process_types],
            ports=list(image_config.ports),
        )
    mark(BUILD_SUCCEEDED, ConditionStatus.TRUE, REASON_BUILD_SUCCEEDED)
    return status


def needs_image_config(build: Build, workload: Optional[BuildWorkload]) -> bool:
    return (
        workload is not None
        and build.status.droplet is None
        and condition_status(workload.status.conditions, BUILD_SUCCEEDED) == ConditionStatus.TRUE
    )


class BuildController(Controller[Build]):
    model = Build

    def __init__(
        self,
        store: Store,
        image_config_fetcher: ImageConfigFetcher,
        identity: Identity = CONTROLLER_IDENTITY,
        **kwargs,
    ):
        super().__init__(store, identity=identity, **kwargs)
        self.image_config_fetcher = image_config_fetcher

    def related(self):
        return [(BuildWorkload, owner_mapper(Build.KIND))]

    async def reconcile_object(self, build: Build) -> ReconcileResult:
        namespace = build.namespace
        app = await self.get_optional(App, build.spec.app_ref.name, namespace)
        package = await self.get_optional(Package, build.spec.package_ref.name, namespace)

        workload = None
        if app is not None and package is not None:
            workload = await self.get_optional(BuildWorkload, build.name, namespace)
            if workload is None and build.status.droplet is None:
                workload = await self._create_workload(build, package)

        image_config = None
        if needs_image_config(build, workload):
            pull_secrets = [s.name for s in package.spec.source.registry.image_pull_secrets]
            image_config = await self.image_config_fetcher.fetch(workload.status.latest_image, pull_secrets, namespace)
            logger.info(f"Fetched image config for build {build.key}: {len(image_config.process_types)} process types")

        status = compute_build_status(build, app, package, workload, image_config, self.clock())
        await self.write_status(build, status)
        return ReconcileResult()

    async def _create_workload(self, build: Build, package: Package) -> BuildWorkload:
        workload = BuildWorkload(
            metadata=ObjectMeta(name=build.name, namespace=build.namespace),
            spec=BuildWorkloadSpec(
                build_ref=LocalObjectReference(name=build.name),
                source=PackageSource(registry=package.spec.source.registry.model_copy(deep=True)),
                buildpacks=list(build.spec.lifecycle.data.buildpacks),
                stack=build.spec.lifecycle.data.stack,
            ),
        )
        workload.set_owner(build)
        try:
            created = await self.store.create(self.identity, workload)
        except AlreadyExistsException:
            return await self.store.get(self.identity, BuildWorkload, build.name, build.namespace)
        logger.info(f"Created build workload {created.key}")
        return created
