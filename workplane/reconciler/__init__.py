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

from typing import List, Optional

from workplane.reconciler.base import Controller, ReconcileResult, is_stale
from workplane.reconciler.build import BuildController, ImageConfig, ImageConfigFetcher, compute_build_status
from workplane.reconciler.deployment import bump_app_revision, deployment_status
from workplane.reconciler.driver import ControlLoop, WorkQueue
from workplane.reconciler.service_binding import ServiceBindingController, compute_binding_status
from workplane.reconciler.task import TaskController, compute_task_status
from workplane.reconciler.tenant import OrgController, SpaceController, compute_tenant_status
from workplane.store.base import Store


def create_controllers(store: Store, image_config_fetcher: Optional[ImageConfigFetcher] = None) -> List[Controller]:
    """
    Build the standard controller set. Builds are only reconciled when an
    image config fetcher is available to read the produced images.
    """
    controllers: List[Controller] = [
        OrgController(store),
        SpaceController(store),
        TaskController(store),
        ServiceBindingController(store),
    ]
    if image_config_fetcher is not None:
        controllers.append(BuildController(store, image_config_fetcher))
    return controllers


__all__ = [
    "Controller",
    "ReconcileResult",
    "is_stale",
    "BuildController",
    "ImageConfig",
    "ImageConfigFetcher",
    "compute_build_status",
    "bump_app_revision",
    "deployment_status",
    "ControlLoop",
    "WorkQueue",
    "ServiceBindingController",
    "compute_binding_status",
    "TaskController",
    "compute_task_status",
    "OrgController",
    "SpaceController",
    "compute_tenant_status",
    "create_controllers",
]
