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
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from workplane.models.workloads import App
from workplane.reconciler.deployment import DeploymentStatus, bump_app_revision, deployment_status
from workplane.repositories.base import Repository
from workplane.store.base import Identity
from workplane.utils.deadline import Deadline
from workplane.utils.retry import retry_transient

logger = logging.getLogger(__name__)


@dataclass
class DeploymentRecord:
    guid: str
    droplet_guid: str
    status: DeploymentStatus
    created_at: Optional[datetime] = None


@dataclass
class CreateDeploymentMessage:
    app_guid: str
    droplet_guid: Optional[str] = None


def app_to_deployment_record(app: App) -> DeploymentRecord:
    return DeploymentRecord(
        guid=app.name,
        droplet_guid=app.spec.current_droplet_ref.name,
        status=deployment_status(app),
        created_at=app.metadata.creation_timestamp,
    )


class DeploymentRepository(Repository):
    async def get_deployment(self, identity: Identity, guid: str) -> DeploymentRecord:
        """A deployment shares its GUID with the app it deploys"""
        app = await self.locate(identity, App, guid)
        return app_to_deployment_record(app)

    async def create_deployment(
        self, identity: Identity, message: CreateDeploymentMessage, deadline: Deadline
    ) -> DeploymentRecord:
        """
        Bump the app revision, set its droplet and start it in a single
        conditional write. A concurrent change to the app makes the write
        conflict, the app is then read again and the bump recomputed.

        Raises:
            InvalidStateException: the app's revision annotation is not an integer
        """
        located = await self.locate(identity, App, message.app_guid)

        async def bump() -> App:
            app = await self.store.get(identity, App, message.app_guid, located.namespace)
            return await self.store.update(identity, bump_app_revision(app, message.droplet_guid))

        app = await retry_transient(bump, deadline, description=f"deployment of app {message.app_guid}")
        logger.info(f"Deployed app {app.key} with droplet {app.spec.current_droplet_ref.name}")
        return app_to_deployment_record(app)
