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
Deployments are not objects of their own: creating one bumps the app's
revision annotation, points the app at a droplet and marks it STARTED, all in
one optimistic-concurrency write. Progress is read back from the app's Ready
condition.
"""

import re
from typing import NamedTuple, Optional

from workplane.config import settings
from workplane.exceptions import InvalidStateException
from workplane.models.conditions import READY, is_status_condition_true
from workplane.models.meta import LocalObjectReference
from workplane.models.workloads import App, DesiredState

_REVISION = re.compile(r"[+-]?[0-9]+")

DEPLOYMENT_STATUS_ACTIVE = "ACTIVE"
DEPLOYMENT_STATUS_FINALIZED = "FINALIZED"
DEPLOYMENT_REASON_DEPLOYING = "DEPLOYING"
DEPLOYMENT_REASON_DEPLOYED = "DEPLOYED"


class DeploymentStatus(NamedTuple):
    value: str
    reason: str


def parse_revision(app: App, annotation: Optional[str] = None) -> int:
    """Current revision of app, an app without the annotation is at revision 0"""
    annotation = annotation or settings.app_revision_annotation
    raw = app.metadata.annotations.get(annotation, "0")
    if not _REVISION.fullmatch(raw):
        raise InvalidStateException(f"expected app-rev to be an integer, got {raw!r} on app {app.name}")
    return int(raw)


def bump_app_revision(app: App, droplet_guid: Optional[str] = None, annotation: Optional[str] = None) -> App:
    """
    Return a copy of app with the revision incremented, the droplet reference
    set to droplet_guid (kept as is when not given) and desired state STARTED.
    The copy keeps app's resource version so it can be written conditionally.

    Raises:
        InvalidStateException: the revision annotation is not a base-10 integer
    """
    annotation = annotation or settings.app_revision_annotation
    revision = parse_revision(app, annotation)

    patched = app.copy_deep()
    patched.metadata.annotations[annotation] = str(revision + 1)
    if droplet_guid:
        patched.spec.current_droplet_ref = LocalObjectReference(name=droplet_guid)
    patched.spec.desired_state = DesiredState.STARTED
    return patched


def deployment_status(app: App) -> DeploymentStatus:
    if is_status_condition_true(app.status.conditions, READY):
        return DeploymentStatus(DEPLOYMENT_STATUS_FINALIZED, DEPLOYMENT_REASON_DEPLOYED)
    return DeploymentStatus(DEPLOYMENT_STATUS_ACTIVE, DEPLOYMENT_REASON_DEPLOYING)
