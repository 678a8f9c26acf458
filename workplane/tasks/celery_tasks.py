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

import asyncio
import logging
from typing import Dict

from workplane.config import settings
from workplane.reconciler import ControlLoop, create_controllers
from workplane.store.base import create_store
from workplane.tasks.celery_app import app

logger = logging.getLogger(__name__)


async def resync_workloads() -> Dict[str, int]:
    store = create_store()
    control_loop = ControlLoop(store, create_controllers(store))
    return await control_loop.resync_all()


@app.task
def resync_workloads_task():
    """Periodic task reconciling every tenant and workload object once"""
    logging.basicConfig(level=settings.log_level)
    try:
        logger.info("Starting workload resync")
        failures = asyncio.run(resync_workloads())
        logger.info(f"Workload resync completed, failures per controller: {failures}")
        return failures
    except Exception as e:
        logger.error(f"Workload resync failed: {e}", exc_info=True)
        raise
