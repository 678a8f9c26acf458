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
Celery application and beat schedule for the periodic controller resync
"""

from celery import Celery

from workplane.config import settings

app = Celery("workplane", broker=settings.celery_broker_url, include=["workplane.tasks.celery_tasks"])

# Beat schedule for level-triggered resync of every controller
app.conf.beat_schedule = {
    "resync-workloads": {
        "task": "workplane.tasks.celery_tasks.resync_workloads_task",
        "schedule": settings.resync_schedule_seconds,
        "options": {
            # A resync that waited longer than one period is superseded by the next one
            "expires": settings.resync_schedule_seconds,
        },
    },
}
