"""
Unit tests for the periodic resync celery task.
"""

import asyncio
from unittest.mock import patch

import pytest

from workplane.models.meta import ObjectMeta
from workplane.models.tenants import Namespace, Org, TenantSpec
from workplane.store.base import CONTROLLER_IDENTITY
from workplane.store.memory import InMemoryStore
from workplane.tasks.celery_app import app
from workplane.tasks.celery_tasks import resync_workloads_task


class TestResyncTask:
    def test_beat_schedule_registered(self):
        entry = app.conf.beat_schedule["resync-workloads"]
        assert entry["task"] == "workplane.tasks.celery_tasks.resync_workloads_task"

    def test_reports_failures_per_controller(self):
        store = InMemoryStore()

        async def seed():
            await store.create(CONTROLLER_IDENTITY, Namespace(metadata=ObjectMeta(name="cf")))
            # No registry secret in the root namespace, the org cannot become ready
            await store.create(
                CONTROLLER_IDENTITY, Org(metadata=ObjectMeta(name="org-guid", namespace="cf"), spec=TenantSpec())
            )

        asyncio.run(seed())
        with patch("workplane.tasks.celery_tasks.create_store", return_value=store):
            failures = resync_workloads_task()

        assert failures == {"CFOrg": 0, "CFSpace": 0, "CFTask": 0, "CFServiceBinding": 0}
        org = asyncio.run(store.get(CONTROLLER_IDENTITY, Org, "org-guid", "cf"))
        assert org.status.conditions[0].reason == "PropagationFailed"

    def test_errors_are_raised(self):
        with patch("workplane.tasks.celery_tasks.create_store", side_effect=RuntimeError("no cluster")):
            with pytest.raises(RuntimeError):
                resync_workloads_task()
