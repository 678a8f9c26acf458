"""
Shared fixtures for the unit tests.

The InMemoryStore is the store double for everything above the store layer;
fixtures here seed it with namespaces and workload objects as the controller
identity.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest

from workplane.models.meta import LocalObjectReference, ObjectMeta
from workplane.models.tenants import Namespace, Secret
from workplane.models.workloads import App, AppSpec, Build, BuildDroplet, BuildSpec, Registry
from workplane.reconciler.driver import ControlLoop
from workplane.store.base import CONTROLLER_IDENTITY
from workplane.store.memory import InMemoryStore

FIXED_NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def seed(store):
    """Create objects as the controller identity, returns the stored copies"""

    async def _seed(*objects):
        created = [await store.create(CONTROLLER_IDENTITY, obj) for obj in objects]
        return created[0] if len(created) == 1 else created

    return _seed


@pytest.fixture
def make_namespace(seed):
    async def _make(name: str, labels=None):
        return await seed(Namespace(metadata=ObjectMeta(name=name, labels=labels or {})))

    return _make


@pytest.fixture
def make_staged_app(store, seed, make_namespace):
    """An app in namespace whose current droplet is a successfully staged build"""

    async def _make(namespace: str, app_name: str = "app-guid", droplet_name: str = "droplet-guid"):
        await make_namespace(namespace)
        app = await seed(
            App(
                metadata=ObjectMeta(name=app_name, namespace=namespace),
                spec=AppSpec(display_name="my-app", current_droplet_ref=LocalObjectReference(name=droplet_name)),
            )
        )
        build = await seed(
            Build(
                metadata=ObjectMeta(name=droplet_name, namespace=namespace),
                spec=BuildSpec(app_ref=LocalObjectReference(name=app_name)),
            )
        )
        build.status.droplet = BuildDroplet(
            registry=Registry(image="registry.example.com/my-app@sha256:abc", image_pull_secrets=[]),
            stack="cflinuxfs4",
        )
        await store.update_status(CONTROLLER_IDENTITY, build)
        return app

    return _make


@pytest.fixture
def make_root_namespace(seed, make_namespace):
    """The root namespace with the registry credentials every tenant namespace gets"""

    async def _make(name: str = "cf"):
        await make_namespace(name)
        await seed(
            Secret(
                metadata=ObjectMeta(name="image-registry-credentials", namespace=name),
                data={".dockerconfigjson": "e30="},
                type="kubernetes.io/dockerconfigjson",
            )
        )

    return _make


@pytest.fixture
def run_controllers(store):
    """Run controllers in a background control loop for the duration of an async with block"""

    @asynccontextmanager
    async def _run(*controllers):
        stop = asyncio.Event()
        control_loop = ControlLoop(store, list(controllers), workers=2, resync_period=3600)
        task = asyncio.create_task(control_loop.run(stop))
        try:
            yield control_loop
        finally:
            stop.set()
            await task

    return _run


async def wait_for_watchers(store: InMemoryStore, count: int = 1, timeout: float = 2.0):
    """Block until at least count watch streams are open on store"""
    loop = asyncio.get_running_loop()
    end = loop.time() + timeout
    while len(store._watchers) < count:
        if loop.time() > end:
            raise AssertionError(f"expected {count} open watches, have {len(store._watchers)}")
        await asyncio.sleep(0.01)


@pytest.fixture
def watchers():
    return wait_for_watchers
