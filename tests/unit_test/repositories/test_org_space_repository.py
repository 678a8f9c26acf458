"""
Unit tests for OrgSpaceRepository with the org and space controllers running.
"""

import asyncio

import pytest

from workplane.exceptions import ConditionTimeoutException, ResourceNotFoundException
from workplane.models.tenants import Namespace, Secret
from workplane.reconciler.tenant import OrgController, SpaceController
from workplane.repositories.base import Metadata
from workplane.repositories.org_space_repository import CreateOrgMessage, CreateSpaceMessage, OrgSpaceRepository
from workplane.store.base import CONTROLLER_IDENTITY
from workplane.utils.deadline import Deadline

ROOT = "cf"


async def namespace_names(store):
    return sorted(ns.name for ns in (await store.list(CONTROLLER_IDENTITY, Namespace)).items)


class TestOrgSpaceRepository:
    @pytest.mark.asyncio
    async def test_create_org_and_space(self, store, make_root_namespace, run_controllers):
        await make_root_namespace(ROOT)
        repo = OrgSpaceRepository(store, root_namespace=ROOT)

        async with run_controllers(OrgController(store), SpaceController(store)):
            org = await repo.create_org(
                CONTROLLER_IDENTITY, CreateOrgMessage(name="my-org", metadata=Metadata(labels={"a": "b"})), Deadline(5)
            )
            space = await repo.create_space(
                CONTROLLER_IDENTITY, CreateSpaceMessage(name="dev", organization_guid=org.guid), Deadline(5)
            )

        assert org.name == "my-org"
        assert org.labels == {"a": "b"}
        assert space.name == "dev"
        assert space.organization_guid == org.guid
        assert await namespace_names(store) == sorted([ROOT, org.guid, space.guid])
        await store.get(CONTROLLER_IDENTITY, Secret, "image-registry-credentials", space.guid)

        assert (await repo.get_org(CONTROLLER_IDENTITY, org.guid)).guid == org.guid
        assert [o.guid for o in await repo.list_orgs(CONTROLLER_IDENTITY)] == [org.guid]
        assert (await repo.get_space(CONTROLLER_IDENTITY, space.guid)).organization_guid == org.guid
        assert [s.guid for s in await repo.list_spaces(CONTROLLER_IDENTITY, [org.guid])] == [space.guid]
        assert await repo.list_spaces(CONTROLLER_IDENTITY, ["other-org"]) == []

    @pytest.mark.asyncio
    async def test_create_org_times_out_when_propagation_fails(self, store, make_namespace, run_controllers):
        # No registry credentials in the root namespace
        await make_namespace(ROOT)
        repo = OrgSpaceRepository(store, root_namespace=ROOT)

        async with run_controllers(OrgController(store)):
            with pytest.raises(ConditionTimeoutException):
                await repo.create_org(CONTROLLER_IDENTITY, CreateOrgMessage(name="my-org"), Deadline(0.3))

    @pytest.mark.asyncio
    async def test_delete_org_removes_everything_below_it(self, store, make_root_namespace, run_controllers):
        await make_root_namespace(ROOT)
        repo = OrgSpaceRepository(store, root_namespace=ROOT)

        async with run_controllers(OrgController(store), SpaceController(store)):
            org = await repo.create_org(CONTROLLER_IDENTITY, CreateOrgMessage(name="my-org"), Deadline(5))
            space = await repo.create_space(
                CONTROLLER_IDENTITY, CreateSpaceMessage(name="dev", organization_guid=org.guid), Deadline(5)
            )
            await repo.delete_org(CONTROLLER_IDENTITY, org.guid)
            for _ in range(200):
                if await namespace_names(store) == [ROOT]:
                    break
                await asyncio.sleep(0.01)

        assert await namespace_names(store) == [ROOT]
        with pytest.raises(ResourceNotFoundException):
            await repo.get_space(CONTROLLER_IDENTITY, space.guid)

    @pytest.mark.asyncio
    async def test_delete_space(self, store, make_root_namespace, run_controllers):
        await make_root_namespace(ROOT)
        repo = OrgSpaceRepository(store, root_namespace=ROOT)

        async with run_controllers(OrgController(store), SpaceController(store)):
            org = await repo.create_org(CONTROLLER_IDENTITY, CreateOrgMessage(name="my-org"), Deadline(5))
            space = await repo.create_space(
                CONTROLLER_IDENTITY, CreateSpaceMessage(name="dev", organization_guid=org.guid), Deadline(5)
            )
            await repo.delete_space(CONTROLLER_IDENTITY, space.guid)
            for _ in range(200):
                if space.guid not in await namespace_names(store):
                    break
                await asyncio.sleep(0.01)

        assert await namespace_names(store) == sorted([ROOT, org.guid])
