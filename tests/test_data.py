import asyncio
from datetime import date

import pytest

from data import ACTIVITY, ASSETS, COMPANIES, DataAccess, warranty_expiry
from errors import (
    CompanyInUseError,
    DocumentNotFound,
    DuplicateTagError,
    EmployeeHasAssetsError,
    ValidationFailure,
)
from schemas import AssetCreate, AssetUpdate, CompanyCreate, CompanyUpdate, EmployeeCreate

pytestmark = pytest.mark.anyio


def asset_payload(**overrides):
    fields = dict(
        serial_number="SN-1001",
        tag_no="X1",
        category="Laptop",
        company_id="C1",
        brand="Dell",
        model="Latitude 7440",
        purchase_date=date(2024, 1, 15),
        asset_value=1200,
    )
    fields.update(overrides)
    return AssetCreate(**fields)


async def add_employee(data, name="Ravi Kumar", email="ravi@acme.io"):
    return await data.create_employee(EmployeeCreate(name=name, email=email))


class TestCache:
    async def test_second_read_is_served_from_cache(self, data, store):
        await data.add_company(CompanyCreate(name="Acme"))
        first = await data.get_companies()
        second = await data.get_companies()
        assert [c.name for c in first] == [c.name for c in second] == ["Acme"]
        assert store.list_calls.count(COMPANIES) == 1

    async def test_read_after_write_sees_the_write(self, data):
        assert await data.get_companies() == []
        company = await data.add_company(CompanyCreate(name="Acme"))
        assert [c.id for c in await data.get_companies()] == [company.id]

        await data.update_company(company.id, CompanyUpdate(name="Acme Corp"))
        assert (await data.get_company_by_id(company.id)).name == "Acme Corp"

    async def test_missing_ids_return_none(self, data):
        assert await data.get_company_by_id("nope") is None
        assert await data.get_employee_by_id("nope") is None
        assert await data.get_asset_by_id("nope") is None

    async def test_failed_fetch_returns_empty_and_is_not_cached(self, data, store):
        await data.add_company(CompanyCreate(name="Acme"))
        store.fail_reads = True
        assert await data.get_companies() == []
        assert COMPANIES not in data.cache

        store.fail_reads = False
        assert len(await data.get_companies()) == 1

    async def test_failed_write_propagates_and_keeps_cache(self, data, store):
        await data.add_company(CompanyCreate(name="Acme"))
        await data.get_companies()
        generation = data.cache.generation

        store.fail_writes = True
        with pytest.raises(ConnectionError):
            await data.add_company(CompanyCreate(name="Globex"))

        assert COMPANIES in data.cache
        assert data.cache.generation == generation

    async def test_concurrent_reads_share_one_fetch(self, data, store):
        await data.add_company(CompanyCreate(name="Acme"))
        store.list_delay = 0.01
        first, second = await asyncio.gather(data.get_companies(), data.get_companies())
        assert len(first) == len(second) == 1
        assert store.list_calls.count(COMPANIES) == 1

    async def test_fetch_straddling_a_clear_does_not_fill_the_cache(self, data, store):
        store.list_delay = 0.01
        pending = asyncio.ensure_future(data.get_companies())
        await asyncio.sleep(0)
        data.clear_cache()
        await pending
        assert COMPANIES not in data.cache

    async def test_caches_are_isolated_per_instance(self, store):
        a, b = DataAccess(store), DataAccess(store)
        await a.get_companies()
        assert COMPANIES in a.cache
        assert COMPANIES not in b.cache


class TestAssets:
    async def test_new_asset_defaults(self, data):
        asset = await data.add_asset(asset_payload())
        assert asset.status == "Available"
        assert asset.assigned_to == ""
        assert asset.history == []
        assert asset.warranty_expiry == date(2026, 1, 15)
        assert (await data.get_asset_by_id(asset.id)).tag_no == "X1"

    async def test_leap_day_warranty_rolls_to_march(self):
        assert warranty_expiry(date(2024, 2, 29)) == date(2026, 3, 1)

    async def test_duplicate_tag_is_rejected_case_insensitively(self, data, store):
        await data.add_asset(asset_payload(tag_no="X1"))
        writes_before = len(await store.list(ASSETS))
        with pytest.raises(DuplicateTagError):
            await data.add_asset(asset_payload(tag_no="x1", serial_number="SN-2"))
        assert len(await store.list(ASSETS)) == writes_before

    async def test_update_cannot_steal_another_tag(self, data):
        await data.add_asset(asset_payload(tag_no="X1"))
        other = await data.add_asset(asset_payload(tag_no="X2", serial_number="SN-2"))
        with pytest.raises(DuplicateTagError):
            await data.update_asset(other.id, AssetUpdate(tag_no="X1"))
        # keeping its own tag is fine
        await data.update_asset(other.id, AssetUpdate(tag_no="x2", brand="HP"))
        assert (await data.get_asset_by_id(other.id)).brand == "HP"

    async def test_tags_stay_unique_over_a_sequence_of_writes(self, data):
        ids = []
        for tag in ["A1", "a1", "B7", "A1 ", "c3", "C3"]:
            try:
                ids.append((await data.add_asset(asset_payload(tag_no=tag, serial_number=tag))).id)
            except DuplicateTagError:
                pass
        for asset_id, tag in zip(ids, ["b7", "Z9", "z9"]):
            try:
                await data.update_asset(asset_id, AssetUpdate(tag_no=tag))
            except DuplicateTagError:
                pass
        tags = [a.tag_no.strip().lower() for a in await data.get_assets()]
        assert len(tags) == len(set(tags))

    async def test_assigning_appends_exactly_one_history_entry(self, data):
        employee = await add_employee(data)
        asset = await data.add_asset(asset_payload())

        await data.assign_asset(asset.id, employee.id, notes="New starter kit")
        assigned = await data.get_asset_by_id(asset.id)
        assert assigned.status == "In Use"
        assert assigned.assigned_to == employee.id
        assert len(assigned.history) == 1
        assert assigned.history[0].assigned_to == employee.id
        assert assigned.history[0].notes == "New starter kit"

    async def test_resaving_without_assignee_change_appends_nothing(self, data):
        employee = await add_employee(data)
        asset = await data.add_asset(asset_payload())
        await data.assign_asset(asset.id, employee.id)

        await data.update_asset(asset.id, AssetUpdate(assigned_to=employee.id))
        await data.update_asset(asset.id, AssetUpdate(model="Latitude 9440", asset_value=900))
        updated = await data.get_asset_by_id(asset.id)
        assert len(updated.history) == 1
        assert updated.model == "Latitude 9440"
        assert len(await data.get_recent_activity()) == 1

    async def test_decommission_clears_assignee_from_any_state(self, data):
        employee = await add_employee(data)
        in_use = await data.add_asset(asset_payload(tag_no="X1"))
        spare = await data.add_asset(asset_payload(tag_no="X2", serial_number="SN-2"))
        await data.assign_asset(in_use.id, employee.id)
        await data.update_asset(spare.id, AssetUpdate(status="In Repair"))

        for asset_id in (in_use.id, spare.id):
            await data.decommission_asset(asset_id, notes="End of life")
            asset = await data.get_asset_by_id(asset_id)
            assert asset.status == "Decommissioned"
            assert asset.assigned_to == ""

        assert len((await data.get_asset_by_id(in_use.id)).history) == 2

    async def test_assigned_asset_cannot_be_marked_available(self, data, store):
        employee = await add_employee(data)
        asset = await data.add_asset(asset_payload())

        with pytest.raises(ValidationFailure):
            await data.update_asset(asset.id, AssetUpdate(assigned_to=employee.id, status="Available"))
        stored = await store.get(ASSETS, asset.id)
        assert (stored["assigned_to"], stored["status"]) == ("", "Available")
        assert stored["history"] == []

    async def test_in_use_asset_needs_an_assignee(self, data):
        employee = await add_employee(data)
        asset = await data.add_asset(asset_payload(tag_no="X1"))
        spare = await data.add_asset(asset_payload(tag_no="X2", serial_number="SN-2"))
        await data.assign_asset(asset.id, employee.id)

        with pytest.raises(ValidationFailure):
            await data.update_asset(asset.id, AssetUpdate(assigned_to="", status="In Use"))
        with pytest.raises(ValidationFailure):
            await data.update_asset(spare.id, AssetUpdate(status="In Use"))
        unchanged = await data.get_asset_by_id(asset.id)
        assert (unchanged.assigned_to, unchanged.status) == (employee.id, "In Use")

    async def test_assigned_asset_may_go_to_repair(self, data):
        employee = await add_employee(data)
        asset = await data.add_asset(asset_payload())
        await data.assign_asset(asset.id, employee.id)

        await data.update_asset(asset.id, AssetUpdate(status="In Repair"))
        repaired = await data.get_asset_by_id(asset.id)
        assert (repaired.assigned_to, repaired.status) == (employee.id, "In Repair")

    async def test_changing_purchase_date_moves_warranty(self, data):
        asset = await data.add_asset(asset_payload())
        await data.update_asset(asset.id, AssetUpdate(purchase_date=date(2025, 6, 1)))
        assert (await data.get_asset_by_id(asset.id)).warranty_expiry == date(2027, 6, 1)

    async def test_updating_missing_asset_raises(self, data):
        with pytest.raises(DocumentNotFound):
            await data.update_asset("missing", AssetUpdate(brand="HP"))

    async def test_dashboard_stats(self, data):
        employee = await add_employee(data)
        first = await data.add_asset(asset_payload(tag_no="X1"))
        await data.add_asset(asset_payload(tag_no="X2", serial_number="SN-2", category="Phone"))
        await data.assign_asset(first.id, employee.id)

        stats = await data.get_dashboard_stats()
        assert stats.total == 2
        assert stats.in_use == 1
        assert stats.available == 1
        assert stats.by_category == {"Laptop": 1, "Phone": 1}


class TestRecentActivity:
    async def test_assignment_and_return_are_logged(self, data):
        employee = await add_employee(data)
        asset = await data.add_asset(asset_payload())
        await data.assign_asset(asset.id, employee.id)
        await data.update_asset(asset.id, AssetUpdate(assigned_to=""))

        activity = await data.get_recent_activity()
        assert sorted(a.action for a in activity) == ["Assigned", "Returned"]
        assert all(a.employee_name == "Ravi Kumar" for a in activity)
        assert all(a.asset_serial == "SN-1001" for a in activity)
        assert (await data.get_asset_by_id(asset.id)).status == "Available"

    async def test_window_is_newest_five(self, data, store):
        employees = [await add_employee(data, name=f"E{i}", email=f"e{i}@acme.io") for i in range(4)]
        asset = await data.add_asset(asset_payload())
        for employee in employees + employees[:3]:
            await data.assign_asset(asset.id, employee.id)

        activity = await data.get_recent_activity()
        assert len(await store.list(ACTIVITY)) == 7
        assert len(activity) == 5
        dates = [a.date for a in activity]
        assert dates == sorted(dates, reverse=True)


class TestReferences:
    async def test_company_with_assets_cannot_be_deleted(self, data, store):
        await store.set(COMPANIES, "C1", {"name": "Acme"})
        await data.add_asset(asset_payload(tag_no="X1", company_id="C1"))

        with pytest.raises(CompanyInUseError):
            await data.delete_company("C1")
        assert (await data.get_company_by_id("C1")).name == "Acme"

    async def test_unused_company_can_be_deleted(self, data):
        company = await data.add_company(CompanyCreate(name="Globex"))
        await data.delete_company(company.id)
        assert await data.get_company_by_id(company.id) is None

    async def test_employee_holding_assets_cannot_be_deleted(self, data):
        employee = await add_employee(data)
        asset = await data.add_asset(asset_payload())
        await data.assign_asset(asset.id, employee.id)

        with pytest.raises(EmployeeHasAssetsError):
            await data.delete_employee(employee.id)

        await data.decommission_asset(asset.id)
        await data.delete_employee(employee.id)
        assert await data.get_employee_by_id(employee.id) is None

    async def test_employee_created_inactive_under_given_id(self, data):
        employee = await data.create_employee(
            EmployeeCreate(name="Mia", email="mia@acme.io"), employee_id="uid-1"
        )
        assert employee.id == "uid-1"
        assert employee.active is False
        assert employee.avatar_url == ""
        assert (await data.load_employee("uid-1")).email == "mia@acme.io"
