"""
Data access and caching for companies, employees, assets and recent activity.

Reads go through a CollectionCache: the first read of a collection fetches it
from the document store and later reads are served from memory until the next
write clears every slot. The store stays the source of truth; the cache is a
disposable copy.

Writes validate what the store cannot (tag uniqueness, references), write,
and only then clear the cache. A failed write propagates and leaves the cache
alone since nothing changed.
"""

import asyncio
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from database import DocumentStore, timestamp
from errors import (
    CompanyInUseError,
    DocumentNotFound,
    DuplicateTagError,
    EmployeeHasAssetsError,
    ValidationFailure,
)
from schemas import (
    Asset,
    AssetCreate,
    AssetUpdate,
    Assignment,
    Company,
    CompanyCreate,
    CompanyUpdate,
    DashboardStats,
    Employee,
    EmployeeCreate,
    EmployeeUpdate,
    RecentActivity,
)

logger = logging.getLogger(__name__)

COMPANIES = "companies"
EMPLOYEES = "employees"
ASSETS = "assets"
ACTIVITY = "activity"

RECENT_ACTIVITY_LIMIT = 5
WARRANTY_YEARS = 2

MODELS: Dict[str, Type[BaseModel]] = {
    COMPANIES: Company,
    EMPLOYEES: Employee,
    ASSETS: Asset,
    ACTIVITY: RecentActivity,
}


def warranty_expiry(purchase_date: date, years: int = WARRANTY_YEARS) -> date:
    try:
        return purchase_date.replace(year=purchase_date.year + years)
    except ValueError:
        # 29 February rolls over to 1 March
        return date(purchase_date.year + years, 3, 1)


class CollectionCache:
    """Named cache slots, one per collection, plus a generation bumped on every clear."""

    def __init__(self):
        self._slots: Dict[str, List[BaseModel]] = {}
        self.generation = 0

    def get(self, name: str) -> Optional[List[BaseModel]]:
        return self._slots.get(name)

    def put(self, name: str, items: List[BaseModel], generation: int) -> bool:
        # a fetch that straddled a clear() must not repopulate the slot
        if generation != self.generation:
            return False
        self._slots[name] = items
        return True

    def clear(self) -> None:
        self._slots.clear()
        self.generation += 1

    def __contains__(self, name: str) -> bool:
        return name in self._slots


class DataAccess:
    def __init__(self, store: DocumentStore, cache: Optional[CollectionCache] = None):
        self.store = store
        self.cache = cache if cache is not None else CollectionCache()
        self._inflight: Dict[str, asyncio.Future] = {}

    # ----------------------------
    # Cache plumbing
    # ----------------------------
    def clear_cache(self) -> None:
        self.cache.clear()
        self._inflight.clear()
        logger.debug("cache cleared (generation %d)", self.cache.generation)

    async def _collection(self, name: str) -> list:
        cached = self.cache.get(name)
        if cached is not None:
            return list(cached)

        task = self._inflight.get(name)
        if task is None:
            task = asyncio.ensure_future(self._load(name, self.cache.generation))
            self._inflight[name] = task

            def _done(t, name=name):
                if self._inflight.get(name) is t:
                    del self._inflight[name]

            task.add_done_callback(_done)
        return list(await asyncio.shield(task))

    async def _load(self, name: str, generation: int) -> list:
        try:
            if name == ACTIVITY:
                docs = await self.store.query(
                    ACTIVITY, order_by="date", descending=True, limit=RECENT_ACTIVITY_LIMIT
                )
            else:
                docs = await self.store.list(name)
        except Exception:
            logger.exception("Error fetching %s", name)
            return []

        model = MODELS[name]
        items = []
        for doc in docs:
            try:
                items.append(model.model_validate(doc))
            except ValidationError as exc:
                logger.warning("Skipping malformed %s document %s: %s", name, doc.get("id"), exc)
        self.cache.put(name, items, generation)
        return items

    # ----------------------------
    # Reads
    # ----------------------------
    async def get_companies(self) -> List[Company]:
        return await self._collection(COMPANIES)

    async def get_employees(self) -> List[Employee]:
        return await self._collection(EMPLOYEES)

    async def get_assets(self) -> List[Asset]:
        return await self._collection(ASSETS)

    async def get_recent_activity(self) -> List[RecentActivity]:
        return await self._collection(ACTIVITY)

    async def get_company_by_id(self, company_id: str) -> Optional[Company]:
        return next((c for c in await self.get_companies() if c.id == company_id), None)

    async def get_employee_by_id(self, employee_id: str) -> Optional[Employee]:
        return next((e for e in await self.get_employees() if e.id == employee_id), None)

    async def get_asset_by_id(self, asset_id: str) -> Optional[Asset]:
        return next((a for a in await self.get_assets() if a.id == asset_id), None)

    async def get_assets_for_employee(self, employee_id: str) -> List[Asset]:
        return [a for a in await self.get_assets() if employee_id and a.assigned_to == employee_id]

    async def load_employee(self, employee_id: str) -> Optional[Employee]:
        """Uncached profile read. Store failures propagate."""
        doc = await self.store.get(EMPLOYEES, employee_id)
        return Employee.model_validate(doc) if doc else None

    async def get_dashboard_stats(self) -> DashboardStats:
        assets = await self.get_assets()
        stats = DashboardStats(total=len(assets))
        for asset in assets:
            stats.by_category[asset.category] = stats.by_category.get(asset.category, 0) + 1
            stats.by_status[asset.status] = stats.by_status.get(asset.status, 0) + 1
        stats.in_use = stats.by_status.get("In Use", 0)
        stats.available = stats.by_status.get("Available", 0)
        stats.in_repair = stats.by_status.get("In Repair", 0)
        stats.decommissioned = stats.by_status.get("Decommissioned", 0)
        return stats

    # ----------------------------
    # Companies
    # ----------------------------
    async def add_company(self, data: CompanyCreate) -> Company:
        company_id = await self.store.add(COMPANIES, data.model_dump(mode="json"))
        self.clear_cache()
        return Company(id=company_id, **data.model_dump())

    async def update_company(self, company_id: str, data: CompanyUpdate) -> None:
        changes = data.model_dump(mode="json", exclude_unset=True, exclude_none=True)
        await self.store.update(COMPANIES, company_id, changes)
        self.clear_cache()

    async def delete_company(self, company_id: str) -> None:
        if any(a.company_id == company_id for a in await self.get_assets()):
            raise CompanyInUseError(company_id)
        await self.store.delete(COMPANIES, company_id)
        self.clear_cache()

    # ----------------------------
    # Employees
    # ----------------------------
    async def create_employee(self, data: EmployeeCreate, employee_id: Optional[str] = None) -> Employee:
        doc = data.model_dump(mode="json")
        doc.update({"avatar_url": "", "active": False})
        if employee_id:
            await self.store.set(EMPLOYEES, employee_id, doc)
        else:
            employee_id = await self.store.add(EMPLOYEES, doc)
        self.clear_cache()
        return Employee(id=employee_id, **doc)

    async def update_employee(self, employee_id: str, changes) -> None:
        if not isinstance(changes, BaseModel):
            changes = EmployeeUpdate.model_validate(changes)
        changes = changes.model_dump(mode="json", exclude_unset=True, exclude_none=True)
        await self.store.update(EMPLOYEES, employee_id, changes)
        self.clear_cache()

    async def delete_employee(self, employee_id: str) -> None:
        held = await self.get_assets_for_employee(employee_id)
        if held:
            raise EmployeeHasAssetsError(employee_id, len(held))
        await self.store.delete(EMPLOYEES, employee_id)
        self.clear_cache()

    # ----------------------------
    # Assets
    # ----------------------------
    async def _check_tag(self, tag_no: str, asset_id: Optional[str] = None) -> None:
        wanted = tag_no.strip().lower()
        for asset in await self.get_assets():
            if asset.id != asset_id and asset.tag_no.strip().lower() == wanted:
                raise DuplicateTagError(tag_no, asset.serial_number)

    async def add_asset(self, data: AssetCreate) -> Asset:
        await self._check_tag(data.tag_no)
        doc = data.model_dump(mode="json")
        doc.update({
            "status": "Available",
            "assigned_to": "",
            "history": [],
            "warranty_expiry": warranty_expiry(data.purchase_date).isoformat(),
        })
        asset_id = await self.store.add(ASSETS, doc)
        self.clear_cache()
        return Asset.model_validate({**doc, "id": asset_id})

    async def update_asset(self, asset_id: str, data: AssetUpdate) -> None:
        changes: Dict[str, Any] = data.model_dump(exclude_unset=True, exclude_none=True)
        notes = changes.pop("notes", None)

        if changes.get("tag_no"):
            await self._check_tag(changes["tag_no"], asset_id)

        stored = await self.store.get(ASSETS, asset_id)
        if stored is None:
            raise DocumentNotFound(ASSETS, asset_id)
        current = Asset.model_validate(stored)

        # status and assignee move together
        if changes.get("status") == "Decommissioned":
            changes["assigned_to"] = ""
        elif changes.get("assigned_to") and "status" not in changes:
            changes["status"] = "In Use"
        elif changes.get("assigned_to") == "" and "status" not in changes and current.status == "In Use":
            changes["status"] = "Available"

        status = changes.get("status", current.status)
        assignee = changes.get("assigned_to", current.assigned_to)
        if assignee and status not in ("In Use", "In Repair"):
            raise ValidationFailure(f"An asset assigned to an employee cannot be {status}.")
        if not assignee and status == "In Use":
            raise ValidationFailure("An asset in use must be assigned to an employee.")

        if "purchase_date" in changes and changes["purchase_date"] != current.purchase_date:
            changes["warranty_expiry"] = warranty_expiry(changes["purchase_date"])

        assignee_changed = assignee != current.assigned_to
        if assignee_changed:
            entry = Assignment(
                date=date.today(),
                assigned_to=assignee,
                status=status,
                notes=notes or ("Assigned via web interface" if assignee else None),
            )
            changes["history"] = [*current.history, entry]

        if not changes:
            return
        merged = Asset.model_validate({**current.model_dump(), **changes})
        payload = {k: v for k, v in merged.model_dump(mode="json").items() if k in changes}
        await self.store.update(ASSETS, asset_id, payload)
        try:
            if assignee_changed:
                await self._log_activity(current, assignee)
        finally:
            self.clear_cache()

    async def _log_activity(self, asset: Asset, new_assignee: str) -> None:
        employee_id = new_assignee or asset.assigned_to
        employee = await self.get_employee_by_id(employee_id)
        if employee is None:
            logger.info("No activity logged for asset %s: unknown employee %s", asset.id, employee_id)
            return
        entry = {
            "asset_id": asset.id,
            "asset_serial": asset.serial_number,
            "employee_id": employee.id,
            "employee_name": employee.name,
            "date": timestamp(),
            "action": "Assigned" if new_assignee else "Returned",
        }
        await self.store.add(ACTIVITY, entry)

    async def assign_asset(self, asset_id: str, employee_id: str, notes: Optional[str] = None) -> None:
        if not employee_id:
            raise ValidationFailure("An employee must be selected.")
        if await self.get_employee_by_id(employee_id) is None:
            raise ValidationFailure(f"Unknown employee {employee_id}")
        await self.update_asset(
            asset_id, AssetUpdate(assigned_to=employee_id, status="In Use", notes=notes)
        )

    async def decommission_asset(self, asset_id: str, notes: Optional[str] = None) -> None:
        await self.update_asset(
            asset_id, AssetUpdate(status="Decommissioned", assigned_to="", notes=notes)
        )
