import asyncio

import pytest

from data import DataAccess
from database import MemoryDocumentStore
from identity import AuthClient, IdentityService
from schemas import EmployeeCreate
from session import SessionManager
from storage import BlobStorage


class FlakyStore(MemoryDocumentStore):
    """In-memory store that can be told to fail or stall, and counts its reads."""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.fail_reads = False
        self.fail_writes = False
        self.list_delay = 0.0
        self.get_delays = {}
        self.list_calls = []
        self.get_calls = []

    async def list(self, collection):
        self.list_calls.append(collection)
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if self.fail_reads:
            raise ConnectionError("store unavailable")
        return await super().list(collection)

    async def get(self, collection, doc_id):
        self.get_calls.append((collection, doc_id))
        if doc_id in self.get_delays:
            await asyncio.sleep(self.get_delays[doc_id])
        if self.fail_reads:
            raise ConnectionError("store unavailable")
        return await super().get(collection, doc_id)

    async def _write_guard(self):
        if self.fail_writes:
            raise ConnectionError("write rejected")

    async def add(self, collection, data):
        await self._write_guard()
        return await super().add(collection, data)

    async def set(self, collection, doc_id, data):
        await self._write_guard()
        await super().set(collection, doc_id, data)

    async def update(self, collection, doc_id, changes):
        await self._write_guard()
        await super().update(collection, doc_id, changes)

    async def delete(self, collection, doc_id):
        await self._write_guard()
        await super().delete(collection, doc_id)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def data(store):
    return DataAccess(store)


@pytest.fixture
def identity_service(store):
    return IdentityService(store)


@pytest.fixture
def blob_storage(tmp_path):
    return BlobStorage(str(tmp_path / "uploads"), "/uploads")


@pytest.fixture
def register(identity_service, data):
    """Create a login plus its employee profile."""
    async def _register(email, password="secret1", active=True, role="Employee", name="Dana Lee"):
        identity = await identity_service.create_account(email, password)
        await data.create_employee(EmployeeCreate(name=name, email=email, role=role), employee_id=identity.uid)
        if active:
            await data.update_employee(identity.uid, {"active": True})
        return identity
    return _register


@pytest.fixture
def make_session(identity_service, data, blob_storage):
    async def _make():
        auth = AuthClient(identity_service)
        session = SessionManager(auth, data, blob_storage)
        await session.start()
        return session
    return _make
