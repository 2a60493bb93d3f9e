"""
Async Storage Backend Module

Async facade over the document storage backends. The pricing services are
async (FX and fee-config lookups are I/O), so they talk to this interface;
blocking backends run in a worker thread.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any
from contextlib import asynccontextmanager
from contextvars import ContextVar
import asyncio

from .storage import StorageInterface, InMemoryStorage, SQLiteStorage
from .config import LoanPricingConfig, get_config


# Id of the adapter whose transaction the current task (and its children) is inside
_transaction_owner: ContextVar[Optional[int]] = ContextVar("storage_transaction_owner", default=None)


class AsyncStorageInterface(ABC):
    """Abstract interface for async storage backends"""

    @abstractmethod
    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    async def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    async def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    async def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    async def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass

    async def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    async def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    async def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @asynccontextmanager
    async def atomic(self):
        """Context manager for atomic operations"""
        await self.begin_transaction()
        try:
            yield
            await self.commit()
        except Exception:
            await self.rollback()
            raise


class AsyncStorageAdapter(AsyncStorageInterface):
    """
    Runs a blocking StorageInterface backend in a worker thread

    The backend has one connection, so an open transaction would pick up
    writes from any other task. Writes therefore share a lock with atomic():
    while one task is inside an atomic block, writes from other tasks wait
    until it commits or rolls back.
    """

    def __init__(self, sync_storage: StorageInterface):
        self.sync_storage = sync_storage
        self._write_lock: Optional[asyncio.Lock] = None

    def _get_write_lock(self) -> asyncio.Lock:
        # Created on first use so it binds to the running loop
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        return self._write_lock

    def _owns_transaction(self) -> bool:
        return _transaction_owner.get() == id(self)

    @asynccontextmanager
    async def _writing(self):
        if self._owns_transaction():
            yield
        else:
            async with self._get_write_lock():
                yield

    @asynccontextmanager
    async def atomic(self):
        """Atomic block; a nested block joins the enclosing transaction"""
        if self._owns_transaction():
            yield
            return
        async with self._get_write_lock():
            token = _transaction_owner.set(id(self))
            try:
                async with super().atomic():
                    yield
            finally:
                _transaction_owner.reset(token)

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        async with self._writing():
            await asyncio.to_thread(self.sync_storage.save, table, record_id, data)

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.sync_storage.load, table, record_id)

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.sync_storage.load_all, table)

    async def delete(self, table: str, record_id: str) -> bool:
        async with self._writing():
            return await asyncio.to_thread(self.sync_storage.delete, table, record_id)

    async def exists(self, table: str, record_id: str) -> bool:
        return await asyncio.to_thread(self.sync_storage.exists, table, record_id)

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.sync_storage.find, table, filters)

    async def count(self, table: str) -> int:
        return await asyncio.to_thread(self.sync_storage.count, table)

    async def clear_table(self, table: str) -> None:
        async with self._writing():
            await asyncio.to_thread(self.sync_storage.clear_table, table)

    async def close(self) -> None:
        await asyncio.to_thread(self.sync_storage.close)

    async def begin_transaction(self) -> None:
        await asyncio.to_thread(self.sync_storage.begin_transaction)

    async def commit(self) -> None:
        await asyncio.to_thread(self.sync_storage.commit)

    async def rollback(self) -> None:
        await asyncio.to_thread(self.sync_storage.rollback)


class AsyncInMemoryStorage(AsyncStorageAdapter):
    """Async wrapper around InMemoryStorage for tests"""

    def __init__(self):
        super().__init__(InMemoryStorage())


def create_async_storage(config: Optional[LoanPricingConfig] = None) -> AsyncStorageInterface:
    """Factory function to create the configured async storage"""
    config = config or get_config()

    if config.storage_type.lower() == 'sqlite':
        return AsyncStorageAdapter(SQLiteStorage(config.database_path))
    if config.storage_type.lower() == 'memory':
        return AsyncInMemoryStorage()
    raise ValueError(f"Unsupported storage type: {config.storage_type}")
