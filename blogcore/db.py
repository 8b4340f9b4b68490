import json
import asyncio
import os
import time
import uuid
from typing import Dict, Any, List, Optional, Callable, Iterable
from pathlib import Path
import logging

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Filter = Callable[[Document], bool]


class DatabaseError(Exception):
    """Storage layer failure"""
    pass


class DuplicateKeyError(DatabaseError):
    """A unique field already holds the given value in another document"""

    def __init__(self, collection: str, field: str, value: Any):
        self.collection = collection
        self.field = field
        self.value = value
        super().__init__(f"Duplicate value for '{field}' in collection {collection}")


class Collection:
    """
    A named set of JSON documents keyed by '_id', persisted as one file.

    The collection knows nothing about other collections: there are no
    foreign keys and no cascades. Read-modify-write cycles are serialized
    by a per-collection lock, and every operation reads the backing file so
    nothing is cached between calls.
    """

    def __init__(self, name: str, db_path: str):
        self.name = name
        self.db_path = Path(db_path)
        self.file_path = self.db_path / f"{name}.json"
        self._lock = asyncio.Lock()

    async def _read_file_async(self) -> str:
        """Read file content asynchronously using thread pool"""
        loop = asyncio.get_running_loop()

        def _read_file():
            try:
                with open(self.file_path, 'r', encoding='utf-8') as f:
                    return f.read()
            except FileNotFoundError:
                return '{}'

        return await loop.run_in_executor(None, _read_file)

    async def _write_file_async(self, content: str):
        """Write to a temporary file, then atomically replace the collection file"""
        loop = asyncio.get_running_loop()

        def _write_file():
            self.db_path.mkdir(parents=True, exist_ok=True)
            temp_file = self.file_path.with_suffix(f".tmp_{uuid.uuid4().hex}")
            try:
                with open(temp_file, 'w', encoding='utf-8') as f:
                    f.write(content)
                    f.flush()
                    os.fsync(f.fileno())
                temp_file.replace(self.file_path)
            finally:
                if temp_file.exists():
                    temp_file.unlink()

        await loop.run_in_executor(None, _write_file)

    async def _read_data(self) -> Dict[str, Document]:
        try:
            content = await self._read_file_async()
        except OSError as e:
            logger.error(f"Error reading {self.file_path}: {e}")
            raise DatabaseError(f"Failed to read collection {self.name}") from e
        try:
            return json.loads(content) if content.strip() else {}
        except json.JSONDecodeError as e:
            logger.error(f"JSON decode error in {self.file_path}: {e}")
            raise DatabaseError(f"Corrupted data in collection {self.name}") from e

    async def _write_data(self, data: Dict[str, Document]):
        try:
            content = json.dumps(data, indent=2, default=str)
            await self._write_file_async(content)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Error writing to {self.file_path}: {e}")
            raise DatabaseError(f"Failed to write to collection {self.name}") from e

    def _check_unique(self, data: Dict[str, Document], doc: Document,
                      unique: Iterable[str], skip_key: Optional[str] = None):
        for field in unique:
            value = doc.get(field)
            if value is None:
                continue
            for key, other in data.items():
                if key != skip_key and other.get(field) == value:
                    raise DuplicateKeyError(self.name, field, value)

    async def get(self, key: str) -> Optional[Document]:
        """Get a document by key"""
        async with self._lock:
            data = await self._read_data()
            return data.get(key)

    async def insert(self, doc: Document, unique: Iterable[str] = ()) -> Document:
        """
        Store a new document under a fresh '_id' and return it.

        Fields listed in `unique` are checked against every other document
        under the same lock as the write, raising DuplicateKeyError.
        """
        async with self._lock:
            data = await self._read_data()
            self._check_unique(data, doc, unique)
            key = doc.get('_id') or create_unique_id()
            now = create_timestamp()
            stored = {**doc, '_id': key, 'created_at': now, 'updated_at': now}
            data[key] = stored
            await self._write_data(data)
            return stored

    async def update(self, key: str, updates: Document,
                     unique: Iterable[str] = ()) -> Optional[Document]:
        """Update specific fields of a document; returns None when it is missing"""
        async with self._lock:
            data = await self._read_data()
            if key not in data:
                return None
            merged = {**data[key], **updates, '_id': key, 'updated_at': create_timestamp()}
            self._check_unique(data, merged, unique, skip_key=key)
            data[key] = merged
            await self._write_data(data)
            return merged

    async def delete(self, key: str) -> Optional[Document]:
        """Delete a document by key, returning it, or None when it was absent"""
        async with self._lock:
            data = await self._read_data()
            doc = data.pop(key, None)
            if doc is not None:
                await self._write_data(data)
            return doc

    async def find(self, filter_func: Optional[Filter] = None,
                   limit: Optional[int] = None) -> List[Document]:
        """Find documents with optional filter function"""
        async with self._lock:
            data = await self._read_data()

        results = []
        for doc in data.values():
            if filter_func is None or filter_func(doc):
                results.append(doc)
                if limit and len(results) >= limit:
                    break
        return results

    async def find_one(self, filter_func: Filter) -> Optional[Document]:
        found = await self.find(filter_func, limit=1)
        return found[0] if found else None

    async def count(self, filter_func: Optional[Filter] = None) -> int:
        return len(await self.find(filter_func))

    async def delete_many(self, filter_func: Filter) -> List[Document]:
        """Delete every matching document and return the removed documents"""
        async with self._lock:
            data = await self._read_data()
            removed = [doc for doc in data.values() if filter_func(doc)]
            if removed:
                for doc in removed:
                    del data[doc['_id']]
                await self._write_data(data)
            return removed

    async def update_many(self, filter_func: Filter, updates: Document) -> int:
        """Apply the same field updates to every matching document"""
        async with self._lock:
            data = await self._read_data()
            now = create_timestamp()
            matched = 0
            for key, doc in data.items():
                if filter_func(doc):
                    data[key] = {**doc, **updates, '_id': key, 'updated_at': now}
                    matched += 1
            if matched:
                await self._write_data(data)
            return matched


class AsyncJSONDB:
    """Asynchronous JSON document database, one file per collection"""

    def __init__(self, db_path: str = './data'):
        self.db_path = Path(db_path)
        self.collections: Dict[str, Collection] = {}

    def get_collection(self, name: str) -> Collection:
        """Get or create a collection"""
        if name not in self.collections:
            self.collections[name] = Collection(name, str(self.db_path))
        return self.collections[name]

    async def list_collections(self) -> List[str]:
        """List all collections"""
        loop = asyncio.get_running_loop()

        def _list_files():
            if not self.db_path.exists():
                return []
            return sorted(file_path.stem for file_path in self.db_path.glob('*.json'))

        return await loop.run_in_executor(None, _list_files)

    async def close(self):
        """Close the database (cleanup resources)"""
        self.collections.clear()


def create_unique_id() -> str:
    """Generate a unique ID"""
    return uuid.uuid4().hex


def create_timestamp() -> float:
    """Get current timestamp"""
    return time.time()
