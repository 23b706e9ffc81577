import asyncio
import json
import logging
import os
import tempfile
from contextlib import asynccontextmanager
from typing import Dict, Generic, List, Optional, Type, TypeVar

from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel, ValidationError

import config
from errors import NotFound, PersistenceError

logger = logging.getLogger(__name__)

COUNTERS = "counters"
COLLECTIONS = ("users", "laptops", "bookings", COUNTERS)

ModelT = TypeVar("ModelT", bound=BaseModel)


# Gateways: durable mirror of the in-memory collections

class JsonFileGateway:
    """One ``<collection>.json`` file per collection inside ``data_dir``."""

    def __init__(self, data_dir: str):
        self.data_dir = data_dir

    def _path(self, collection_name: str) -> str:
        return os.path.join(self.data_dir, f"{collection_name}.json")

    def _read(self, collection_name: str) -> List[dict]:
        path = self._path(collection_name)
        if not os.path.exists(path):
            return []
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, list):
            raise ValueError(f"{path} does not contain a list")
        return data

    def _write(self, collection_name: str, docs: List[dict]) -> None:
        os.makedirs(self.data_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix=f".{collection_name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(docs, fh, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self._path(collection_name))
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def load_all(self) -> Dict[str, List[dict]]:
        try:
            return {name: await asyncio.to_thread(self._read, name) for name in COLLECTIONS}
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Failed to load data from {self.data_dir}: {exc}") from exc

    async def flush(self, collection_name: str, docs: List[dict]) -> None:
        try:
            await asyncio.to_thread(self._write, collection_name, docs)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Failed to write {collection_name}: {exc}") from exc


class MongoGateway:
    """Each collection is replaced wholesale with the current snapshot."""

    def __init__(self, database_url: str, database_name: str, client=None):
        self._client = client or AsyncIOMotorClient(database_url)
        self._db = self._client[database_name]

    async def load_all(self) -> Dict[str, List[dict]]:
        result = {}
        try:
            for name in COLLECTIONS:
                cursor = self._db[name].find({}, {"_id": 0}).sort("id", 1)
                result[name] = [doc async for doc in cursor]
        except Exception as exc:
            raise PersistenceError(f"Failed to load data from MongoDB: {exc}") from exc
        return result

    async def flush(self, collection_name: str, docs: List[dict]) -> None:
        try:
            collection = self._db[collection_name]
            await collection.delete_many({})
            if docs:
                # insert_many adds _id to the dicts it is given
                await collection.insert_many([dict(d) for d in docs])
        except Exception as exc:
            raise PersistenceError(f"Failed to write {collection_name}: {exc}") from exc

    def close(self) -> None:
        self._client.close()


def get_gateway():
    if config.STORAGE_BACKEND == "mongo":
        return MongoGateway(config.DATABASE_URL, config.DATABASE_NAME)
    if config.STORAGE_BACKEND == "json":
        return JsonFileGateway(config.DATA_DIR)
    raise ValueError(f"Unknown STORAGE_BACKEND {config.STORAGE_BACKEND!r}")


# In-memory collections

class Repository(Generic[ModelT]):
    """Ordered in-memory collection of one entity type; the system of record.

    ``last_id`` is the highest id ever handed out, including ids of records
    that were deleted since, so ids are never reused.
    """

    def __init__(self, name: str, model: Type[ModelT], not_found: str = "Not found"):
        self.name = name
        self.model = model
        self.not_found = not_found
        self.items: List[ModelT] = []
        self.last_id = 0

    def __iter__(self):
        return iter(list(self.items))

    def __len__(self) -> int:
        return len(self.items)

    def find(self, item_id: int) -> Optional[ModelT]:
        return next((item for item in self.items if item.id == item_id), None)

    def get(self, item_id: int) -> ModelT:
        item = self.find(item_id)
        if item is None:
            raise NotFound(self.not_found)
        return item

    def next_id(self) -> int:
        self.last_id = max(self.last_id, max((item.id for item in self.items), default=0)) + 1
        return self.last_id

    def add(self, item: ModelT) -> ModelT:
        self.items.append(item)
        self.last_id = max(self.last_id, item.id)
        return item

    def remove(self, item_id: int) -> ModelT:
        item = self.get(item_id)
        self.items.remove(item)
        return item

    def snapshot(self) -> List[ModelT]:
        return [item.model_copy(deep=True) for item in self.items]

    def restore(self, snapshot: List[ModelT]) -> None:
        # keep object identity so callers holding references see the rollback;
        # last_id stays where it is, a rolled back id is simply skipped
        by_id = {item.id: item for item in self.items}
        restored = []
        for saved in snapshot:
            live = by_id.get(saved.id)
            if live is None:
                restored.append(saved)
                continue
            for field in type(saved).model_fields:
                setattr(live, field, getattr(saved, field))
            restored.append(live)
        self.items = restored

    def dump(self) -> List[dict]:
        return [item.model_dump(mode="json") for item in self.items]

    def load(self, docs: List[dict], last_id: int = 0) -> None:
        try:
            self.items = [self.model.model_validate(doc) for doc in docs]
        except ValidationError as exc:
            raise PersistenceError(f"Invalid record in {self.name}: {exc}") from exc
        self.last_id = max(last_id, max((item.id for item in self.items), default=0))


class UnitOfWork:
    """Serializes mutations and flushes the collections they touch as one unit.

    A single lock is held for the whole mutation, so availability checks and
    flips can never interleave. If anything inside the block raises, the
    touched repositories are restored to their snapshot and every collection
    that was written, or was being written, is written again from the
    restored state. Id high-water marks live in the ``counters`` collection
    and are flushed whenever a transaction hands out a new id.
    """

    def __init__(self, gateway):
        self.gateway = gateway
        self.repositories: Dict[str, Repository] = {}
        self._lock = asyncio.Lock()

    def register(self, repository: Repository) -> Repository:
        self.repositories[repository.name] = repository
        return repository

    def counters(self) -> List[dict]:
        return [{"collection": name, "last_id": repo.last_id} for name, repo in self.repositories.items()]

    async def load(self) -> None:
        data = await self.gateway.load_all()
        last_ids = {doc["collection"]: doc["last_id"] for doc in data.get(COUNTERS, [])}
        for name, repository in self.repositories.items():
            repository.load(data.get(name, []), last_id=last_ids.get(name, 0))
            logger.info("Loaded %d %s", len(repository), name)

    @asynccontextmanager
    async def transaction(self, *names: str):
        async with self._lock:
            snapshots = {name: self.repositories[name].snapshot() for name in names}
            last_ids = {name: self.repositories[name].last_id for name in names}
            attempted = []
            try:
                yield
                for name in names:
                    attempted.append(name)
                    await self.gateway.flush(name, self.repositories[name].dump())
                if any(self.repositories[name].last_id != last_ids[name] for name in names):
                    await self.gateway.flush(COUNTERS, self.counters())
            except BaseException:
                for name, snapshot in snapshots.items():
                    self.repositories[name].restore(snapshot)
                for name in attempted:
                    try:
                        await self.gateway.flush(name, self.repositories[name].dump())
                    except PersistenceError:
                        logger.exception("Could not restore %s after a failed transaction", name)
                raise
