import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import ValidationError
from pymongo import ASCENDING, ReplaceOne, ReturnDocument
from pymongo.errors import BulkWriteError, DuplicateKeyError, PyMongoError

from backups import read_records, write_json_atomic
from categories import slugify
from errors import BackendUnavailable, DealNotFound, DuplicateDeal, InvalidPayload
from schemas import PROTECTED_FIELDS, Deal, format_timestamp, from_row, parse_timestamp, to_row
from settings import Settings

logger = logging.getLogger(__name__)

# id generation retries when two creates land on the same millisecond
_ID_ATTEMPTS = 5


# -------------------------------
# Timestamps & defaults
# -------------------------------

def _now_millis() -> int:
    return int(time.time() * 1000)


def _to_millis(value: Optional[str]) -> Optional[int]:
    ts = parse_timestamp(value)
    return None if ts is None else int(round(ts * 1000))


def next_updated_at(previous: Optional[str] = None, created: Optional[str] = None) -> str:
    """Now, but never before createdAt and always after the previous updatedAt."""
    millis = _now_millis()
    created_ms = _to_millis(created)
    if created_ms is not None and millis < created_ms:
        millis = created_ms
    previous_ms = _to_millis(previous)
    if previous_ms is not None and millis <= previous_ms:
        millis = previous_ms + 1
    return format_timestamp(millis)


def _validate(record: Dict[str, Any]) -> Deal:
    try:
        return Deal.model_validate(record)
    except ValidationError as e:
        raise InvalidPayload(str(e))


def prepare_new_deal(data: Dict[str, Any]) -> Tuple[Deal, bool]:
    """
    Fill creation defaults. Returns the deal and whether its id was generated.

    createdAt/updatedAt from the client are ignored and set to the same
    instant here.
    """
    record = {k: v for k, v in data.items() if k not in ("createdAt", "updatedAt", "created_at", "updated_at")}
    generated = record.get("id") in (None, "")
    now = format_timestamp(_now_millis())
    record.update(
        {
            "id": str(_now_millis()) if generated else str(record["id"]),
            "slug": record.get("slug") or slugify(record.get("title")),
            "title": record.get("title") or "Untitled Deal",
            "provider": record.get("provider") or "Unknown",
            "price": record["price"] if record.get("price") is not None else 0,
            "url": record.get("url") or "#",
            "category": record.get("category") or "General",
            "coupon": record.get("coupon") or None,
            "createdAt": now,
            "updatedAt": now,
        }
    )
    return _validate(record), generated


def _bump_id(deal: Deal) -> Deal:
    return deal.model_copy(update={"id": str(int(deal.id) + 1)})


def _deals_from(records: Iterable[Dict[str, Any]], source: str) -> List[Deal]:
    deals = []
    for index, record in enumerate(records):
        try:
            deals.append(Deal.model_validate(record))
        except ValidationError as e:
            logger.warning("Skipping invalid deal at index %d in %s: %s", index, source, e.errors()[:1])
    return deals


# -------------------------------
# Store contract
# -------------------------------

class DealStore(ABC):
    backend_name = "abstract"

    @abstractmethod
    async def read_all(self) -> List[Deal]:
        ...

    @abstractmethod
    async def get_by_id(self, deal_id: str) -> Deal:
        ...

    @abstractmethod
    async def create(self, data: Dict[str, Any]) -> Deal:
        ...

    @abstractmethod
    async def update(self, deal_id: str, fields: Dict[str, Any]) -> Deal:
        ...

    @abstractmethod
    async def delete(self, deal_id: str) -> None:
        ...

    @abstractmethod
    async def upsert_many(self, records: List[Dict[str, Any]]) -> int:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    async def find(self, key: str) -> Deal:
        """Look up by exact id, then by slug (case-insensitive)."""
        try:
            return await self.get_by_id(key)
        except DealNotFound:
            pass
        wanted = key.strip().lower()
        for deal in await self.read_all():
            if deal.slug and deal.slug.strip().lower() == wanted:
                return deal
        raise DealNotFound(key)


# -------------------------------
# JSON file backend
# -------------------------------

class FileDealStore(DealStore):
    """
    The whole collection lives in one JSON array.

    Every mutation reads the file, changes the list and atomically replaces
    the file. There is no lock: two concurrent writers race and the last
    complete rewrite wins.
    """

    backend_name = "file"

    def __init__(self, path: str, fallback_path: Optional[str] = None):
        self.path = path
        self.fallback_path = fallback_path

    def _read_json(self, path: str) -> List[Dict[str, Any]]:
        return [r for r in read_records(path) if isinstance(r, dict)]

    def _fallback(self) -> List[Dict[str, Any]]:
        if not self.fallback_path:
            return []
        try:
            return self._read_json(self.fallback_path)
        except (OSError, ValueError) as e:
            logger.warning("Fallback dataset %s unusable: %s", self.fallback_path, e)
            return []

    def _load(self, strict: bool = False) -> List[Dict[str, Any]]:
        """
        Raw records from disk.

        A missing file yields the fallback dataset. A corrupt file does too
        when reading; when about to write (strict) it is an error, so a bad
        file is never silently replaced.
        """
        try:
            return self._read_json(self.path)
        except FileNotFoundError:
            logger.info("Deals file %s not found; using fallback dataset", self.path)
            return self._fallback()
        except (ValueError, UnicodeDecodeError) as e:
            if strict:
                raise BackendUnavailable(f"Deals file {self.path} is corrupt", e)
            logger.error("Deals file %s is corrupt (%s); using fallback dataset", self.path, e)
            return self._fallback()
        except OSError as e:
            raise BackendUnavailable(f"Could not read {self.path}", e)

    def _write(self, records: List[Dict[str, Any]]) -> None:
        try:
            write_json_atomic(self.path, records)
        except OSError as e:
            raise BackendUnavailable(f"Could not write {self.path}", e)

    @staticmethod
    def _index_of(records: List[Dict[str, Any]], deal_id: str) -> int:
        for i, record in enumerate(records):
            if str(record.get("id")) == deal_id:
                return i
        return -1

    # sync bodies, run in a worker thread

    def _read_all_sync(self) -> List[Deal]:
        return _deals_from(self._load(), self.path)

    def _get_by_id_sync(self, deal_id: str) -> Deal:
        records = self._load()
        i = self._index_of(records, deal_id)
        if i < 0:
            raise DealNotFound(deal_id)
        return _validate(records[i])

    def _create_sync(self, data: Dict[str, Any]) -> Deal:
        records = self._load(strict=True)
        deal, generated = prepare_new_deal(data)
        attempts = 0
        while self._index_of(records, deal.id) >= 0:
            attempts += 1
            if not generated or attempts >= _ID_ATTEMPTS:
                raise DuplicateDeal(deal.id)
            deal = _bump_id(deal)
        records.append(deal.to_record())
        self._write(records)
        return deal

    def _update_sync(self, deal_id: str, fields: Dict[str, Any]) -> Deal:
        records = self._load(strict=True)
        i = self._index_of(records, deal_id)
        if i < 0:
            raise DealNotFound(deal_id)
        current = records[i]
        merged = {**current, **{k: v for k, v in fields.items() if k not in PROTECTED_FIELDS}}
        merged["updatedAt"] = next_updated_at(current.get("updatedAt"), current.get("createdAt"))
        deal = _validate(merged)
        records[i] = deal.to_record()
        self._write(records)
        return deal

    def _delete_sync(self, deal_id: str) -> None:
        records = self._load(strict=True)
        i = self._index_of(records, deal_id)
        if i < 0:
            raise DealNotFound(deal_id)
        del records[i]
        self._write(records)

    def _upsert_many_sync(self, incoming: List[Dict[str, Any]]) -> int:
        records = self._load(strict=True)
        for record in incoming:
            i = self._index_of(records, str(record.get("id")))
            if i < 0:
                records.append(record)
            else:
                records[i] = record
        self._write(records)
        return len(incoming)

    async def read_all(self) -> List[Deal]:
        return await asyncio.to_thread(self._read_all_sync)

    async def get_by_id(self, deal_id: str) -> Deal:
        return await asyncio.to_thread(self._get_by_id_sync, deal_id)

    async def create(self, data: Dict[str, Any]) -> Deal:
        deal = await asyncio.to_thread(self._create_sync, data)
        logger.info("Created deal %s", deal.id)
        return deal

    async def update(self, deal_id: str, fields: Dict[str, Any]) -> Deal:
        deal = await asyncio.to_thread(self._update_sync, deal_id, fields)
        logger.info("Updated deal %s (%s)", deal_id, ", ".join(sorted(fields)) or "no fields")
        return deal

    async def delete(self, deal_id: str) -> None:
        await asyncio.to_thread(self._delete_sync, deal_id)
        logger.info("Deleted deal %s", deal_id)

    async def upsert_many(self, records: List[Dict[str, Any]]) -> int:
        return await asyncio.to_thread(self._upsert_many_sync, records)

    async def ping(self) -> bool:
        directory = os.path.dirname(os.path.abspath(self.path))
        return os.path.isdir(directory) and os.access(directory, os.W_OK)


# -------------------------------
# MongoDB backend
# -------------------------------

class MongoDealStore(DealStore):
    """
    One document per deal, snake_case fields (see schemas.ROW_COLUMNS).

    Each mutation touches a single document, so concurrent admin edits of
    different deals never clobber each other.
    """

    backend_name = "database"

    def __init__(self, collection: Any):
        self.collection = collection

    @classmethod
    def from_url(cls, url: str, database: str, collection: str = "deals") -> "MongoDealStore":
        client = AsyncIOMotorClient(url)
        return cls(client[database][collection])

    async def ensure_indexes(self) -> None:
        try:
            await self.collection.create_index([("id", ASCENDING)], unique=True)
        except PyMongoError as e:
            raise BackendUnavailable("Could not create deal indexes", e)

    async def read_all(self) -> List[Deal]:
        try:
            rows = []
            async for row in self.collection.find({}):
                rows.append(from_row(row))
        except PyMongoError as e:
            raise BackendUnavailable("Could not read deals from the database", e)
        return _deals_from(rows, "database")

    async def get_by_id(self, deal_id: str) -> Deal:
        try:
            row = await self.collection.find_one({"id": deal_id})
        except PyMongoError as e:
            raise BackendUnavailable("Could not read deal from the database", e)
        if row is None:
            raise DealNotFound(deal_id)
        return _validate(from_row(row))

    async def create(self, data: Dict[str, Any]) -> Deal:
        deal, generated = prepare_new_deal(data)
        for _ in range(_ID_ATTEMPTS):
            try:
                if await self.collection.find_one({"id": deal.id}) is None:
                    await self.collection.insert_one(to_row(deal.to_record()))
                    logger.info("Created deal %s", deal.id)
                    return deal
            except DuplicateKeyError:
                pass
            except PyMongoError as e:
                raise BackendUnavailable("Could not insert deal", e)
            if not generated:
                break
            deal = _bump_id(deal)
        raise DuplicateDeal(deal.id)

    async def update(self, deal_id: str, fields: Dict[str, Any]) -> Deal:
        current = await self.get_by_id(deal_id)
        changes = {k: v for k, v in fields.items() if k not in PROTECTED_FIELDS}
        _validate({**current.to_record(), **changes})
        changes["updatedAt"] = next_updated_at(current.updated_at, current.created_at)
        try:
            row = await self.collection.find_one_and_update(
                {"id": deal_id},
                {"$set": to_row(changes)},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise BackendUnavailable("Could not update deal", e)
        if row is None:
            raise DealNotFound(deal_id)
        logger.info("Updated deal %s (%s)", deal_id, ", ".join(sorted(fields)) or "no fields")
        return _validate(from_row(row))

    async def delete(self, deal_id: str) -> None:
        try:
            result = await self.collection.delete_one({"id": deal_id})
        except PyMongoError as e:
            raise BackendUnavailable("Could not delete deal", e)
        if result.deleted_count == 0:
            raise DealNotFound(deal_id)
        logger.info("Deleted deal %s", deal_id)

    async def upsert_many(self, records: List[Dict[str, Any]]) -> int:
        if not records:
            return 0
        ops = [ReplaceOne({"id": str(r["id"])}, to_row(r), upsert=True) for r in records]
        try:
            await self.collection.bulk_write(ops, ordered=False)
        except BulkWriteError as e:
            # unordered: rows before and after a failed one are still written
            failed = len(e.details.get("writeErrors", []))
            raise BackendUnavailable(f"{failed} of {len(ops)} deals failed to upsert", e)
        except PyMongoError as e:
            raise BackendUnavailable("Could not upsert deals", e)
        return len(ops)

    async def ping(self) -> bool:
        try:
            await self.collection.database.command("ping")
            return True
        except PyMongoError:
            return False


def create_store(settings: Settings) -> DealStore:
    if settings.deals_backend == "database":
        logger.info("Using database deal store %s/%s", settings.database_name, settings.deals_collection)
        return MongoDealStore.from_url(settings.database_url, settings.database_name, settings.deals_collection)
    logger.info("Using file deal store %s", settings.deals_path)
    return FileDealStore(settings.deals_path, settings.fallback_deals_path)
