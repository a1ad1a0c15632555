"""
Manufacturer records and the catalog slices derived from them.

A catalog slice is a read-optimized listing of the manufacturers in one
category, or one category within one state. Slices are pure derived data:
they are never edited, only regenerated from the manufacturer set, and the
same membership always renders to the same bytes. Rebuilds may repeat or run
concurrently: every writer writes the same thing, and an unchanged rewrite
keeps its etag.

A rebuild only touches the slices a changed manufacturer is in *or was in*.
The "was in" half comes from a membership record the publisher keeps per
manufacturer, so a manufacturer dropping a category still empties that slice.
"""
import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Set

from .errors import NotFound, ObjectNotFound, ValidationError
from .models import (
    CATEGORY_PATTERN,
    CatalogMembership,
    CatalogSlice,
    Manufacturer,
    ManufacturerSummary,
    SliceDimension,
    SliceKey,
)
from .protocols import ObjectStore

MANUFACTURER_PREFIX = "manufacturer/"
MEMBERSHIP_PREFIX = "catalog/membership/"


def manufacturer_key(manufacturer_id: str) -> str:
    return f"{MANUFACTURER_PREFIX}{manufacturer_id}.json"


def membership_key(manufacturer_id: str) -> str:
    return f"{MEMBERSHIP_PREFIX}{manufacturer_id}.json"


def state_slug(state: Optional[str]) -> Optional[str]:
    if not state:
        return None
    slug = re.sub(r"[^a-z0-9]+", "-", state.strip().lower()).strip("-")
    return slug or None


def slice_keys_for(manufacturer: Manufacturer) -> Set[SliceKey]:
    """Every slice the manufacturer belongs in, given its current record."""
    state = state_slug(manufacturer.location.state) if manufacturer.location else None
    keys = set()
    for category in manufacturer.categories:
        keys.add(SliceKey(dimension=SliceDimension.CATEGORY, category=category))
        if state:
            keys.add(
                SliceKey(dimension=SliceDimension.CATEGORY_STATE, category=category, state=state)
            )
    return keys


def summarize(manufacturer: Manufacturer) -> ManufacturerSummary:
    location = manufacturer.location
    return ManufacturerSummary(
        id=manufacturer.id,
        name=manufacturer.name,
        city=location.city if location else None,
        state=location.state if location else None,
        categories=manufacturer.categories,
        capabilities=manufacturer.capabilities,
        logo=manufacturer.media[0].image_manifest_id if manufacturer.media else None,
    )


def render_slice(key: SliceKey, members: Iterable[Manufacturer]) -> bytes:
    """
    Deterministic slice bytes: members sorted by id, and `generated_at` taken
    from the newest member record rather than the wall clock.
    """
    ordered = sorted(members, key=lambda m: m.id)
    stamps = [m.updated_at for m in ordered if m.updated_at is not None]
    catalog_slice = CatalogSlice(
        dimension=key.dimension,
        category=key.category,
        state=key.state,
        generated_at=max(stamps) if stamps else None,
        items=[summarize(m) for m in ordered],
    )
    return catalog_slice.model_dump_json().encode("utf-8")


class ManufacturerDirectory:
    """Admin-side reads and writes of manufacturer records."""

    def __init__(
        self,
        store: ObjectStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        fetch_concurrency: int = 16,
    ):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.fetch_concurrency = fetch_concurrency

    async def put(self, manufacturer: Manufacturer) -> Manufacturer:
        record = manufacturer.model_copy(update={"updated_at": self.clock()})
        await self.store.put(manufacturer_key(record.id), record.model_dump_json().encode("utf-8"))
        return record

    async def get(self, manufacturer_id: str) -> Manufacturer:
        try:
            stored = await self.store.get(manufacturer_key(manufacturer_id))
        except ObjectNotFound:
            raise NotFound(f"Manufacturer {manufacturer_id} not found")
        return Manufacturer.model_validate_json(stored.body)

    async def delete(self, manufacturer_id: str) -> None:
        await self.get(manufacturer_id)
        await self.store.delete(manufacturer_key(manufacturer_id))

    async def scan(self) -> List[Manufacturer]:
        keys = [key async for key in self.store.list(MANUFACTURER_PREFIX)]
        semaphore = asyncio.Semaphore(self.fetch_concurrency)

        async def fetch(key: str) -> Optional[Manufacturer]:
            async with semaphore:
                try:
                    stored = await self.store.get(key)
                except ObjectNotFound:
                    return None
            try:
                return Manufacturer.model_validate_json(stored.body)
            except ValueError as e:
                logging.warning(f"Skipping undecodable manufacturer record {key}: {e}")
                return None

        records = await asyncio.gather(*(fetch(key) for key in keys))
        return [m for m in records if m is not None]


class CatalogPublisher:
    def __init__(self, store: ObjectStore, directory: Optional[ManufacturerDirectory] = None):
        self.store = store
        self.directory = directory or ManufacturerDirectory(store)

    async def _read_membership(self, manufacturer_id: str) -> List[SliceKey]:
        try:
            stored = await self.store.get(membership_key(manufacturer_id))
        except ObjectNotFound:
            return []
        return CatalogMembership.model_validate_json(stored.body).slices

    async def rebuild(self, changed_manufacturer_ids: Iterable[str]) -> List[SliceKey]:
        """
        Regenerates the slices touched by the given manufacturers and returns
        their keys. Each slice is recomputed from the full manufacturer set,
        not just the changed subset.
        """
        changed = sorted(set(changed_manufacturer_ids))
        if not changed:
            return []

        manufacturers = await self.directory.scan()
        by_id = {m.id: m for m in manufacturers}
        current_keys = {m.id: slice_keys_for(m) for m in manufacturers}

        affected: Set[SliceKey] = set()
        for manufacturer_id in changed:
            affected |= current_keys.get(manufacturer_id, set())
            affected |= set(await self._read_membership(manufacturer_id))

        rebuilt = sorted(affected, key=lambda k: k.sort_tuple)
        for key in rebuilt:
            members = [by_id[mid] for mid, keys in current_keys.items() if key in keys]
            etag = await self.store.put(key.object_key, render_slice(key, members))
            logging.info(f"Published {key.object_key} ({len(members)} manufacturers, etag {etag})")

        # Membership records go last: if we fail before this, the next rebuild
        # still knows about the slices the manufacturer used to be in.
        for manufacturer_id in changed:
            if manufacturer_id in by_id:
                membership = CatalogMembership(
                    manufacturer_id=manufacturer_id,
                    slices=sorted(current_keys[manufacturer_id], key=lambda k: k.sort_tuple),
                )
                await self.store.put(
                    membership_key(manufacturer_id), membership.model_dump_json().encode("utf-8")
                )
            else:
                await self.store.delete(membership_key(manufacturer_id))
        return rebuilt

    async def rebuild_all(self) -> List[SliceKey]:
        """Full-catalog regeneration, including slices of since-deleted manufacturers."""
        ids = {m.id for m in await self.directory.scan()}
        async for key in self.store.list(MEMBERSHIP_PREFIX):
            ids.add(key[len(MEMBERSHIP_PREFIX):].rsplit(".json", 1)[0])
        return await self.rebuild(ids)

    async def read_slice(self, category: str, state: Optional[str] = None) -> CatalogSlice:
        if not re.match(CATEGORY_PATTERN, category):
            raise ValidationError(f"Invalid category: {category!r}")
        if state:
            key = SliceKey(
                dimension=SliceDimension.CATEGORY_STATE, category=category, state=state_slug(state)
            )
        else:
            key = SliceKey(dimension=SliceDimension.CATEGORY, category=category)
        try:
            stored = await self.store.get(key.object_key)
        except ObjectNotFound:
            raise NotFound(f"No catalog slice for {key.object_key}")
        return CatalogSlice.model_validate_json(stored.body)
