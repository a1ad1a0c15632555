import pytest
from pytest_asyncio import fixture

from conftest import manufacturer
from rfq_ledger.catalog import (
    CatalogPublisher,
    ManufacturerDirectory,
    membership_key,
    state_slug,
)
from rfq_ledger.errors import NotFound, ObjectNotFound, ValidationError
from rfq_ledger.models import CatalogSlice, SliceDimension, SliceKey


def category(name: str) -> SliceKey:
    return SliceKey(dimension=SliceDimension.CATEGORY, category=name)


@fixture
async def directory(store, clock):
    yield ManufacturerDirectory(store, clock=clock)


@fixture
async def publisher(store, directory):
    yield CatalogPublisher(store, directory)


async def members(store, key: SliceKey):
    stored = await store.get(key.object_key)
    return [item.id for item in CatalogSlice.model_validate_json(stored.body).items]


@pytest.mark.asyncio
async def test_rebuild_follows_membership_changes(store, directory, publisher):
    await directory.put(manufacturer("mfg_a", ["x"]))
    await directory.put(manufacturer("mfg_b", ["x", "y"]))
    rebuilt = await publisher.rebuild(["mfg_a", "mfg_b"])

    assert rebuilt == [category("x"), category("y")]
    assert await members(store, category("x")) == ["mfg_a", "mfg_b"]
    assert await members(store, category("y")) == ["mfg_b"]

    # B leaves y: y must be rewritten empty even though B is no longer in it.
    await directory.put(manufacturer("mfg_b", ["x"]))
    rebuilt = await publisher.rebuild(["mfg_b"])

    assert category("y") in rebuilt
    assert await members(store, category("y")) == []
    assert await members(store, category("x")) == ["mfg_a", "mfg_b"]


@pytest.mark.asyncio
async def test_rebuild_is_byte_stable(store, directory, publisher):
    await directory.put(manufacturer("mfg_b", ["x"]))
    await directory.put(manufacturer("mfg_a", ["x"]))
    await publisher.rebuild(["mfg_a", "mfg_b"])
    first = await store.get(category("x").object_key)

    await publisher.rebuild(["mfg_b", "mfg_a"])
    second = await store.get(category("x").object_key)

    assert first.body == second.body
    assert first.etag == second.etag


@pytest.mark.asyncio
async def test_generated_at_is_newest_member_update(store, directory, publisher, clock):
    await directory.put(manufacturer("mfg_a", ["x"]))
    clock.advance(minutes=5)
    newest = await directory.put(manufacturer("mfg_b", ["x"]))
    await publisher.rebuild(["mfg_a", "mfg_b"])

    catalog_slice = await publisher.read_slice("x")
    assert catalog_slice.generated_at == newest.updated_at


@pytest.mark.asyncio
async def test_category_state_slices(store, directory, publisher):
    await directory.put(manufacturer("mfg_a", ["cnc-machining"], state="New York"))
    await directory.put(manufacturer("mfg_b", ["cnc-machining"], state="Ohio"))
    rebuilt = await publisher.rebuild(["mfg_a", "mfg_b"])

    state_keys = [k for k in rebuilt if k.dimension == SliceDimension.CATEGORY_STATE]
    assert [k.state for k in state_keys] == ["new-york", "ohio"]
    assert state_keys[0].object_key == "catalog/category_state/cnc-machining/new-york.json"

    ny = await publisher.read_slice("cnc-machining", "New York")
    assert [item.id for item in ny.items] == ["mfg_a"]
    assert ny.items[0].state == "New York"


@pytest.mark.asyncio
async def test_deleted_manufacturer_leaves_its_slices(store, directory, publisher):
    await directory.put(manufacturer("mfg_a", ["x"]))
    await directory.put(manufacturer("mfg_b", ["x"]))
    await publisher.rebuild(["mfg_a", "mfg_b"])

    await directory.delete("mfg_b")
    assert await publisher.rebuild(["mfg_b"]) == [category("x")]
    assert await members(store, category("x")) == ["mfg_a"]
    with pytest.raises(ObjectNotFound):
        await store.get(membership_key("mfg_b"))


@pytest.mark.asyncio
async def test_rebuild_nothing(publisher):
    assert await publisher.rebuild([]) == []


@pytest.mark.asyncio
async def test_rebuild_all(store, directory, publisher):
    await directory.put(manufacturer("mfg_a", ["x"]))
    await directory.put(manufacturer("mfg_b", ["y"]))
    await publisher.rebuild(["mfg_a", "mfg_b"])
    await directory.delete("mfg_b")

    rebuilt = await publisher.rebuild_all()
    assert rebuilt == [category("x"), category("y")]
    assert await members(store, category("y")) == []


@pytest.mark.asyncio
async def test_summary_fields(directory, publisher):
    await directory.put(
        manufacturer(
            "mfg_a",
            ["x"],
            state="Ohio",
            capabilities=["5-axis"],
            media=[{"image_manifest_id": "img_1"}, {"image_manifest_id": "img_2"}],
        )
    )
    await publisher.rebuild(["mfg_a"])

    item = (await publisher.read_slice("x")).items[0]
    assert item.logo == "img_1"
    assert item.city == "Springfield"
    assert item.capabilities == ["5-axis"]


@pytest.mark.asyncio
async def test_read_slice_errors(publisher):
    with pytest.raises(NotFound):
        await publisher.read_slice("never-published")
    with pytest.raises(ValidationError):
        await publisher.read_slice("Not A Slug")


@pytest.mark.asyncio
async def test_directory(directory):
    with pytest.raises(NotFound):
        await directory.get("mfg_missing")
    with pytest.raises(NotFound):
        await directory.delete("mfg_missing")

    stored = await directory.put(manufacturer("mfg_a", ["Y", "x", "x"]))
    assert stored.categories == ["x", "y"]
    assert stored.updated_at is not None
    assert (await directory.get("mfg_a")) == stored
    assert [m.id for m in await directory.scan()] == ["mfg_a"]


def test_state_slug():
    assert state_slug("New York") == "new-york"
    assert state_slug("  CA ") == "ca"
    assert state_slug("") is None
    assert state_slug(None) is None
