import asyncio
import json
from datetime import timedelta

import pytest

from conftest import make_storage, product_input
from database import create_engine
from errors import DuplicateError, StorageError
from schemas import (
    AdminCreate,
    CategoryCreate,
    CategoryUpdate,
    CustomerCreate,
    CustomerUpdate,
    ProductCreate,
    ProductPage,
    ProductUpdate,
    utcnow,
)
from storage import MAX_ROWS, JsonFileStorage, SqlStorage, category_key, page_window


def test_page_window_clamps_non_positive_inputs():
    assert page_window(1, 12) == (0, 12)
    assert page_window(3, 5) == (10, 5)
    assert page_window(0, 5) == (0, 5)
    assert page_window(-2, 5) == (0, 5)
    assert page_window(2, 0) == (1, 1)


def test_page_window_caps_huge_inputs():
    assert page_window(10 ** 18, 12) == (MAX_ROWS, 12)
    assert page_window(1, 10 ** 30) == (0, MAX_ROWS)
    assert page_window(2, 10 ** 30) == (MAX_ROWS, MAX_ROWS)
    assert MAX_ROWS < 2 ** 63


def test_category_key():
    assert category_key(None) is None
    assert category_key("") is None
    assert category_key("all") is None
    assert category_key("Electronics") == "electronics"


# ---------- Products ----------

async def test_create_product_applies_defaults(storage):
    first = await storage.create_product(
        ProductCreate(name="Bare", description="d", price="1", category="misc", image="x")
    )
    second = await storage.create_product(product_input())
    assert first.stock == 0
    assert first.rating == "0"
    assert first.featured is False
    assert first.id != second.id
    assert first.created_at.tzinfo is not None


async def test_create_then_get_round_trip(storage):
    created = await storage.create_product(product_input(rating="4.5", featured=True))
    fetched = await storage.get_product(created.id)
    assert fetched == created
    assert fetched.price == "499.99"
    assert fetched.rating == "4.5"
    assert fetched.featured is True
    assert fetched.stock == 3


async def test_get_missing_product(storage):
    assert await storage.get_product("nope") is None


async def test_update_only_touches_sent_fields(storage):
    created = await storage.create_product(product_input())
    updated = await storage.update_product(created.id, ProductUpdate(stock=5))
    assert updated.stock == 5
    assert updated.model_dump(exclude={"stock"}) == created.model_dump(exclude={"stock"})
    assert await storage.get_product(created.id) == updated


async def test_update_drops_explicit_nulls(storage):
    created = await storage.create_product(product_input())
    updated = await storage.update_product(created.id, ProductUpdate(name=None, price="10.00"))
    assert updated.name == "Phone"
    assert updated.price == "10.00"


async def test_update_with_empty_patch_returns_record(storage):
    created = await storage.create_product(product_input())
    assert await storage.update_product(created.id, ProductUpdate()) == created


async def test_update_missing_product(storage):
    assert await storage.update_product("missing", ProductUpdate(stock=1)) is None
    assert (await storage.get_products()).total == 0


async def test_delete_is_idempotent(storage):
    created = await storage.create_product(product_input())
    assert await storage.delete_product(created.id) is True
    assert await storage.delete_product(created.id) is False
    assert await storage.get_product(created.id) is None


async def test_pages_cover_filtered_set_exactly_once(storage):
    created = []
    for i in range(7):
        category = "Audio" if i % 2 else "Video"
        created.append(await storage.create_product(product_input(name=f"P{i}", category=category)))

    seen = []
    page = 1
    while True:
        result = await storage.get_products(page, 3)
        assert len(result.products) <= 3
        assert result.total == 7
        if not result.products:
            break
        seen.extend(p.id for p in result.products)
        page += 1
    assert seen == [p.id for p in sorted(created, key=lambda p: (p.created_at, p.id))]

    audio = await storage.get_products(1, 12, "audio")
    assert audio.total == 3
    assert {p.category for p in audio.products} == {"Audio"}


async def test_page_past_the_end_is_empty(storage):
    await storage.create_product(product_input())
    result = await storage.get_products(5, 12)
    assert result.products == []
    assert result.total == 1


async def test_huge_page_and_limit_are_past_the_end(storage):
    await storage.create_product(product_input(category="Hats"))
    assert await storage.get_products(10 ** 18, 10 ** 6) == ProductPage(products=[], total=1)
    assert await storage.get_products(10 ** 18, 12, "hats") == ProductPage(products=[], total=1)
    assert (await storage.get_products(1, 10 ** 30)).total == 1
    assert len((await storage.get_products(1, 10 ** 30)).products) == 1


async def test_all_sentinel_disables_filter(storage):
    await storage.create_product(product_input(category="a"))
    await storage.create_product(product_input(category="b"))
    assert (await storage.get_products(1, 12, "all")).total == 2
    assert (await storage.get_products(1, 12, None)).total == 2


async def test_category_match_is_exact_not_partial(storage):
    await storage.create_product(product_input(category="Electronics"))
    assert (await storage.get_products(1, 12, "Electro")).total == 0
    assert (await storage.get_products(1, 12, "ELECTRONICS")).total == 1


async def test_case_insensitive_category_scenario(storage):
    await storage.create_category(CategoryCreate(name="Electronics"))
    phone = await storage.create_product(
        product_input(name="Phone", price="499.99", category="electronics", image="x", stock=3)
    )
    upper = await storage.get_products(1, 12, "Electronics")
    lower = await storage.get_products(1, 12, "electronics")
    assert upper.total == 1
    assert [p.id for p in upper.products] == [phone.id]
    assert upper == lower


async def test_non_ascii_categories_match_case_insensitively(storage):
    product = await storage.create_product(product_input(category="Électronique"))
    for wanted in ("Électronique", "électronique", "ÉLECTRONIQUE"):
        result = await storage.get_products(1, 12, wanted)
        assert [p.id for p in result.products] == [product.id]
    assert (await storage.get_products(1, 12, "electronique")).total == 0


async def test_recategorised_product_moves_between_filters(storage):
    product = await storage.create_product(product_input(category="Hats"))
    await storage.update_product(product.id, ProductUpdate(category="Ümbrellas"))
    assert (await storage.get_products(1, 12, "hats")).total == 0
    moved = await storage.get_products(1, 12, "ümbrellas")
    assert [p.category for p in moved.products] == ["Ümbrellas"]


async def test_backends_page_identically(tmp_path):
    json_store = make_storage("json", tmp_path)
    sql_store = make_storage("sql", tmp_path)
    await json_store.init()
    await sql_store.init()
    try:
        for i in range(9):
            data = product_input(name=f"P{i}", category=("Shoes", "hats", "Électronique")[i % 3])
            await json_store.create_product(data)
            await sql_store.create_product(data)

        cases = [
            (1, 12, None), (1, 4, None), (2, 4, None), (3, 4, None), (4, 4, None),
            (1, 2, "shoes"), (3, 2, "SHOES"), (1, 5, "Hats"), (0, 3, None), (1, 0, "all"),
            (1, 12, "électronique"), (2, 2, "ÉLECTRONIQUE"), (10 ** 18, 12, None),
        ]
        for page, limit, category in cases:
            from_json = await json_store.get_products(page, limit, category)
            from_sql = await sql_store.get_products(page, limit, category)
            assert from_json.total == from_sql.total
            assert [p.name for p in from_json.products] == [p.name for p in from_sql.products]
    finally:
        await sql_store.close()


# ---------- Categories ----------

async def test_category_crud(storage):
    created = await storage.create_category(CategoryCreate(name="Audio"))
    assert created.description is None
    assert await storage.get_category(created.id) == created

    updated = await storage.update_category(created.id, CategoryUpdate(description="Sound"))
    assert updated.name == "Audio"
    assert updated.description == "Sound"

    cleared = await storage.update_category(created.id, CategoryUpdate(description=None))
    assert cleared.description is None

    assert [c.id for c in await storage.get_categories()] == [created.id]
    assert await storage.delete_category(created.id) is True
    assert await storage.delete_category(created.id) is False
    assert await storage.update_category(created.id, CategoryUpdate(name="X")) is None


async def test_category_names_are_unique(storage):
    audio = await storage.create_category(CategoryCreate(name="Audio"))
    video = await storage.create_category(CategoryCreate(name="Video"))
    with pytest.raises(DuplicateError):
        await storage.create_category(CategoryCreate(name="Audio"))
    with pytest.raises(DuplicateError):
        await storage.update_category(video.id, CategoryUpdate(name="Audio"))
    renamed = await storage.update_category(audio.id, CategoryUpdate(name="Audio"))
    assert renamed.name == "Audio"
    assert len(await storage.get_categories()) == 2


async def test_deleting_category_keeps_products(storage):
    category = await storage.create_category(CategoryCreate(name="Audio"))
    product = await storage.create_product(product_input(category="Audio"))
    await storage.delete_category(category.id)
    assert (await storage.get_product(product.id)).category == "Audio"


# ---------- Customers ----------

async def test_customer_round_trip(storage):
    customer = await storage.create_customer(
        CustomerCreate(name="A", email="a@b.com", phone="1234567890", interested_products=["p1"])
    )
    customers = await storage.get_customers()
    assert customers == [customer]
    assert customers[0].interested_products == ["p1"]
    assert await storage.get_customer(customer.id) == customer


async def test_customer_defaults_and_duplicates(storage):
    data = CustomerCreate(name="A", email="a@b.com", phone="123")
    first = await storage.create_customer(data)
    second = await storage.create_customer(data)
    assert first.interested_products == []
    assert first.id != second.id
    assert len(await storage.get_customers()) == 2


async def test_update_customer(storage):
    customer = await storage.create_customer(CustomerCreate(name="A", email="a@b.com", phone="123"))
    updated = await storage.update_customer(customer.id, CustomerUpdate(phone="999"))
    assert updated.phone == "999"
    assert updated.email == "a@b.com"
    assert await storage.update_customer("missing", CustomerUpdate(phone="1")) is None


# ---------- Admins & sessions ----------

async def test_admins(storage):
    admin = await storage.create_admin(AdminCreate(username="root", password="hashed"))
    assert await storage.get_admin_by_username("root") == admin
    assert await storage.get_admin_by_username("nobody") is None
    with pytest.raises(DuplicateError):
        await storage.create_admin(AdminCreate(username="root", password="other"))


async def test_sessions(storage):
    now = utcnow()
    live = await storage.create_session("admin-1", now + timedelta(hours=1))
    stale = await storage.create_session("admin-1", now - timedelta(minutes=1))
    assert live.id != stale.id
    assert (await storage.get_session(live.id)).admin_id == "admin-1"

    assert await storage.delete_expired_sessions(now) == 1
    assert await storage.get_session(stale.id) is None

    assert await storage.delete_session(live.id) is True
    assert await storage.delete_session(live.id) is False
    assert await storage.get_session(live.id) is None


async def test_ping(storage):
    await storage.ping()


async def test_unreachable_database_raises_storage_error(tmp_path):
    store = SqlStorage(create_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'store.db'}"))
    try:
        with pytest.raises(StorageError):
            await store.ping()
        with pytest.raises(StorageError):
            await store.get_products()
    finally:
        await store.close()


async def test_unwritable_data_dir_raises_storage_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    store = JsonFileStorage(blocker)
    with pytest.raises(StorageError):
        await store.ping()
    with pytest.raises(StorageError):
        await store.create_product(product_input())


# ---------- Flat-file specifics ----------

async def test_missing_files_read_as_empty(tmp_path):
    store = JsonFileStorage(tmp_path / "never-created")
    assert (await store.get_products()).total == 0
    assert await store.get_categories() == []
    assert await store.get_admin_by_username("admin") is None


@pytest.mark.parametrize("content", ["{not json", '{"a": 1}', '[{"id": 1}]'])
async def test_corrupt_file_reads_as_empty(tmp_path, content):
    store = JsonFileStorage(tmp_path)
    await store.init()
    (tmp_path / "products.json").write_text(content, encoding="utf-8")
    assert (await store.get_products()).products == []

    product = await store.create_product(product_input())
    assert (await store.get_products()).products == [product]


async def test_files_use_camel_case_keys(tmp_path):
    store = JsonFileStorage(tmp_path)
    await store.init()
    await store.create_customer(
        CustomerCreate(name="A", email="a@b.com", phone="1", interested_products=["p1"])
    )
    saved = json.loads((tmp_path / "customers.json").read_text(encoding="utf-8"))
    assert saved[0]["interestedProducts"] == ["p1"]
    assert "createdAt" in saved[0]


async def test_concurrent_writes_are_not_lost(tmp_path):
    store = JsonFileStorage(tmp_path)
    await store.init()
    await asyncio.gather(*(store.create_product(product_input(name=f"P{i}")) for i in range(10)))
    assert (await store.get_products(1, 50)).total == 10
