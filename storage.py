"""
Storage engine for the storefront.

`Storage` is the one interface the API talks to. Two backends implement it:

- `SqlStorage` keeps records in relational tables (PostgreSQL in production,
  SQLite through aiosqlite for local runs and tests) and pushes filtering,
  counting and paging down to the database.
- `JsonFileStorage` keeps one JSON file per collection in a data directory
  and does the same filtering and paging in memory.

Both backends order product listings by (created_at, id) and clamp page and
limit to at least 1, so the same inputs give the same pages on either one.
"""

import abc
import asyncio
import json
import logging
import os
import secrets
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as SchemaError
from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from config import Settings
from database import AdminRow, Base, CategoryRow, CustomerRow, ProductRow, SessionRow, create_engine
from errors import DuplicateError, StorageError
from schemas import (
    Admin,
    AdminCreate,
    Category,
    CategoryCreate,
    CategoryUpdate,
    Customer,
    CustomerCreate,
    CustomerUpdate,
    Product,
    ProductCreate,
    ProductPage,
    ProductUpdate,
    Session,
    clean_patch,
    utcnow,
)

logger = logging.getLogger(__name__)

ALL_CATEGORIES = "all"
DEFAULT_PAGE = 1
DEFAULT_LIMIT = 12
# fits a signed 64-bit LIMIT/OFFSET and exceeds any real row count
MAX_ROWS = 2 ** 62


def new_id() -> str:
    return str(uuid.uuid4())


def page_window(page: int = DEFAULT_PAGE, limit: int = DEFAULT_LIMIT) -> Tuple[int, int]:
    """Return (offset, limit) for a 1-based page.

    Both inputs are clamped to >= 1, and both outputs to MAX_ROWS, so a huge
    page number is simply past the end.
    """
    page = max(int(page), 1)
    limit = min(max(int(limit), 1), MAX_ROWS)
    return min((page - 1) * limit, MAX_ROWS), limit


def fold_category(category: str) -> str:
    return category.lower()


def category_key(category: Optional[str]) -> Optional[str]:
    """Folded category to filter on, or None for no filter."""
    if not category or category == ALL_CATEGORIES:
        return None
    return fold_category(category)


class Storage(abc.ABC):
    """CRUD and paginated listing over products, categories, customers,
    admins and sessions. Every operation may suspend on I/O."""

    name = "abstract"

    async def init(self) -> None:
        """Prepare the medium (tables, directories)."""

    async def close(self) -> None:
        """Release pooled resources."""

    @abc.abstractmethod
    async def ping(self) -> None: ...

    # Products
    @abc.abstractmethod
    async def get_products(self, page: int = DEFAULT_PAGE, limit: int = DEFAULT_LIMIT,
                           category: Optional[str] = None) -> ProductPage: ...

    @abc.abstractmethod
    async def get_product(self, product_id: str) -> Optional[Product]: ...

    @abc.abstractmethod
    async def create_product(self, data: ProductCreate) -> Product: ...

    @abc.abstractmethod
    async def update_product(self, product_id: str, patch: ProductUpdate) -> Optional[Product]: ...

    @abc.abstractmethod
    async def delete_product(self, product_id: str) -> bool: ...

    # Categories
    @abc.abstractmethod
    async def get_categories(self) -> List[Category]: ...

    @abc.abstractmethod
    async def get_category(self, category_id: str) -> Optional[Category]: ...

    @abc.abstractmethod
    async def create_category(self, data: CategoryCreate) -> Category: ...

    @abc.abstractmethod
    async def update_category(self, category_id: str, patch: CategoryUpdate) -> Optional[Category]: ...

    @abc.abstractmethod
    async def delete_category(self, category_id: str) -> bool: ...

    # Customers
    @abc.abstractmethod
    async def get_customers(self) -> List[Customer]: ...

    @abc.abstractmethod
    async def get_customer(self, customer_id: str) -> Optional[Customer]: ...

    @abc.abstractmethod
    async def create_customer(self, data: CustomerCreate) -> Customer: ...

    @abc.abstractmethod
    async def update_customer(self, customer_id: str, patch: CustomerUpdate) -> Optional[Customer]: ...

    # Admins
    @abc.abstractmethod
    async def get_admin_by_username(self, username: str) -> Optional[Admin]: ...

    @abc.abstractmethod
    async def create_admin(self, data: AdminCreate) -> Admin:
        """Store an admin. ``data.password`` must already be hashed."""

    # Sessions
    @abc.abstractmethod
    async def create_session(self, admin_id: str, expires_at: datetime) -> Session: ...

    @abc.abstractmethod
    async def get_session(self, session_id: str) -> Optional[Session]: ...

    @abc.abstractmethod
    async def delete_session(self, session_id: str) -> bool: ...

    @abc.abstractmethod
    async def delete_expired_sessions(self, now: datetime) -> int: ...


CATEGORY_NULLABLE = ("description",)


# ----------------------- Relational backend -----------------------

class SqlStorage(Storage):
    name = "sql"

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.sessionmaker = async_sessionmaker(engine, expire_on_commit=False)

    @asynccontextmanager
    async def _session(self):
        try:
            async with self.sessionmaker() as session:
                yield session
        except IntegrityError as exc:
            raise DuplicateError() from exc
        except (SQLAlchemyError, OSError) as exc:
            logger.exception("Database operation failed")
            raise StorageError() from exc

    async def init(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as exc:
            raise StorageError("Could not prepare database tables") from exc

    async def close(self) -> None:
        await self.engine.dispose()

    async def ping(self) -> None:
        async with self._session() as session:
            await session.execute(text("SELECT 1"))

    async def _update(self, row_type, model, record_id: str, values: Dict[str, Any]):
        async with self._session() as session:
            row = await session.get(row_type, record_id)
            if row is None:
                return None
            if values:
                for key, value in values.items():
                    setattr(row, key, value)
                await session.commit()
            return model.model_validate(row)

    async def _delete(self, row_type, record_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(delete(row_type).where(row_type.id == record_id))
            await session.commit()
        return (result.rowcount or 0) > 0

    async def _insert(self, row, model):
        async with self._session() as session:
            session.add(row)
            await session.commit()
        return model.model_validate(row)

    # ---------- Products ----------
    async def get_products(self, page=DEFAULT_PAGE, limit=DEFAULT_LIMIT, category=None):
        offset, limit = page_window(page, limit)
        stmt = select(ProductRow)
        count_stmt = select(func.count()).select_from(ProductRow)
        wanted = category_key(category)
        if wanted is not None:
            match = ProductRow.category_key == wanted
            stmt = stmt.where(match)
            count_stmt = count_stmt.where(match)
        stmt = stmt.order_by(ProductRow.created_at, ProductRow.id).limit(limit).offset(offset)

        async with self._session() as session:
            rows = (await session.scalars(stmt)).all()
            total = await session.scalar(count_stmt)
        return ProductPage(products=[Product.model_validate(r) for r in rows], total=total or 0)

    async def get_product(self, product_id):
        async with self._session() as session:
            row = await session.get(ProductRow, product_id)
        return Product.model_validate(row) if row else None

    async def create_product(self, data):
        row = ProductRow(
            id=new_id(),
            created_at=utcnow(),
            category_key=fold_category(data.category),
            **data.model_dump(),
        )
        return await self._insert(row, Product)

    async def update_product(self, product_id, patch):
        values = clean_patch(patch)
        if "category" in values:
            values["category_key"] = fold_category(values["category"])
        return await self._update(ProductRow, Product, product_id, values)

    async def delete_product(self, product_id):
        return await self._delete(ProductRow, product_id)

    # ---------- Categories ----------
    async def get_categories(self):
        stmt = select(CategoryRow).order_by(CategoryRow.created_at, CategoryRow.id)
        async with self._session() as session:
            rows = (await session.scalars(stmt)).all()
        return [Category.model_validate(r) for r in rows]

    async def get_category(self, category_id):
        async with self._session() as session:
            row = await session.get(CategoryRow, category_id)
        return Category.model_validate(row) if row else None

    async def create_category(self, data):
        row = CategoryRow(id=new_id(), created_at=utcnow(), name=data.name,
                          description=data.description)
        return await self._insert(row, Category)

    async def update_category(self, category_id, patch):
        values = clean_patch(patch, nullable=CATEGORY_NULLABLE)
        return await self._update(CategoryRow, Category, category_id, values)

    async def delete_category(self, category_id):
        return await self._delete(CategoryRow, category_id)

    # ---------- Customers ----------
    async def get_customers(self):
        stmt = select(CustomerRow).order_by(CustomerRow.created_at, CustomerRow.id)
        async with self._session() as session:
            rows = (await session.scalars(stmt)).all()
        return [Customer.model_validate(r) for r in rows]

    async def get_customer(self, customer_id):
        async with self._session() as session:
            row = await session.get(CustomerRow, customer_id)
        return Customer.model_validate(row) if row else None

    async def create_customer(self, data):
        row = CustomerRow(id=new_id(), created_at=utcnow(), **data.model_dump())
        return await self._insert(row, Customer)

    async def update_customer(self, customer_id, patch):
        return await self._update(CustomerRow, Customer, customer_id, clean_patch(patch))

    # ---------- Admins ----------
    async def get_admin_by_username(self, username):
        stmt = select(AdminRow).where(AdminRow.username == username)
        async with self._session() as session:
            row = (await session.scalars(stmt)).first()
        return Admin.model_validate(row) if row else None

    async def create_admin(self, data):
        row = AdminRow(id=new_id(), created_at=utcnow(), username=data.username,
                       password=data.password)
        return await self._insert(row, Admin)

    # ---------- Sessions ----------
    async def create_session(self, admin_id, expires_at):
        row = SessionRow(id=secrets.token_urlsafe(32), admin_id=admin_id, expires_at=expires_at)
        return await self._insert(row, Session)

    async def get_session(self, session_id):
        async with self._session() as session:
            row = await session.get(SessionRow, session_id)
        return Session.model_validate(row) if row else None

    async def delete_session(self, session_id):
        return await self._delete(SessionRow, session_id)

    async def delete_expired_sessions(self, now):
        async with self._session() as session:
            result = await session.execute(delete(SessionRow).where(SessionRow.expires_at <= now))
            await session.commit()
        return result.rowcount or 0


# ----------------------- Flat-file backend -----------------------

COLLECTIONS = {
    "products": Product,
    "categories": Category,
    "customers": Customer,
    "admins": Admin,
    "sessions": Session,
}


def _ordered(records):
    return sorted(records, key=lambda r: (r.created_at, r.id))


def _find(records, record_id: str) -> Optional[int]:
    for index, record in enumerate(records):
        if record.id == record_id:
            return index
    return None


class JsonFileStorage(Storage):
    """One ``<collection>.json`` file per collection under ``data_dir``.

    Every write loads the whole collection, changes it and writes it back.
    Writers inside this process are serialised per collection; several
    processes sharing one data directory can still overwrite each other's
    changes.
    """

    name = "json"

    def __init__(self, data_dir):
        self.data_dir = Path(data_dir)
        self._locks = {collection: asyncio.Lock() for collection in COLLECTIONS}

    def _path(self, collection: str) -> Path:
        return self.data_dir / f"{collection}.json"

    def _load(self, collection: str) -> list:
        path = self._path(collection)
        model = COLLECTIONS[collection]
        try:
            with path.open(encoding="utf-8") as fh:
                raw = json.load(fh)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable %s: %s", path, exc)
            return []
        if not isinstance(raw, list):
            logger.warning("Ignoring %s: expected a JSON list", path)
            return []
        try:
            return [model.model_validate(item) for item in raw]
        except SchemaError as exc:
            logger.warning("Ignoring %s: %s", path, exc)
            return []

    def _dump(self, collection: str, records: list) -> None:
        path = self._path(collection)
        payload = [r.model_dump(mode="json", by_alias=True) for r in records]
        tmp = path.with_name(path.name + ".tmp")
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            os.replace(tmp, path)
        except OSError as exc:
            logger.exception("Could not write %s", path)
            raise StorageError() from exc

    async def _read(self, collection: str) -> list:
        return await asyncio.to_thread(self._load, collection)

    async def _write(self, collection: str, records: list) -> None:
        await asyncio.to_thread(self._dump, collection, records)

    async def init(self) -> None:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Could not create data directory {self.data_dir}") from exc

    async def ping(self) -> None:
        if not self.data_dir.is_dir():
            raise StorageError(f"Data directory {self.data_dir} is missing")

    async def _get(self, collection: str, record_id: str):
        records = await self._read(collection)
        index = _find(records, record_id)
        return records[index] if index is not None else None

    async def _append(self, collection: str, record):
        async with self._locks[collection]:
            records = await self._read(collection)
            records.append(record)
            await self._write(collection, records)
        return record

    async def _update(self, collection: str, record_id: str, values: Dict[str, Any]):
        async with self._locks[collection]:
            records = await self._read(collection)
            index = _find(records, record_id)
            if index is None:
                return None
            if not values:
                return records[index]
            records[index] = records[index].model_copy(update=values)
            await self._write(collection, records)
            return records[index]

    async def _delete(self, collection: str, record_id: str) -> bool:
        async with self._locks[collection]:
            records = await self._read(collection)
            index = _find(records, record_id)
            if index is None:
                return False
            del records[index]
            await self._write(collection, records)
        return True

    # ---------- Products ----------
    async def get_products(self, page=DEFAULT_PAGE, limit=DEFAULT_LIMIT, category=None):
        offset, limit = page_window(page, limit)
        products = await self._read("products")
        wanted = category_key(category)
        if wanted is not None:
            products = [p for p in products if fold_category(p.category) == wanted]
        products = _ordered(products)
        return ProductPage(products=products[offset:offset + limit], total=len(products))

    async def get_product(self, product_id):
        return await self._get("products", product_id)

    async def create_product(self, data):
        product = Product(id=new_id(), created_at=utcnow(), **data.model_dump())
        return await self._append("products", product)

    async def update_product(self, product_id, patch):
        return await self._update("products", product_id, clean_patch(patch))

    async def delete_product(self, product_id):
        return await self._delete("products", product_id)

    # ---------- Categories ----------
    async def get_categories(self):
        return _ordered(await self._read("categories"))

    async def get_category(self, category_id):
        return await self._get("categories", category_id)

    async def create_category(self, data):
        category = Category(id=new_id(), created_at=utcnow(), **data.model_dump())
        async with self._locks["categories"]:
            categories = await self._read("categories")
            if any(c.name == category.name for c in categories):
                raise DuplicateError(f"Category {category.name!r} already exists")
            categories.append(category)
            await self._write("categories", categories)
        return category

    async def update_category(self, category_id, patch):
        values = clean_patch(patch, nullable=CATEGORY_NULLABLE)
        async with self._locks["categories"]:
            categories = await self._read("categories")
            index = _find(categories, category_id)
            if index is None:
                return None
            name = values.get("name")
            if name is not None and any(c.name == name and c.id != category_id for c in categories):
                raise DuplicateError(f"Category {name!r} already exists")
            if values:
                categories[index] = categories[index].model_copy(update=values)
                await self._write("categories", categories)
            return categories[index]

    async def delete_category(self, category_id):
        return await self._delete("categories", category_id)

    # ---------- Customers ----------
    async def get_customers(self):
        return _ordered(await self._read("customers"))

    async def get_customer(self, customer_id):
        return await self._get("customers", customer_id)

    async def create_customer(self, data):
        customer = Customer(id=new_id(), created_at=utcnow(), **data.model_dump())
        return await self._append("customers", customer)

    async def update_customer(self, customer_id, patch):
        return await self._update("customers", customer_id, clean_patch(patch))

    # ---------- Admins ----------
    async def get_admin_by_username(self, username):
        for admin in await self._read("admins"):
            if admin.username == username:
                return admin
        return None

    async def create_admin(self, data):
        admin = Admin(id=new_id(), created_at=utcnow(), username=data.username,
                      password=data.password)
        async with self._locks["admins"]:
            admins = await self._read("admins")
            if any(a.username == admin.username for a in admins):
                raise DuplicateError(f"Admin {admin.username!r} already exists")
            admins.append(admin)
            await self._write("admins", admins)
        return admin

    # ---------- Sessions ----------
    async def create_session(self, admin_id, expires_at):
        session = Session(id=secrets.token_urlsafe(32), admin_id=admin_id, expires_at=expires_at)
        return await self._append("sessions", session)

    async def get_session(self, session_id):
        return await self._get("sessions", session_id)

    async def delete_session(self, session_id):
        return await self._delete("sessions", session_id)

    async def delete_expired_sessions(self, now):
        async with self._locks["sessions"]:
            sessions = await self._read("sessions")
            alive = [s for s in sessions if s.expires_at > now]
            removed = len(sessions) - len(alive)
            if removed:
                await self._write("sessions", alive)
        return removed


def create_storage(settings: Settings) -> Storage:
    if settings.storage_backend == "sql":
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is not set")
        logger.info("Using relational storage")
        return SqlStorage(create_engine(settings.database_url))
    logger.info("Using JSON file storage in %s", settings.data_dir)
    return JsonFileStorage(settings.data_dir)
