"""
Relational tables and engine setup.

One declarative table per stored collection. The tables mirror the pydantic
records in schemas.py; price and rating are text columns so the exact decimal
string the client sent is what comes back.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ProductRow(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[str] = mapped_column(String(32), nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    # folded copy of category, written by the storage layer and used for filtering
    category_key: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    image: Mapped[str] = mapped_column(Text, nullable=False)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rating: Mapped[str] = mapped_column(String(8), nullable=False, default="0")
    featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CategoryRow(Base):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CustomerRow(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str] = mapped_column(Text, nullable=False)
    interested_products: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AdminRow(Base):
    __tablename__ = "admins"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    username: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    password: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SessionRow(Base):
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    admin_id: Mapped[str] = mapped_column(String(36), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


def normalize_url(database_url: str) -> Tuple[URL, Dict[str, Any]]:
    """Point plain postgres URLs at the asyncpg driver.

    asyncpg does not understand libpq's ``sslmode`` query parameter, so it is
    turned into the ``ssl`` connect argument.
    """
    url = make_url(database_url)
    connect_args: Dict[str, Any] = {}
    if url.drivername in ("postgres", "postgresql"):
        url = url.set(drivername="postgresql+asyncpg")
    if url.drivername == "postgresql+asyncpg" and "sslmode" in url.query:
        sslmode = url.query["sslmode"]
        if isinstance(sslmode, tuple):
            sslmode = sslmode[0]
        url = url.difference_update_query(["sslmode"])
        if sslmode != "disable":
            connect_args["ssl"] = sslmode
    return url, connect_args


def create_engine(database_url: str) -> AsyncEngine:
    url, connect_args = normalize_url(database_url)
    options: Dict[str, Any] = {"connect_args": connect_args}
    if url.get_backend_name() != "sqlite":
        options["pool_pre_ping"] = True
    return create_async_engine(url, **options)
