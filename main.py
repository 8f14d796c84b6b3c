import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from auth import (
    DUMMY_HASH,
    current_session,
    end_session,
    ensure_default_admin,
    get_settings,
    get_storage,
    require_admin,
    session_id_from,
    start_session,
    verify_password,
)
from config import Settings, get_settings as load_settings
from errors import AuthError, DuplicateError, NotFoundError, StorageError, StoreError, ValidationError
from schemas import (
    Category,
    CategoryCreate,
    CategoryUpdate,
    Customer,
    CustomerCreate,
    LoginRequest,
    Product,
    ProductCreate,
    ProductPage,
    ProductUpdate,
    utcnow,
)
from storage import DEFAULT_LIMIT, DEFAULT_PAGE, Storage, create_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ----------------------- Utils -----------------------

def int_param(raw: Optional[str], default: int) -> int:
    """Lenient query int: missing, non-numeric or non-positive means default."""
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=ValidationError.status_code, content={"detail": ValidationError.message})


async def store_error_handler(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal server error"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# ----------------------- Health -----------------------

@router.get("/health")
async def health(storage: Storage = Depends(get_storage)):
    try:
        await storage.ping()
    except StorageError:
        return JSONResponse(status_code=500, content={"ok": False, "backend": storage.name})
    return {"ok": True, "backend": storage.name}


# ----------------------- Products -----------------------

@router.get("/products", response_model=ProductPage)
async def list_products(
    page: Optional[str] = None,
    limit: Optional[str] = None,
    category: Optional[str] = None,
    storage: Storage = Depends(get_storage),
):
    return await storage.get_products(
        int_param(page, DEFAULT_PAGE), int_param(limit, DEFAULT_LIMIT), category or None
    )


@router.get("/products/{product_id}", response_model=Product)
async def get_product(product_id: str, storage: Storage = Depends(get_storage)):
    product = await storage.get_product(product_id)
    if not product:
        raise NotFoundError("Product not found")
    return product


@router.post("/products", response_model=Product, status_code=201)
async def create_product(
    body: ProductCreate,
    admin_id: str = Depends(require_admin),
    storage: Storage = Depends(get_storage),
):
    return await storage.create_product(body)


@router.put("/products/{product_id}", response_model=Product)
async def update_product(
    product_id: str,
    body: ProductUpdate,
    admin_id: str = Depends(require_admin),
    storage: Storage = Depends(get_storage),
):
    product = await storage.update_product(product_id, body)
    if not product:
        raise NotFoundError("Product not found")
    return product


@router.delete("/products/{product_id}", status_code=204)
async def delete_product(
    product_id: str,
    admin_id: str = Depends(require_admin),
    storage: Storage = Depends(get_storage),
):
    if not await storage.delete_product(product_id):
        raise NotFoundError("Product not found")
    return Response(status_code=204)


# ----------------------- Categories -----------------------

@router.get("/categories", response_model=List[Category])
async def list_categories(storage: Storage = Depends(get_storage)):
    return await storage.get_categories()


@router.get("/categories/{category_id}", response_model=Category)
async def get_category(category_id: str, storage: Storage = Depends(get_storage)):
    category = await storage.get_category(category_id)
    if not category:
        raise NotFoundError("Category not found")
    return category


@router.post("/categories", response_model=Category, status_code=201)
async def create_category(
    body: CategoryCreate,
    admin_id: str = Depends(require_admin),
    storage: Storage = Depends(get_storage),
):
    try:
        return await storage.create_category(body)
    except DuplicateError as exc:
        raise ValidationError("Category name already exists") from exc


@router.put("/categories/{category_id}", response_model=Category)
async def update_category(
    category_id: str,
    body: CategoryUpdate,
    admin_id: str = Depends(require_admin),
    storage: Storage = Depends(get_storage),
):
    try:
        category = await storage.update_category(category_id, body)
    except DuplicateError as exc:
        raise ValidationError("Category name already exists") from exc
    if not category:
        raise NotFoundError("Category not found")
    return category


@router.delete("/categories/{category_id}", status_code=204)
async def delete_category(
    category_id: str,
    admin_id: str = Depends(require_admin),
    storage: Storage = Depends(get_storage),
):
    if not await storage.delete_category(category_id):
        raise NotFoundError("Category not found")
    return Response(status_code=204)


# ----------------------- Customers -----------------------

@router.get("/customers", response_model=List[Customer])
async def list_customers(
    admin_id: str = Depends(require_admin),
    storage: Storage = Depends(get_storage),
):
    return await storage.get_customers()


@router.post("/customers", response_model=Customer, status_code=201)
async def create_customer(body: CustomerCreate, storage: Storage = Depends(get_storage)):
    return await storage.create_customer(body)


# ----------------------- Auth -----------------------

@router.post("/auth/login")
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    admin = await storage.get_admin_by_username(body.username)
    # unknown users still pay for a full hash check
    hashed = admin.password if admin else DUMMY_HASH
    password_ok = await run_in_threadpool(verify_password, body.password, hashed)
    if not admin or not password_ok:
        logger.info("Failed login for %r", body.username)
        raise AuthError("Invalid credentials")
    await start_session(storage, settings, response, admin.id, previous=session_id_from(request, settings))
    return {"message": "Login successful", "admin": {"id": admin.id, "username": admin.username}}


@router.post("/auth/logout")
async def logout(
    request: Request,
    response: Response,
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    await end_session(request, storage, settings, response)
    return {"message": "Logout successful"}


@router.get("/auth/me")
async def me(
    request: Request,
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    session = await current_session(request, storage, settings)
    if session is None:
        raise AuthError("Not authenticated")
    return {"adminId": session.admin_id}


# ----------------------- App -----------------------

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        storage = create_storage(settings)
        await storage.init()
        await storage.delete_expired_sessions(utcnow())
        await ensure_default_admin(storage)
        app.state.storage = storage
        try:
            yield
        finally:
            await storage.close()

    app = FastAPI(title="Storefront API", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StoreError, store_error_handler)

    @app.get("/")
    def root():
        return {"message": "Storefront API running"}

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
