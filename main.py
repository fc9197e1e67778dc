import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

import stripe
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pymongo.database import Database

from accounts import AccountStore
from cart import CartEngine
from catalog import CatalogStore
from config import Settings
from database import connect, ensure_indexes, utcnow
from errors import Forbidden, StoreError
from orders import OrderWorkflow
from payments import PaymentGateway
from schemas import (
    AddToCart,
    CartOut,
    CategoryIn,
    CategoryOut,
    CreateOrder,
    OrderOut,
    OrderStatus,
    Page,
    PaymentIntentOut,
    PaymentStatus,
    ProductIn,
    ProductOut,
    ProfileUpdate,
    StoreStats,
    UserOut,
    UserRegistration,
    UserRole,
)

settings = Settings.from_env()

logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


class Services:
    """Everything a request handler needs, built once per app."""

    def __init__(self, db: Database, settings: Settings):
        self.db = db
        self.settings = settings
        self.catalog = CatalogStore(db)
        self.accounts = AccountStore(db, admin_uids=settings.admin_uids)
        self.cart = CartEngine(db, self.catalog, self.accounts)
        self.gateway = PaymentGateway(settings.stripe_api_key, settings.stripe_publishable_key)
        self.orders = OrderWorkflow(db, self.catalog, self.cart, self.accounts, self.gateway,
                                    tax_rate=settings.tax_rate, shipping_fee=settings.shipping_flat_fee)


# -----------------------
# Dependencies
# -----------------------

def get_services(request: Request) -> Services:
    return request.app.state.services


def caller_uid(firebase_uid: Optional[str] = Header(None, alias="Firebase-UID")) -> Optional[str]:
    # Trusted as-is; token verification happens in front of this service
    return firebase_uid


def require_admin(uid: Optional[str] = Depends(caller_uid), s: Services = Depends(get_services)) -> dict:
    user = s.accounts.resolve_caller(uid)
    if not s.accounts.is_admin(uid):
        raise Forbidden("Admin role required")
    return user


router = APIRouter(prefix="/api")

# ---------------
# Catalog Endpoints
# ---------------

@router.get("/products", response_model=Page)
def list_products(page: int = Query(0, ge=0), size: int = Query(12, ge=1, le=100),
                  sort_by: str = "created_at", sort_dir: str = "desc", s: Services = Depends(get_services)):
    return s.catalog.list_products(page, size, sort_by, sort_dir)


@router.get("/products/featured", response_model=List[ProductOut])
def featured_products(limit: int = Query(8, ge=1, le=100), s: Services = Depends(get_services)):
    return s.catalog.featured_products(limit)


@router.get("/products/search", response_model=Page)
def search_products(keyword: str, page: int = Query(0, ge=0), size: int = Query(12, ge=1, le=100),
                    s: Services = Depends(get_services)):
    return s.catalog.search_products(keyword, page, size)


@router.get("/products/filter/price", response_model=Page)
def products_by_price(min_price: float = Query(..., ge=0), max_price: float = Query(..., ge=0),
                      page: int = Query(0, ge=0), size: int = Query(12, ge=1, le=100),
                      s: Services = Depends(get_services)):
    return s.catalog.products_by_price_range(min_price, max_price, page, size)


@router.get("/products/filter/brand", response_model=Page)
def products_by_brand(brand: str, page: int = Query(0, ge=0), size: int = Query(12, ge=1, le=100),
                      s: Services = Depends(get_services)):
    return s.catalog.products_by_brand(brand, page, size)


@router.get("/products/brands", response_model=List[str])
def brands(s: Services = Depends(get_services)):
    return s.catalog.brands()


@router.get("/products/latest", response_model=List[ProductOut])
def latest_products(limit: int = Query(8, ge=1, le=100), s: Services = Depends(get_services)):
    return s.catalog.latest_products(limit)


@router.get("/products/top-rated", response_model=List[ProductOut])
def top_rated_products(limit: int = Query(8, ge=1, le=100), s: Services = Depends(get_services)):
    return s.catalog.top_rated_products(limit)


@router.get("/products/slug/{slug}", response_model=ProductOut)
def product_by_slug(slug: str, s: Services = Depends(get_services)):
    return s.catalog.get_product_by_slug(slug)


@router.get("/products/category/{category_id}", response_model=Page)
def products_by_category(category_id: str, page: int = Query(0, ge=0), size: int = Query(12, ge=1, le=100),
                         s: Services = Depends(get_services)):
    return s.catalog.products_by_category(category_id, page, size)


@router.get("/products/{product_id}", response_model=ProductOut)
def get_product(product_id: str, s: Services = Depends(get_services)):
    return s.catalog.get_product(product_id)


@router.get("/categories", response_model=List[CategoryOut])
def list_categories(s: Services = Depends(get_services)):
    return s.catalog.list_categories()


@router.get("/categories/top-level", response_model=List[CategoryOut])
def top_level_categories(s: Services = Depends(get_services)):
    return s.catalog.top_level_categories()


@router.get("/categories/slug/{slug}", response_model=CategoryOut)
def category_by_slug(slug: str, s: Services = Depends(get_services)):
    return s.catalog.get_category_by_slug(slug)


@router.get("/categories/{category_id}", response_model=CategoryOut)
def get_category(category_id: str, s: Services = Depends(get_services)):
    return s.catalog.get_category(category_id)


@router.get("/categories/{category_id}/subcategories", response_model=List[CategoryOut])
def subcategories(category_id: str, s: Services = Depends(get_services)):
    return s.catalog.subcategories(category_id)


@router.get("/categories/{category_id}/product-count", response_model=int)
def category_product_count(category_id: str, s: Services = Depends(get_services)):
    return s.catalog.product_count(category_id)

# ---------------
# Cart Endpoints
# ---------------

@router.get("/cart", response_model=CartOut)
def get_cart(uid: Optional[str] = Depends(caller_uid), s: Services = Depends(get_services)):
    return s.cart.get_cart(uid)


@router.post("/cart", response_model=CartOut)
def ensure_cart(uid: Optional[str] = Depends(caller_uid), s: Services = Depends(get_services)):
    return s.cart.get_cart(uid)


@router.post("/cart/add", response_model=CartOut)
def add_to_cart(payload: AddToCart, uid: Optional[str] = Depends(caller_uid), s: Services = Depends(get_services)):
    return s.cart.add_item(uid, payload.product_id, payload.quantity)


@router.put("/cart/items/{item_id}", response_model=CartOut)
def update_cart_item(item_id: str, quantity: int, uid: Optional[str] = Depends(caller_uid),
                     s: Services = Depends(get_services)):
    return s.cart.update_item(uid, item_id, quantity)


@router.delete("/cart/items/{item_id}", response_model=CartOut)
def remove_cart_item(item_id: str, uid: Optional[str] = Depends(caller_uid), s: Services = Depends(get_services)):
    return s.cart.remove_item(uid, item_id)


@router.delete("/cart", response_model=CartOut)
def clear_cart(uid: Optional[str] = Depends(caller_uid), s: Services = Depends(get_services)):
    return s.cart.clear(uid)

# ---------------
# Orders Endpoints
# ---------------

@router.post("/orders", response_model=OrderOut, status_code=201)
def create_order(payload: CreateOrder, uid: Optional[str] = Depends(caller_uid), s: Services = Depends(get_services)):
    return s.orders.create_order(uid, payload)


@router.get("/orders/user", response_model=Page)
def user_orders(page: int = Query(0, ge=0), size: int = Query(10, ge=1, le=100),
                uid: Optional[str] = Depends(caller_uid), s: Services = Depends(get_services)):
    s.accounts.resolve_caller(uid)
    return s.orders.user_orders(uid, page, size)


@router.get("/orders/number/{order_number}", response_model=OrderOut)
def order_by_number(order_number: str, s: Services = Depends(get_services)):
    return s.orders.get_order_by_number(order_number)


@router.get("/orders/status/{status}", response_model=Page)
def orders_by_status(status: OrderStatus, page: int = Query(0, ge=0), size: int = Query(10, ge=1, le=100),
                     s: Services = Depends(get_services)):
    return s.orders.orders_by_status(status, page, size)


@router.get("/orders", response_model=List[OrderOut])
def all_orders(admin: dict = Depends(require_admin), s: Services = Depends(get_services)):
    return s.orders.all_orders()


@router.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: str, s: Services = Depends(get_services)):
    return s.orders.get_order(order_id)


@router.put("/orders/{order_id}/status", response_model=OrderOut)
def update_order_status(order_id: str, status: OrderStatus, admin: dict = Depends(require_admin),
                        s: Services = Depends(get_services)):
    return s.orders.update_order_status(order_id, status)


@router.put("/orders/{order_id}/payment-status", response_model=OrderOut)
def update_payment_status(order_id: str, payment_status: PaymentStatus, admin: dict = Depends(require_admin),
                          s: Services = Depends(get_services)):
    return s.orders.update_payment_status(order_id, payment_status)


@router.post("/orders/{order_id}/cancel", response_model=OrderOut)
def cancel_order(order_id: str, uid: Optional[str] = Depends(caller_uid), s: Services = Depends(get_services)):
    return s.orders.cancel_order(uid, order_id)

# ---------------
# Payment Endpoints
# ---------------

@router.get("/payments/config")
def payment_config(s: Services = Depends(get_services)):
    return {"publishable_key": s.gateway.publishable_key, "live": s.gateway.live}


@router.post("/orders/{order_id}/payment-intent", response_model=PaymentIntentOut)
def create_payment_intent(order_id: str, uid: Optional[str] = Depends(caller_uid),
                          s: Services = Depends(get_services)):
    return s.orders.create_payment_intent(uid, order_id)


@router.get("/orders/{order_id}/payment-intent", response_model=PaymentIntentOut)
def get_payment_intent(order_id: str, uid: Optional[str] = Depends(caller_uid), s: Services = Depends(get_services)):
    return s.orders.get_payment_intent(uid, order_id)


@router.post("/orders/{order_id}/payment/confirm", response_model=OrderOut)
def confirm_payment(order_id: str, uid: Optional[str] = Depends(caller_uid), s: Services = Depends(get_services)):
    return s.orders.confirm_payment(uid, order_id)


@router.post("/orders/{order_id}/refund", response_model=OrderOut)
def refund_order(order_id: str, amount: Optional[Decimal] = Query(None, gt=0), admin: dict = Depends(require_admin),
                 s: Services = Depends(get_services)):
    return s.orders.refund(order_id, amount)

# ---------------
# User Endpoints
# ---------------

@router.post("/users/register", response_model=UserOut, status_code=201)
def register_user(payload: UserRegistration, s: Services = Depends(get_services)):
    return s.accounts.register(payload)


@router.get("/users/profile", response_model=UserOut)
def get_profile(uid: Optional[str] = Depends(caller_uid), s: Services = Depends(get_services)):
    return s.accounts.get_by_uid(s.accounts.resolve_caller(uid)["firebase_uid"])


@router.put("/users/profile", response_model=UserOut)
def update_profile(payload: ProfileUpdate, uid: Optional[str] = Depends(caller_uid),
                   s: Services = Depends(get_services)):
    user = s.accounts.resolve_caller(uid)
    return s.accounts.update_profile(str(user["_id"]), payload)


@router.get("/users/email/{email}", response_model=UserOut)
def user_by_email(email: str, admin: dict = Depends(require_admin), s: Services = Depends(get_services)):
    return s.accounts.get_by_email(email)


@router.get("/users/{user_id}", response_model=UserOut)
def get_user(user_id: str, s: Services = Depends(get_services)):
    return s.accounts.get_by_id(user_id)


@router.post("/users/{user_id}/deactivate", response_model=UserOut)
def deactivate_user(user_id: str, admin: dict = Depends(require_admin), s: Services = Depends(get_services)):
    return s.accounts.deactivate(user_id)


@router.post("/users/{user_id}/activate", response_model=UserOut)
def activate_user(user_id: str, admin: dict = Depends(require_admin), s: Services = Depends(get_services)):
    return s.accounts.activate(user_id)


@router.put("/users/{user_id}/role", response_model=UserOut)
def set_user_role(user_id: str, role: UserRole, admin: dict = Depends(require_admin),
                  s: Services = Depends(get_services)):
    return s.accounts.set_role(user_id, role)

# ---------------
# Admin Endpoints
# ---------------

@router.post("/admin/products", response_model=ProductOut, status_code=201)
def create_product(payload: ProductIn, admin: dict = Depends(require_admin), s: Services = Depends(get_services)):
    return s.catalog.create_product(payload)


@router.get("/admin/products/low-stock", response_model=List[ProductOut])
def low_stock_products(threshold: int = Query(5, ge=0), admin: dict = Depends(require_admin),
                       s: Services = Depends(get_services)):
    return s.catalog.low_stock_products(threshold)


@router.put("/admin/products/{product_id}", response_model=ProductOut)
def update_product(product_id: str, payload: ProductIn, admin: dict = Depends(require_admin),
                   s: Services = Depends(get_services)):
    return s.catalog.update_product(product_id, payload)


@router.delete("/admin/products/{product_id}", status_code=204)
def delete_product(product_id: str, admin: dict = Depends(require_admin), s: Services = Depends(get_services)):
    s.catalog.delete_product(product_id)
    return Response(status_code=204)


@router.post("/admin/categories", response_model=CategoryOut, status_code=201)
def create_category(payload: CategoryIn, admin: dict = Depends(require_admin), s: Services = Depends(get_services)):
    return s.catalog.create_category(payload)


@router.put("/admin/categories/{category_id}", response_model=CategoryOut)
def update_category(category_id: str, payload: CategoryIn, admin: dict = Depends(require_admin),
                    s: Services = Depends(get_services)):
    return s.catalog.update_category(category_id, payload)


@router.delete("/admin/categories/{category_id}", status_code=204)
def delete_category(category_id: str, admin: dict = Depends(require_admin), s: Services = Depends(get_services)):
    s.catalog.delete_category(category_id)
    return Response(status_code=204)


@router.get("/admin/stats", response_model=StoreStats)
def store_stats(since: Optional[datetime] = None, admin: dict = Depends(require_admin),
                s: Services = Depends(get_services)):
    since = since or utcnow() - timedelta(days=30)
    return StoreStats(
        active_products=s.catalog.active_product_count(),
        active_customers=s.accounts.active_count(UserRole.CUSTOMER),
        active_admins=s.accounts.active_count(UserRole.ADMIN),
        orders_by_status=s.orders.count_by_status(),
        revenue_since=since,
        revenue=float(s.orders.revenue_since(since)),
    )

# ---------------
# App
# ---------------

def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


def stripe_error_handler(request: Request, exc: stripe.StripeError):
    # Gateway errors are passed through as reported
    logger.error("Payment gateway error: %s", exc)
    message = getattr(exc, "user_message", None) or str(exc)
    return JSONResponse(status_code=502, content={"error": "payment_error", "detail": message})


def create_app(config: Optional[Settings] = None, db: Optional[Database] = None) -> FastAPI:
    config = config or settings
    db = db if db is not None else connect(config)

    app = FastAPI(title="Storefront API", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = Services(db, config)
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(stripe.StripeError, stripe_error_handler)
    app.include_router(router)

    @app.on_event("startup")
    def startup_event():
        ensure_indexes(db)

    @app.get("/")
    def read_root():
        return {"message": "Storefront API is running"}

    @app.get("/test")
    def test_database():
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "database_name": db.name,
            "collections": [],
            "payments": "✅ Live" if config.payments_live else "⚠️  Simulated",
        }
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        return response

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
