import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from langchain_core.language_models.chat_models import BaseChatModel
from starlette.exceptions import HTTPException as StarletteHTTPException

import carts
import catalog
import coupons
import orders
import reviews
import users
import wishlist
from chatbot import ChatbotService, build_chat_model
from database import RETRYABLE_ERRORS, Database, connect, serialize, to_object_id
from errors import MarketplaceError
from mailer import Mailer
from schemas import (
    CartItemRequest,
    CategoryCreate,
    CategoryOrderUpdate,
    CategoryStatusUpdate,
    CategoryUpdate,
    ChatMessage,
    ChatSearch,
    CouponCreate,
    CouponValidateRequest,
    ForgotPasswordRequest,
    LoginRequest,
    OrderCreate,
    OrderStatusUpdate,
    PasswordChange,
    PaymentUpdate,
    ProductCreate,
    ProductStatusUpdate,
    ProductUpdate,
    ProfileUpdate,
    RegisterRequest,
    ResetPasswordRequest,
    ReviewCreate,
    ReviewUpdate,
    StockAdjustment,
    UserRoleUpdate,
    UserStatusUpdate,
    WishlistAdd,
)
from security import jwt_decode
from settings import Settings

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


# Dependencies

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

def get_db(request: Request) -> Database:
    return request.app.state.db

def get_settings(request: Request) -> Settings:
    return request.app.state.settings

def get_mailer(request: Request) -> Mailer:
    return request.app.state.mailer

def get_chatbot(request: Request) -> ChatbotService:
    return request.app.state.chatbot


def get_current_user(token: str = Depends(oauth2_scheme), db: Database = Depends(get_db),
                     settings: Settings = Depends(get_settings)) -> dict:
    try:
        payload = jwt_decode(token, settings.jwt_secret)
        user_id = payload.get("sub")
        if not user_id or payload.get("purpose"):
            raise ValueError("Not an access token")
        user = db["user"].find_one({"_id": to_object_id(user_id)})
    except (ValueError, MarketplaceError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Could not validate credentials")
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if user.get("status", "active") != "active":
        raise HTTPException(status_code=401, detail="Account is not active")
    return user


def require_role(user: dict, *roles: str):
    if user.get("role") not in roles:
        raise HTTPException(status_code=403, detail="Access denied")


router = APIRouter(prefix="/api")


# Auth
@router.post("/auth/register", status_code=201)
def register(body: RegisterRequest, db: Database = Depends(get_db), mailer: Mailer = Depends(get_mailer),
             settings: Settings = Depends(get_settings)):
    return {"message": "User registered successfully", **users.register(db, mailer, settings, body)}

@router.post("/auth/login")
def login(body: LoginRequest, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    return {"message": "Login successful", **users.login(db, settings, body.email, body.password)}

@router.post("/auth/forgot-password")
def forgot_password(body: ForgotPasswordRequest, db: Database = Depends(get_db),
                    mailer: Mailer = Depends(get_mailer), settings: Settings = Depends(get_settings)):
    users.forgot_password(db, mailer, settings, body.email)
    return {"message": "Password reset instructions sent to email"}

@router.post("/auth/reset-password")
def reset_password(body: ResetPasswordRequest, db: Database = Depends(get_db),
                   settings: Settings = Depends(get_settings)):
    users.reset_password(db, settings, body)
    return {"message": "Password reset successful"}


# Users
@router.get("/users")
def list_users(search: Optional[str] = None, role: Optional[str] = None, user_status: Optional[str] = Query(None, alias="status"),
               page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
               current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, "admin")
    return users.list_users(db, search, role, user_status, page, limit)

@router.get("/users/me")
def get_me(current_user: dict = Depends(get_current_user)):
    return users.public_user(current_user)

@router.put("/users/profile")
def update_profile(body: ProfileUpdate, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    users.update_profile(db, current_user, body)
    return {"message": "Profile updated successfully"}

@router.put("/users/change-password")
def change_password(body: PasswordChange, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    users.change_password(db, current_user, body)
    return {"message": "Password changed successfully"}

@router.get("/users/{user_id}")
def get_user(user_id: str, db: Database = Depends(get_db)):
    return users.public_user(users.get_user(db, user_id))

@router.put("/users/{user_id}/status")
def update_user_status(user_id: str, body: UserStatusUpdate, current_user: dict = Depends(get_current_user),
                       db: Database = Depends(get_db)):
    require_role(current_user, "admin")
    users.set_user_field(db, user_id, "status", body.status)
    return {"message": "User status updated successfully"}

@router.put("/users/{user_id}/role")
def update_user_role(user_id: str, body: UserRoleUpdate, current_user: dict = Depends(get_current_user),
                     db: Database = Depends(get_db)):
    require_role(current_user, "admin")
    users.set_user_field(db, user_id, "role", body.role)
    return {"message": "User role updated successfully"}

@router.delete("/users/{user_id}")
def delete_user(user_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, "admin")
    users.delete_user(db, user_id)
    return {"message": "User deleted successfully"}


# Categories
@router.get("/categories")
def get_categories(parent_id: Optional[str] = Query(None, alias="parentId"), category_status: Optional[str] = Query(None, alias="status"),
                   include_inactive: bool = Query(False, alias="includeInactive"), db: Database = Depends(get_db)):
    roots_only = parent_id == "null"
    return catalog.list_categories(db, None if roots_only else parent_id, roots_only, category_status, include_inactive)

@router.get("/categories/tree")
def get_category_tree(parent_id: Optional[str] = Query(None, alias="parentId"), db: Database = Depends(get_db)):
    return catalog.category_tree(db, parent_id)

@router.get("/categories/slug/{slug}")
def get_category_by_slug(slug: str, db: Database = Depends(get_db)):
    return serialize(catalog.get_category_by_slug(db, slug))

@router.get("/categories/{category_id}")
def get_category(category_id: str, db: Database = Depends(get_db)):
    return serialize(catalog.get_category(db, category_id))

@router.post("/categories", status_code=201)
def create_category(body: CategoryCreate, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, "admin")
    return {"message": "Category created successfully", "categoryId": catalog.create_category(db, body)}

@router.put("/categories/{category_id}")
def update_category(category_id: str, body: CategoryUpdate, current_user: dict = Depends(get_current_user),
                    db: Database = Depends(get_db)):
    require_role(current_user, "admin")
    catalog.update_category(db, category_id, body)
    return {"message": "Category updated successfully"}

@router.delete("/categories/{category_id}")
def delete_category(category_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, "admin")
    catalog.delete_category(db, category_id)
    return {"message": "Category deleted successfully"}

@router.put("/categories/{category_id}/order")
def update_category_order(category_id: str, body: CategoryOrderUpdate, current_user: dict = Depends(get_current_user),
                          db: Database = Depends(get_db)):
    require_role(current_user, "admin")
    catalog.set_category_field(db, category_id, "order", body.order)
    return {"message": "Category order updated successfully"}

@router.put("/categories/{category_id}/status")
def update_category_status(category_id: str, body: CategoryStatusUpdate, current_user: dict = Depends(get_current_user),
                           db: Database = Depends(get_db)):
    require_role(current_user, "admin")
    catalog.set_category_field(db, category_id, "status", body.status)
    return {"message": "Category status updated successfully"}


# Products
@router.get("/products")
def list_products(keyword: Optional[str] = None, category_id: Optional[str] = Query(None, alias="categoryId"),
                  vendor_id: Optional[str] = Query(None, alias="vendorId"),
                  min_price: Optional[float] = Query(None, alias="minPrice"),
                  max_price: Optional[float] = Query(None, alias="maxPrice"),
                  product_status: Optional[str] = Query(None, alias="status"), sort: str = "newest",
                  page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), db: Database = Depends(get_db)):
    return catalog.search_products(db, keyword, category_id, vendor_id, min_price, max_price, product_status, sort, page, limit)

@router.get("/products/slug/{slug}")
def get_product_by_slug(slug: str, db: Database = Depends(get_db)):
    return catalog.get_product_by_slug(db, slug)

@router.get("/products/vendor")
def get_my_products(product_status: Optional[str] = Query(None, alias="status"),
                    page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                    current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, "vendor", "admin")
    return catalog.vendor_products(db, users.user_id_of(current_user), product_status, page, limit)

@router.get("/products/vendor/{vendor_id}")
def get_vendor_products(vendor_id: str, product_status: Optional[str] = Query(None, alias="status"),
                        page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                        current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, "vendor", "admin")
    users.check_owner(vendor_id, current_user)
    return catalog.vendor_products(db, vendor_id, product_status, page, limit)

@router.post("/products/reviews", status_code=201)
def create_review(body: ReviewCreate, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"message": "Review created successfully", "reviewId": reviews.create_review(db, current_user, body)}

@router.put("/products/reviews/{review_id}")
def update_review(review_id: str, body: ReviewUpdate, current_user: dict = Depends(get_current_user),
                  db: Database = Depends(get_db)):
    reviews.update_review(db, current_user, review_id, body)
    return {"message": "Review updated successfully"}

@router.delete("/products/reviews/{review_id}")
def delete_review(review_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    reviews.delete_review(db, current_user, review_id)
    return {"message": "Review deleted successfully"}

@router.get("/products/user/{user_id}/reviews")
def get_user_reviews(user_id: str, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                     current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    users.check_owner(user_id, current_user)
    return reviews.user_reviews(db, user_id, page, limit)

@router.get("/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return catalog.product_detail(db, catalog.get_product(db, product_id))

@router.get("/products/{product_id}/reviews")
def get_product_reviews(product_id: str, rating: Optional[int] = Query(None, ge=1, le=5), sort: str = "newest",
                        page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), db: Database = Depends(get_db)):
    return reviews.product_reviews(db, product_id, rating, sort, page, limit)

@router.post("/products", status_code=201)
def create_product(body: ProductCreate, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, "vendor", "admin")
    return {"message": "Product created successfully", "productId": catalog.create_product(db, current_user, body)}

@router.put("/products/{product_id}")
def update_product(product_id: str, body: ProductUpdate, current_user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    require_role(current_user, "vendor", "admin")
    catalog.update_product(db, current_user, product_id, body)
    return {"message": "Product updated successfully"}

@router.delete("/products/{product_id}")
def delete_product(product_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, "vendor", "admin")
    catalog.delete_product(db, current_user, product_id)
    return {"message": "Product deleted successfully"}

@router.put("/products/{product_id}/stock")
def update_product_stock(product_id: str, body: StockAdjustment, current_user: dict = Depends(get_current_user),
                         db: Database = Depends(get_db)):
    require_role(current_user, "vendor", "admin")
    stock = catalog.adjust_stock(db, current_user, product_id, body.quantity)
    return {"message": "Product stock updated successfully", "stock": stock}

@router.put("/products/{product_id}/status")
def update_product_status(product_id: str, body: ProductStatusUpdate, current_user: dict = Depends(get_current_user),
                          db: Database = Depends(get_db)):
    require_role(current_user, "admin")
    catalog.update_product_status(db, product_id, body)
    return {"message": "Product status updated successfully"}


# Cart
@router.get("/cart")
def get_cart(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return carts.get_cart(db, users.user_id_of(current_user))

@router.post("/cart")
def add_to_cart(body: CartItemRequest, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    user_id = users.user_id_of(current_user)
    carts.add_item(db, user_id, body.product_id, body.quantity)
    return {"message": "Item added to cart successfully", "cart": carts.get_cart(db, user_id)}

@router.put("/cart")
def update_cart_item(body: CartItemRequest, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    user_id = users.user_id_of(current_user)
    carts.update_quantity(db, user_id, body.product_id, body.quantity)
    return {"message": "Cart updated successfully", "cart": carts.get_cart(db, user_id)}

@router.get("/cart/validate")
def validate_cart(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    user_id = users.user_id_of(current_user)
    invalid = carts.validate_stock(db, user_id)
    if invalid:
        return JSONResponse(status_code=400, content={"message": orders.STOCK_CONFLICT_MESSAGE, "invalidItems": invalid})
    return {"message": "Cart is valid", "cart": carts.get_cart(db, user_id)}

@router.delete("/cart/{product_id}")
def remove_from_cart(product_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    user_id = users.user_id_of(current_user)
    carts.remove_item(db, user_id, product_id)
    return {"message": "Item removed from cart successfully", "cart": carts.get_cart(db, user_id)}

@router.delete("/cart")
def clear_cart(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    carts.clear_cart(db, users.user_id_of(current_user))
    return {"message": "Cart cleared successfully", "cart": {"items": [], "total": 0}}


# Orders
@router.get("/orders")
def my_orders(user_id: Optional[str] = Query(None, alias="userId"), order_status: Optional[str] = Query(None, alias="status"),
              page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
              current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    user_id = user_id or users.user_id_of(current_user)
    users.check_owner(user_id, current_user)
    return orders.list_orders(db, user_id, order_status, page, limit)

@router.get("/orders/stats")
def order_stats(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, "admin", "vendor")
    vendor_id = users.user_id_of(current_user) if current_user.get("role") == "vendor" else None
    return orders.order_stats(db, vendor_id)

@router.get("/orders/{order_id}")
def order_detail(order_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    order = orders.get_order(db, order_id)
    users.check_owner(order["user_id"], current_user)
    return orders.order_detail(db, order)

@router.post("/orders", status_code=201)
def create_order(body: OrderCreate, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    order_id = orders.create_order(db, users.user_id_of(current_user), body)
    return {"message": "Order created successfully", "orderId": order_id}

@router.put("/orders/{order_id}/status")
def update_order_status(order_id: str, body: OrderStatusUpdate, current_user: dict = Depends(get_current_user),
                        db: Database = Depends(get_db)):
    require_role(current_user, "admin")
    orders.update_status(db, order_id, body.status)
    return {"message": "Order status updated successfully"}

@router.put("/orders/{order_id}/payment")
def update_order_payment(order_id: str, body: PaymentUpdate, current_user: dict = Depends(get_current_user),
                         db: Database = Depends(get_db)):
    orders.update_payment(db, current_user, order_id, body.transaction_id)
    return {"message": "Payment status updated successfully"}

@router.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    orders.cancel_order(db, current_user, order_id)
    return {"message": "Order cancelled successfully"}


# Coupons
@router.post("/coupons/validate")
def validate_coupon(body: CouponValidateRequest, db: Database = Depends(get_db)):
    return coupons.validate_coupon(db, body.code, body.total_amount)

@router.get("/coupons")
def list_coupons(coupon_status: Optional[str] = Query(None, alias="status"), page: int = Query(1, ge=1),
                 limit: int = Query(10, ge=1, le=100), current_user: dict = Depends(get_current_user),
                 db: Database = Depends(get_db)):
    require_role(current_user, "admin")
    return coupons.list_coupons(db, coupon_status, page, limit)

@router.post("/coupons", status_code=201)
def create_coupon(body: CouponCreate, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, "admin")
    return {"message": "Coupon created successfully", "couponId": coupons.create_coupon(db, body)}

@router.put("/coupons/{coupon_id}")
def update_coupon(coupon_id: str, body: CouponCreate, current_user: dict = Depends(get_current_user),
                  db: Database = Depends(get_db)):
    require_role(current_user, "admin")
    coupons.update_coupon(db, coupon_id, body)
    return {"message": "Coupon updated successfully"}

@router.delete("/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, "admin")
    coupons.delete_coupon(db, coupon_id)
    return {"message": "Coupon deleted successfully"}


# Wishlist
@router.get("/wishlist")
def get_wishlist(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                 current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return wishlist.get_wishlist(db, users.user_id_of(current_user), page, limit)

@router.post("/wishlist", status_code=201)
def add_to_wishlist(body: WishlistAdd, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    wishlist.add(db, users.user_id_of(current_user), body.product_id)
    return {"message": "Product added to wishlist successfully"}

@router.get("/wishlist/{product_id}/check")
def check_wishlist(product_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"inWishlist": wishlist.in_wishlist(db, users.user_id_of(current_user), product_id)}

@router.delete("/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    wishlist.remove(db, users.user_id_of(current_user), product_id)
    return {"message": "Product removed from wishlist successfully"}

@router.delete("/wishlist")
def clear_wishlist(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    wishlist.clear(db, users.user_id_of(current_user))
    return {"message": "Wishlist cleared successfully"}


# Chatbot
@router.post("/chatbot/message")
def chatbot_message(body: ChatMessage, chatbot: ChatbotService = Depends(get_chatbot)):
    return {"response": chatbot.generate_response(body.message, body.context)}

@router.post("/chatbot/search")
def chatbot_search(body: ChatSearch, chatbot: ChatbotService = Depends(get_chatbot)):
    return chatbot.search_products(body.query)

@router.get("/chatbot/shipping")
def chatbot_shipping(location: str = Query(..., min_length=1, max_length=100), chatbot: ChatbotService = Depends(get_chatbot)):
    return {"response": chatbot.shipping_inquiry(location)}

@router.get("/chatbot/recommendations/{product_id}")
def chatbot_recommendations(product_id: str, current_user: dict = Depends(get_current_user),
                            chatbot: ChatbotService = Depends(get_chatbot)):
    return {"recommendations": chatbot.recommendations(product_id)}

@router.get("/chatbot/order/{order_id}")
def chatbot_order(order_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db),
                  chatbot: ChatbotService = Depends(get_chatbot)):
    order = orders.get_order(db, order_id)
    users.check_owner(order["user_id"], current_user)
    return {"response": chatbot.order_inquiry(order_id)}


# Error mapping

def _validation_errors(exc: RequestValidationError):
    return [{"field": ".".join(str(part) for part in err["loc"][1:]), "message": err["msg"]} for err in exc.errors()]


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(MarketplaceError)
    async def marketplace_error(request: Request, exc: MarketplaceError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"message": "Validation failed", "errors": _validation_errors(exc)})

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=getattr(exc, "headers", None))

    for error_class in RETRYABLE_ERRORS:
        @app.exception_handler(error_class)
        async def storage_unavailable(request: Request, exc: Exception):
            log.error("Database unavailable on %s %s: %s", request.method, request.url.path, exc)
            return JSONResponse(status_code=503, content={"message": "Service temporarily unavailable"})

    @app.exception_handler(Exception)
    async def internal_error(request: Request, exc: Exception):
        log.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"message": "Internal server error"})


# FastAPI app
def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None,
               mailer: Optional[Mailer] = None, chat_model: Optional[BaseChatModel] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)
    db = database or connect(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db.ensure_indexes()
        users.seed_admin(db, settings)
        yield
        if database is None:
            db.client.close()

    app = FastAPI(title="MultiMart Marketplace API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.db = db
    app.state.mailer = mailer or Mailer.from_settings(settings)
    app.state.chatbot = ChatbotService(db, chat_model if chat_model is not None else build_chat_model(settings))

    install_error_handlers(app)
    app.include_router(router)

    @app.get("/")
    def root():
        return {"message": "Marketplace API running"}

    @app.get("/health")
    def health():
        response = {"backend": "running", "database": "unknown", "collections": []}
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "connected"
        except RETRYABLE_ERRORS as e:
            response["database"] = f"error: {str(e)[:80]}"
        return response

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
