import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError

import database
from auth import (
    authenticate_user,
    ensure_admin,
    get_current_admin,
    get_current_user,
    get_password_hash,
    get_user,
    issue_token,
    register_user,
    set_user_status,
    user_from_token,
)
from catalog import LOW_STOCK_THRESHOLD, ProductCatalog
from chat import ChatBroker, ChatRelay, get_broker
from config import get_settings
from database import ensure_indexes, get_db, now, parse_document
from errors import AppError, AuthenticationError, AuthorizationError, NotFoundError, UpstreamError
from orders import OrderWorkflow
from payments import PaymentGateway, PaymentReconciler, get_payment_gateway
from schemas import OrderStatus, Product, Role, User, UserStatus

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("store")


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes(database.db)
    if settings.admin_email and settings.admin_password:
        ensure_admin(database.db, settings.admin_email, settings.admin_password)
    yield
    database.client.close()


app = FastAPI(title="Store API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=headers)


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.error("Store error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=UpstreamError.status_code, content={"detail": UpstreamError.default_detail})


# Request bodies

class RegisterRequest(BaseModel):
    full_name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=1)
    password: Optional[str] = Field(None, min_length=1)


class UserStatusUpdate(BaseModel):
    status: UserStatus


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., gt=0)
    stock_quantity: int = Field(0, ge=0)
    category: str = Field(..., min_length=1)
    image_url: Optional[str] = None
    is_active: bool = True


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    stock_quantity: Optional[int] = Field(None, ge=0)
    category: Optional[str] = Field(None, min_length=1)
    image_url: Optional[str] = None
    is_active: Optional[bool] = None


class CartLine(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class CheckoutRequest(BaseModel):
    customer_id: Optional[str] = None
    cart_items: List[CartLine]
    shipping_address: str


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    version: Optional[int] = None
    tracking_number: Optional[str] = None


class ChatSend(BaseModel):
    customer_id: str
    sender_id: str
    sender_role: Role
    content: str


# Dependencies

def get_order_workflow(db: Database = Depends(get_db)) -> OrderWorkflow:
    return OrderWorkflow(db)


def get_catalog(db: Database = Depends(get_db)) -> ProductCatalog:
    return ProductCatalog(db)


def get_reconciler(db: Database = Depends(get_db)) -> PaymentReconciler:
    return PaymentReconciler(db)


def get_chat_relay(db: Database = Depends(get_db), broker: ChatBroker = Depends(get_broker)) -> ChatRelay:
    return ChatRelay(db, broker)


def public_user(user: User) -> dict:
    return user.model_dump(exclude={"password_hash"})


def ensure_thread_access(user: User, customer_id: str) -> None:
    if user.role != "admin" and user.id != customer_id:
        raise AuthorizationError("You can only access your own conversation")


@app.get("/")
def read_root():
    return {"name": "Store API", "status": "ok"}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    info = {"backend": "running", "database": "disconnected"}
    try:
        info["collections"] = db.list_collection_names()
        info["database"] = "connected"
    except PyMongoError as e:
        logger.error("Database check failed: %s", e)
        info["error"] = "unavailable"
    return info


# Auth

@app.post("/auth/register")
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    user = register_user(db, payload.full_name, payload.email, payload.password)
    return {
        "message": "Account created successfully! Please wait for admin approval.",
        "user": public_user(user),
    }


@app.post("/auth/token")
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Database = Depends(get_db)):
    user = authenticate_user(db, form_data.username, form_data.password)
    return {"access_token": issue_token(user), "token_type": "bearer", "user": public_user(user)}


@app.get("/me")
async def me(current: User = Depends(get_current_user)):
    return public_user(current)


@app.put("/me")
async def update_me(body: ProfileUpdate, current: User = Depends(get_current_user), db: Database = Depends(get_db)):
    update = {}
    if body.full_name is not None:
        update["full_name"] = body.full_name.strip()
    if body.password is not None:
        update["password_hash"] = get_password_hash(body.password)
    if update:
        update["updated_at"] = now()
        db["user"].update_one({"_id": database.oid(current.id, "User")}, {"$set": update})
    return public_user(get_user(db, current.id))


# Admin: users

@app.get("/admin/users")
async def admin_users(status: Optional[UserStatus] = None, _: User = Depends(get_current_admin), db: Database = Depends(get_db)):
    query = {"status": status} if status else {}
    users = [parse_document(User, d) for d in db["user"].find(query).sort("created_at", -1)]
    return {"users": [public_user(u) for u in users]}


@app.put("/admin/users/{user_id}/status")
async def admin_set_user_status(user_id: str, body: UserStatusUpdate, _: User = Depends(get_current_admin), db: Database = Depends(get_db)):
    return public_user(set_user_status(db, user_id, body.status))


# Products

@app.get("/products")
async def list_products(category: Optional[str] = None, q: Optional[str] = None, page: int = 1, catalog: ProductCatalog = Depends(get_catalog)):
    return catalog.list_products(category=category, q=q, page=page)


@app.get("/products/{product_id}")
async def get_product(product_id: str, catalog: ProductCatalog = Depends(get_catalog)):
    return catalog.get_product(product_id)


@app.get("/admin/products")
async def admin_products(category: Optional[str] = None, q: Optional[str] = None, page: int = 1, _: User = Depends(get_current_admin), catalog: ProductCatalog = Depends(get_catalog)):
    return catalog.list_products(category=category, q=q, page=page, include_inactive=True)


@app.post("/admin/products")
async def create_product(body: ProductCreate, _: User = Depends(get_current_admin), catalog: ProductCatalog = Depends(get_catalog)):
    return catalog.create_product(Product(**body.model_dump()))


@app.put("/admin/products/{product_id}")
async def update_product(product_id: str, body: ProductUpdate, _: User = Depends(get_current_admin), catalog: ProductCatalog = Depends(get_catalog)):
    return catalog.update_product(product_id, body.model_dump(exclude_unset=True))


@app.delete("/admin/products/{product_id}")
async def delete_product(product_id: str, _: User = Depends(get_current_admin), catalog: ProductCatalog = Depends(get_catalog)):
    return catalog.delete_product(product_id)


# Checkout

@app.post("/checkout")
def checkout(
    body: CheckoutRequest,
    current: User = Depends(get_current_user),
    workflow: OrderWorkflow = Depends(get_order_workflow),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    if body.customer_id and body.customer_id != current.id:
        raise AuthorizationError("Cannot check out for another customer")
    order = workflow.create_order(current.id, [line.model_dump() for line in body.cart_items], body.shipping_address)
    try:
        session = gateway.create_checkout_session(order)
    except UpstreamError:
        workflow.update_status(order.id, "cancelled")
        raise
    return {"id": session["id"], "url": session["url"], "order_id": order.id}


@app.get("/checkout/verify")
def verify_checkout(session_id: str, _: User = Depends(get_current_user), gateway: PaymentGateway = Depends(get_payment_gateway)):
    return {"paid": gateway.is_session_paid(session_id)}


@app.post("/stripe-webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    payload = await request.body()
    event = gateway.verify_event(payload, stripe_signature or "")
    return reconciler.handle_payment_confirmed(event)


# Orders

@app.get("/orders")
async def my_orders(page: int = 1, current: User = Depends(get_current_user), workflow: OrderWorkflow = Depends(get_order_workflow)):
    return workflow.list_orders(customer_id=current.id, page=page)


@app.get("/orders/{order_id}")
async def order_detail(order_id: str, current: User = Depends(get_current_user), workflow: OrderWorkflow = Depends(get_order_workflow)):
    order = workflow.get_order(order_id)
    if order.customer_id != current.id and current.role != "admin":
        raise NotFoundError("Order not found")
    return order


@app.get("/admin/orders")
async def admin_orders(
    status: Optional[OrderStatus] = None,
    q: Optional[str] = None,
    customer_id: Optional[str] = None,
    page: int = 1,
    _: User = Depends(get_current_admin),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    return workflow.list_orders(customer_id=customer_id, status=status, search=q, page=page)


@app.put("/admin/orders/{order_id}/status")
async def admin_update_order_status(order_id: str, body: OrderStatusUpdate, _: User = Depends(get_current_admin), workflow: OrderWorkflow = Depends(get_order_workflow)):
    return workflow.update_status(order_id, body.status, expected_version=body.version, tracking_number=body.tracking_number)


# Chat

@app.post("/chat")
async def send_chat(body: ChatSend, current: User = Depends(get_current_user), relay: ChatRelay = Depends(get_chat_relay)):
    if body.sender_id != current.id or body.sender_role != current.role:
        raise AuthorizationError("Sender does not match the signed-in user")
    ensure_thread_access(current, body.customer_id)
    return relay.post_message(body.customer_id, body.sender_id, body.sender_role, body.content)


@app.get("/chat/threads")
async def chat_threads(page: int = 1, _: User = Depends(get_current_admin), relay: ChatRelay = Depends(get_chat_relay)):
    return relay.list_threads(page)


@app.get("/chat/threads/{customer_id}/messages")
async def chat_messages(customer_id: str, current: User = Depends(get_current_user), relay: ChatRelay = Depends(get_chat_relay)):
    ensure_thread_access(current, customer_id)
    return {"messages": relay.list_messages(customer_id)}


@app.post("/chat/threads/{customer_id}/read")
async def chat_mark_read(customer_id: str, current: User = Depends(get_current_user), relay: ChatRelay = Depends(get_chat_relay)):
    ensure_thread_access(current, customer_id)
    return {"updated": relay.mark_read(customer_id, current.role)}


@app.websocket("/chat/threads/{customer_id}/live")
async def chat_live(websocket: WebSocket, customer_id: str, token: str = "", db: Database = Depends(get_db), broker: ChatBroker = Depends(get_broker)):
    try:
        user = user_from_token(db, token)
        ensure_thread_access(user, customer_id)
    except AppError as e:
        logger.info("Rejected live chat connection for %s: %s", customer_id, e.detail)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    # subscribe before accepting so nothing posted after the handshake is missed
    subscription = ChatRelay(db, broker).subscribe(customer_id)
    await websocket.accept()

    async def forward():
        async for event in subscription:
            await websocket.send_json(event.model_dump(mode="json"))

    sender = asyncio.create_task(forward())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        subscription.close()
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)


# Dashboard

@app.get("/admin/stats")
async def admin_stats(_: User = Depends(get_current_admin), db: Database = Depends(get_db), broker: ChatBroker = Depends(get_broker)):
    revenue = sum(p["amount"] for p in db["payment"].find({"status": "completed"}, {"amount": 1}))
    if not revenue:
        paid = db["order"].find({"status": {"$in": ["processing", "shipped", "delivered"]}}, {"total_amount": 1})
        revenue = sum(o["total_amount"] for o in paid)
    return {
        "products": db["product"].count_documents({}),
        "low_stock_products": db["product"].count_documents({"stock_quantity": {"$lt": LOW_STOCK_THRESHOLD}}),
        "orders": db["order"].count_documents({}),
        "pending_orders": db["order"].count_documents({"status": "pending"}),
        "customers": db["user"].count_documents({"role": "customer"}),
        "revenue": round(revenue, 2),
        "unread_messages": ChatRelay(db, broker).unread_count(),
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
