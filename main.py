import logging
import re
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import create_token, get_current_user, hash_password, require_admin, verify_password
from config import ADMIN_EMAIL, ADMIN_PASSWORD, CORS_ORIGINS, LOG_LEVEL, PORT, SEED_ENABLED
from database import (
    db, create_document, ensure_indexes, get_document, get_documents,
    serialize, to_object_id, update_document, utcnow,
)
from pricing import (
    CouponError, cart_totals, check_coupon, check_status_change,
    is_currently_valid, item_count, order_totals, round2,
)
from schemas import (
    ORDER_STATUSES, Cart, CartAddRequest, CartUpdateRequest, Coupon, CouponUpdate,
    CouponValidateRequest, LoginRequest, Order, OrderCreateRequest, OrderItem, Product,
    ProductUpdate, ProfileUpdate, RegisterRequest, SeedRequest, StatusUpdateRequest, User,
)

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes()
    else:
        logger.warning("DATABASE_URL not set, running without a database")
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["Content-Type", "Authorization"],
)

# ---------- Errors ----------

def validation_message(errors) -> str:
    """First pydantic error as a readable sentence."""
    if not errors:
        return "Invalid request"
    err = errors[0]
    msg = err.get("msg", "Invalid value")
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    loc = [str(part) for part in err.get("loc", ()) if part != "body"]
    return f"{'.'.join(loc)}: {msg}" if loc else msg


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error(request: Request, exc: RequestValidationError):
    message = validation_message(exc.errors())
    logger.warning("Rejected %s %s: %s", request.method, request.url.path, message)
    return JSONResponse(status_code=400, content={"success": False, "message": message})


@app.exception_handler(Exception)
async def server_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Server Error"})

# ---------- Helpers ----------

def oid(id_str: str) -> ObjectId:
    _id = to_object_id(id_str)
    if _id is None:
        raise HTTPException(status_code=400, detail="Invalid id")
    return _id


def ok(data=None, **extra) -> Dict:
    resp = {"success": True, "data": data}
    resp.update(extra)
    return resp


def public_user(user: Dict) -> Dict:
    return {
        "id": str(user["_id"]),
        "name": user["name"],
        "email": user["email"],
        "role": user.get("role", "user"),
    }

# ---------- Health ----------

@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/api/health")
def health():
    resp = {
        "status": "OK",
        "message": "Backend is running!",
        "database": "not available",
        "collections": [],
    }
    try:
        if db is not None:
            resp["database"] = "connected"
            resp["database_name"] = db.name
            resp["collections"] = db.list_collection_names()
    except Exception as e:
        logger.warning("Database health check failed: %s", e)
        resp["database"] = f"error: {str(e)[:80]}"
    return resp

# ---------- Seed Data ----------

SAMPLE_PRODUCTS = [
    {
        "name": "Wireless Noise-Cancelling Headphones",
        "description": "Over-ear headphones with 30 hours of battery life.",
        "price": 7999.0,
        "category": "Electronics",
        "image": "https://images.unsplash.com/photo-1505740420928-5e560c06d30e",
        "stock": 25,
    },
    {
        "name": "Smart Fitness Band",
        "description": "Heart-rate, sleep and step tracking with a colour display.",
        "price": 2499.0,
        "category": "Electronics",
        "image": "https://images.unsplash.com/photo-1575311373937-040b8e1fd5b6",
        "stock": 40,
    },
    {
        "name": "Classic Denim Jacket",
        "description": "Stonewashed denim jacket with a relaxed fit.",
        "price": 1899.0,
        "category": "Fashion",
        "image": "https://images.unsplash.com/photo-1551537482-f2075a1d41f2",
        "stock": 30,
    },
    {
        "name": "Leather Sneakers",
        "description": "Minimal white sneakers in full-grain leather.",
        "price": 3299.0,
        "category": "Fashion",
        "image": "https://images.unsplash.com/photo-1549298916-b41d501d3772",
        "stock": 18,
    },
    {
        "name": "The Pragmatic Programmer",
        "description": "20th anniversary edition, paperback.",
        "price": 699.0,
        "category": "Books",
        "image": "https://images.unsplash.com/photo-1544716278-ca5e3f4abd8c",
        "stock": 50,
    },
]


@app.post("/api/seed")
def seed(req: SeedRequest):
    if not SEED_ENABLED:
        raise HTTPException(404, "Not Found")

    seeded_admin = False
    if ADMIN_EMAIL and ADMIN_PASSWORD and not db["user"].find_one({"email": ADMIN_EMAIL.lower()}):
        admin = User(name="Admin", email=ADMIN_EMAIL, password_hash=hash_password(ADMIN_PASSWORD), role="admin")
        create_document("user", admin)
        seeded_admin = True

    # Only seed products if empty or force=True
    if not req.force and db["product"].count_documents({}) > 0:
        return {"status": "ok", "message": "Already seeded", "admin": seeded_admin}

    db["product"].delete_many({})
    for p in SAMPLE_PRODUCTS:
        create_document("product", Product(**p))

    logger.info("Seeded %d products", len(SAMPLE_PRODUCTS))
    return {"status": "ok", "seeded": len(SAMPLE_PRODUCTS), "admin": seeded_admin}

# ---------- Auth ----------

@app.post("/api/auth/register", status_code=201)
def register(req: RegisterRequest):
    email = req.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(400, "User already exists")

    try:
        user_id = create_document("user", User(name=req.name, email=email, password_hash=hash_password(req.password)))
    except DuplicateKeyError:
        raise HTTPException(400, "User already exists")
    user = get_document("user", user_id)
    logger.info("Registered user %s", user_id)
    return ok({"token": create_token(user_id), "user": public_user(user)})


@app.post("/api/auth/login")
def login(req: LoginRequest):
    user = db["user"].find_one({"email": req.email.lower()})
    if not user or not verify_password(req.password, user.get("password_hash", "")):
        logger.warning("Failed login for %s", req.email)
        raise HTTPException(401, "Invalid email or password")
    return ok({"token": create_token(str(user["_id"])), "user": public_user(user)})


@app.get("/api/auth/profile")
def get_profile(user: Dict = Depends(get_current_user)):
    return ok(public_user(user))


@app.put("/api/auth/profile")
def update_profile(req: ProfileUpdate, user: Dict = Depends(get_current_user)):
    changes = {}
    if req.name:
        changes["name"] = req.name
    if req.email and req.email.lower() != user["email"]:
        email = req.email.lower()
        if db["user"].find_one({"email": email, "_id": {"$ne": user["_id"]}}):
            raise HTTPException(400, "Email already in use")
        changes["email"] = email
    if req.password:
        changes["password_hash"] = hash_password(req.password)

    if changes:
        try:
            user = update_document("user", str(user["_id"]), changes)
        except DuplicateKeyError:
            raise HTTPException(400, "Email already in use")
    return ok({"token": create_token(str(user["_id"])), "user": public_user(user)})

# ---------- Categories ----------

@app.get("/api/categories")
def list_categories():
    return ok(sorted(c for c in db["product"].distinct("category") if c))

# ---------- Products ----------

@app.get("/api/products")
def list_products(
    category: Optional[str] = None,
    search: Optional[str] = None,
):
    filt = {}
    if category and category != "All":
        filt["category"] = category
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"description": pattern}]
    products = get_documents("product", filt, sort=[("created_at", DESCENDING)])
    return ok(serialize(products), count=len(products))


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    doc = db["product"].find_one({"_id": oid(product_id)})
    if not doc:
        raise HTTPException(404, "Product not found")
    return ok(serialize(doc))


@app.post("/api/products", status_code=201)
def create_product(product: Product, admin: Dict = Depends(require_admin)):
    product_id = create_document("product", product)
    logger.info("Product %s created by %s", product_id, admin["_id"])
    return ok(serialize(get_document("product", product_id)))


@app.put("/api/products/{product_id}")
def update_product(product_id: str, req: ProductUpdate, admin: Dict = Depends(require_admin)):
    if not db["product"].find_one({"_id": oid(product_id)}):
        raise HTTPException(404, "Product not found")
    changes = req.model_dump(exclude_unset=True, exclude_none=True)
    doc = update_document("product", product_id, changes)
    return ok(serialize(doc))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, admin: Dict = Depends(require_admin)):
    result = db["product"].delete_one({"_id": oid(product_id)})
    if result.deleted_count == 0:
        raise HTTPException(404, "Product not found")
    logger.info("Product %s deleted by %s", product_id, admin["_id"])
    return {"success": True, "message": "Product deleted successfully"}

# ---------- Search ----------

@app.get("/api/search")
def search_products(q: str = Query("")):
    if not q:
        return ok([])
    docs = db["product"].find({"name": {"$regex": re.escape(q), "$options": "i"}}).limit(10)
    return ok(serialize(list(docs)))

# ---------- Cart ----------

def _user_cart(user: Dict, create: bool = True) -> Optional[Dict]:
    user_id = str(user["_id"])
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart and create:
        create_document("cart", Cart(user_id=user_id))
        cart = db["cart"].find_one({"user_id": user_id})
    return cart


def _populate_cart(cart: Dict) -> Dict:
    """Cart with product documents in place of ids; lines for deleted products drop out."""
    items = []
    for it in cart.get("items", []):
        product = get_document("product", it["product_id"])
        if product:
            items.append({"product": serialize(product), "quantity": it["quantity"]})
    out = serialize(cart)
    out["items"] = items
    out.update(cart_totals(items))
    return out


def _save_cart(cart: Dict, items: List[Dict]) -> Dict:
    return _populate_cart(update_document("cart", str(cart["_id"]), {"items": items}))


def _stock_error(product: Dict):
    return HTTPException(400, f"Only {product['stock']} units available in stock")


@app.get("/api/cart")
def get_cart(user: Dict = Depends(get_current_user)):
    return ok(_populate_cart(_user_cart(user)))


@app.post("/api/cart")
def cart_add(req: CartAddRequest, user: Dict = Depends(get_current_user)):
    product = db["product"].find_one({"_id": oid(req.product_id)})
    if not product:
        raise HTTPException(404, "Product not found")

    cart = _user_cart(user)
    items = cart.get("items", [])
    for it in items:
        if it["product_id"] == req.product_id:
            quantity = it["quantity"] + req.quantity
            if quantity > product["stock"]:
                raise _stock_error(product)
            it["quantity"] = quantity
            break
    else:
        if req.quantity > product["stock"]:
            raise _stock_error(product)
        items.append({"product_id": req.product_id, "quantity": req.quantity})

    return ok(_save_cart(cart, items))


@app.put("/api/cart")
def cart_update(req: CartUpdateRequest, user: Dict = Depends(get_current_user)):
    cart = _user_cart(user, create=False)
    if not cart:
        raise HTTPException(404, "Cart not found")

    items = cart.get("items", [])
    index = next((i for i, it in enumerate(items) if it["product_id"] == req.product_id), None)
    if index is None:
        raise HTTPException(404, "Item not found in cart")

    if req.quantity <= 0:
        items.pop(index)
    else:
        product = db["product"].find_one({"_id": oid(req.product_id)})
        if not product:
            raise HTTPException(404, "Product not found")
        if req.quantity > product["stock"]:
            raise _stock_error(product)
        items[index]["quantity"] = req.quantity

    return ok(_save_cart(cart, items))


@app.delete("/api/cart/{product_id}")
def cart_remove(product_id: str, user: Dict = Depends(get_current_user)):
    cart = _user_cart(user, create=False)
    if not cart:
        raise HTTPException(404, "Cart not found")
    items = [it for it in cart.get("items", []) if it["product_id"] != product_id]
    if len(items) == len(cart.get("items", [])):
        raise HTTPException(404, "Item not found in cart")
    return ok(_save_cart(cart, items))

# ---------- Coupons ----------

def _coupon_products(coupon: Dict, fields=("name", "price")) -> List[Dict]:
    out = []
    for product_id in coupon.get("applicable_products", []):
        product = get_document("product", product_id)
        if product:
            out.append({"id": product_id, **{f: product.get(f) for f in fields}})
    return out


def _coupon_fields(doc: Dict) -> Dict:
    return {k: v for k, v in doc.items() if k not in ("_id", "created_at", "updated_at")}


@app.post("/api/coupons", status_code=201)
def create_coupon(coupon: Coupon, admin: Dict = Depends(require_admin)):
    if db["coupon"].find_one({"code": coupon.code}):
        raise HTTPException(400, "Coupon code already exists")
    try:
        coupon_id = create_document("coupon", coupon)
    except DuplicateKeyError:
        raise HTTPException(400, "Coupon code already exists")
    logger.info("Coupon %s created by %s", coupon.code, admin["_id"])
    return ok(serialize(get_document("coupon", coupon_id)))


@app.get("/api/coupons")
def list_coupons(admin: Dict = Depends(require_admin)):
    coupons = []
    for doc in get_documents("coupon", sort=[("created_at", DESCENDING)]):
        out = serialize(doc)
        out["applicable_products"] = _coupon_products(doc)
        coupons.append(out)
    return ok(coupons, count=len(coupons))


@app.get("/api/coupons/active/list")
def list_active_coupons():
    now = utcnow()
    coupons = [
        serialize({k: v for k, v in doc.items() if k != "applicable_products"})
        for doc in get_documents("coupon", {"is_active": True}, sort=[("created_at", DESCENDING)])
        if is_currently_valid(doc, now)
    ]
    return ok(coupons, count=len(coupons))


@app.post("/api/coupons/validate")
def validate_coupon(req: CouponValidateRequest, user: Dict = Depends(get_current_user)):
    coupon = db["coupon"].find_one({"code": req.code.upper()})

    lines = [line.model_dump() for line in req.cart_items] if req.cart_items is not None else None
    cart_total = req.cart_total
    if lines is None or cart_total is None:
        cart = _populate_cart(_user_cart(user))
        if lines is None:
            lines = [{"product_id": it["product"]["id"], "category": it["product"]["category"]}
                     for it in cart["items"]]
        if cart_total is None:
            cart_total = cart["cart_total"]

    try:
        quote = check_coupon(coupon, cart_total, lines)
    except CouponError as exc:
        logger.info("Coupon %s rejected for %s: %s", req.code, user["_id"], exc)
        raise HTTPException(400, str(exc))
    return ok(quote)


@app.get("/api/coupons/{coupon_id}")
def get_coupon(coupon_id: str, admin: Dict = Depends(require_admin)):
    doc = db["coupon"].find_one({"_id": oid(coupon_id)})
    if not doc:
        raise HTTPException(404, "Coupon not found")
    out = serialize(doc)
    out["applicable_products"] = _coupon_products(doc, fields=("name", "price", "category"))
    return ok(out)


@app.put("/api/coupons/{coupon_id}")
def update_coupon(coupon_id: str, req: CouponUpdate, admin: Dict = Depends(require_admin)):
    _id = oid(coupon_id)
    doc = db["coupon"].find_one({"_id": _id})
    if not doc:
        raise HTTPException(404, "Coupon not found")

    merged = {**_coupon_fields(doc), **req.model_dump(exclude_unset=True)}
    try:
        coupon = Coupon(**merged)
    except ValidationError as exc:
        raise HTTPException(400, validation_message(exc.errors()))

    if db["coupon"].find_one({"code": coupon.code, "_id": {"$ne": _id}}):
        raise HTTPException(400, "Coupon code already exists")

    try:
        updated = update_document("coupon", coupon_id, coupon.model_dump())
    except DuplicateKeyError:
        raise HTTPException(400, "Coupon code already exists")
    return ok(serialize(updated))


@app.delete("/api/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, admin: Dict = Depends(require_admin)):
    result = db["coupon"].delete_one({"_id": oid(coupon_id)})
    if result.deleted_count == 0:
        raise HTTPException(404, "Coupon not found")
    return {"success": True, "message": "Coupon deleted successfully"}

# ---------- Orders ----------

def _order_out(order: Dict, user: Optional[Dict] = None) -> Dict:
    out = serialize(order)
    out["item_count"] = item_count(order)
    if user:
        out["user"] = {"id": str(user["_id"]), "name": user["name"], "email": user["email"]}
    return out


@app.post("/api/orders", status_code=201)
def create_order(req: OrderCreateRequest, user: Dict = Depends(get_current_user)):
    if not req.order_items:
        raise HTTPException(400, "No order items provided")
    if req.shipping_address is None or not req.shipping_address.is_complete():
        raise HTTPException(400, "Complete shipping address is required")
    if req.payment_method is None:
        raise HTTPException(400, "Payment method is required")

    snapshot = []
    lines = []
    requested = {}
    for item in req.order_items:
        product = get_document("product", item.product_id)
        if not product:
            raise HTTPException(404, f'Product "{item.name}" not found')
        # repeated lines for one product share its stock
        requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity
        if product["stock"] < requested[item.product_id]:
            raise HTTPException(
                400,
                f'Insufficient stock for "{product["name"]}". Only {product["stock"]} unit(s) available',
            )
        if round2(product["price"]) != round2(item.price):
            raise HTTPException(400, f'Price for "{product["name"]}" has changed. Please refresh your cart')
        snapshot.append(OrderItem(
            product_id=item.product_id,
            name=product["name"],
            image=product["image"],
            price=product["price"],
            quantity=item.quantity,
        ))
        lines.append({"product_id": item.product_id, "category": product["category"]})

    subtotal = sum(i.price * i.quantity for i in snapshot)
    coupon = None
    discount = 0.0
    if req.coupon_code:
        coupon = db["coupon"].find_one({"code": req.coupon_code.strip().upper()})
        try:
            discount = check_coupon(coupon, subtotal, lines)["discount_amount"]
        except CouponError as exc:
            raise HTTPException(400, str(exc))

    order = Order(
        user_id=str(user["_id"]),
        order_items=snapshot,
        shipping_address=req.shipping_address,
        payment_method=req.payment_method,
        coupon_code=coupon["code"] if coupon else None,
        **order_totals(subtotal, discount),
    )
    order_id = create_document("order", order)

    # Not atomic: each write below can fail on its own.
    now = utcnow()
    for item in snapshot:
        db["product"].update_one(
            {"_id": oid(item.product_id)},
            {"$inc": {"stock": -item.quantity}, "$set": {"updated_at": now}},
        )
    db["cart"].update_one({"user_id": str(user["_id"])}, {"$set": {"items": [], "updated_at": now}})
    if coupon:
        db["coupon"].update_one({"_id": coupon["_id"]}, {"$inc": {"used_count": 1}})

    logger.info("Order %s placed by %s (total %.2f)", order_id, user["_id"], order.total_amount)
    return ok(_order_out(get_document("order", order_id)), message="Order placed successfully")


@app.get("/api/orders")
def list_orders(admin: Dict = Depends(require_admin)):
    users = {}
    orders = []
    for doc in get_documents("order", sort=[("created_at", DESCENDING)]):
        uid = doc["user_id"]
        if uid not in users:
            users[uid] = get_document("user", uid)
        orders.append(_order_out(doc, users[uid]))
    return ok(orders, count=len(orders))


@app.get("/api/orders/user")
def list_user_orders(user: Dict = Depends(get_current_user)):
    docs = get_documents("order", {"user_id": str(user["_id"])}, sort=[("created_at", DESCENDING)])
    return ok([_order_out(d) for d in docs], count=len(docs))


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: Dict = Depends(get_current_user)):
    order = db["order"].find_one({"_id": oid(order_id)})
    if not order or (order["user_id"] != str(user["_id"]) and user.get("role") != "admin"):
        raise HTTPException(404, "Order not found")
    return ok(_order_out(order))


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, req: StatusUpdateRequest, admin: Dict = Depends(require_admin)):
    status = req.status
    if not status:
        raise HTTPException(400, "Status is required")
    if status not in ORDER_STATUSES:
        raise HTTPException(400, f"Invalid status. Must be one of: {', '.join(ORDER_STATUSES)}")

    order = db["order"].find_one({"_id": oid(order_id)})
    if not order:
        raise HTTPException(404, "Order not found")
    try:
        check_status_change(order["order_status"])
    except ValueError as exc:
        raise HTTPException(400, str(exc))

    changes = {"order_status": status}
    if status == "Delivered":
        changes["is_delivered"] = True
        changes["delivered_at"] = utcnow()
    if status == "Cancelled":
        for item in order["order_items"]:
            db["product"].update_one({"_id": oid(item["product_id"])}, {"$inc": {"stock": item["quantity"]}})

    updated = update_document("order", order_id, changes)
    logger.info("Order %s: %s -> %s", order_id, order["order_status"], status)
    return ok(
        _order_out(updated, get_document("user", updated["user_id"])),
        message=f"Order status updated to {status}",
    )


@app.put("/api/orders/{order_id}/pay")
def mark_order_paid(order_id: str, admin: Dict = Depends(require_admin)):
    order = db["order"].find_one({"_id": oid(order_id)})
    if not order:
        raise HTTPException(404, "Order not found")
    if order.get("is_paid"):
        raise HTTPException(400, "Order is already paid")
    updated = update_document("order", order_id, {
        "is_paid": True,
        "paid_at": utcnow(),
        "payment_status": "Paid",
    })
    return ok(_order_out(updated), message="Order marked as paid")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
