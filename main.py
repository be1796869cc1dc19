import hashlib
import logging
import re
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
from dotenv import load_dotenv
from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Header, HTTPException, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from passlib.context import CryptContext
from pydantic import EmailStr, Field, ValidationError
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

load_dotenv()

import database  # noqa: E402
from database import create_document, ensure_indexes, get_documents, now, serialize_doc, to_object_id  # noqa: E402
from notifications import DeferredNotifier, WhatsAppNotifier  # noqa: E402
from orders import OrderError, OrderWorkflow  # noqa: E402
from schemas import (  # noqa: E402
    DEFAULT_PRODUCT_IMAGE,
    DEFAULT_PROFILE_IMAGE,
    BusinessType,
    Category,
    Document,
    ItemStatus,
    PaymentMethod,
    Product,
    PyObjectId,
    Rating,
    Role,
    User,
    average_rating,
)
from uploads import (  # noqa: E402
    UploadedImage,
    UploadFailed,
    delete_image,
    remove_temp_file,
    run_prediction,
    save_upload,
    upload_image,
)

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("plantify")

# Security
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret_change_me")
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", "1440"))
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").lower() == "true"
RESET_TOKEN_EXP_MIN = int(os.getenv("RESET_TOKEN_EXP_MIN", "10"))

# Configuration
SERVICE_NAME = os.getenv("SERVICE_NAME", "Plantify")
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")
MAX_PRODUCT_IMAGES = 5

app = FastAPI(title="Plantify API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in ALLOWED_ORIGINS] if ALLOWED_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

whatsapp = WhatsAppNotifier()


# Error handlers
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "form"))
        messages.append(f"{field}: {err.get('msg')}" if field else err.get("msg"))
    return JSONResponse(status_code=400, content={"success": False, "message": "; ".join(messages)})


@app.exception_handler(OrderError)
async def order_exception_handler(request: Request, exc: OrderError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


def validation_message(exc: ValidationError) -> str:
    return "; ".join(err["msg"].removeprefix("Value error, ") for err in exc.errors())


def media_error(exc: UploadFailed, message: str) -> HTTPException:
    status = 502 if exc.failure.kind == "upstream_error" else exc.failure.status_code
    return HTTPException(status_code=status, detail=message)


# Dependencies
def get_db() -> Database:
    if database.db is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return database.db


def get_notifier():
    return whatsapp


def get_order_workflow(background_tasks: BackgroundTasks, db: Database = Depends(get_db),
                       notifier=Depends(get_notifier)) -> OrderWorkflow:
    return OrderWorkflow(db, DeferredNotifier(notifier, background_tasks))


# Auth utilities
def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_token(user_doc: Dict[str, Any]) -> str:
    issued = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_doc["_id"]),
        "role": user_doc.get("role", "buyer"),
        "iat": issued,
        "exp": issued + timedelta(minutes=JWT_EXP_MIN),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Not authorized, token invalid or expired.")


def get_current_user(request: Request, authorization: Optional[str] = Header(default=None),
                     db: Database = Depends(get_db)) -> Dict[str, Any]:
    token = None
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            token = credentials.strip()
    if not token:
        token = request.cookies.get("token")
    if not token:
        raise HTTPException(status_code=401, detail="Not authorized, token missing.")
    payload = decode_token(token)
    user = db["user"].find_one({"_id": to_object_id(payload.get("sub"))})
    if not user:
        raise HTTPException(status_code=401, detail="User not found.")
    return user


def require_role(user: Dict[str, Any], roles: List[str]):
    if user.get("role") not in roles:
        raise HTTPException(status_code=403, detail="Access denied")


def require_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Access denied, admin only.")
    return user


def user_out(user: Dict[str, Any]) -> Dict[str, Any]:
    hidden = {"passwordHash", "resetPasswordToken", "resetPasswordExpire"}
    return serialize_doc({k: v for k, v in user.items() if k not in hidden})


# Health
@app.get("/")
def root():
    return {"name": SERVICE_NAME, "status": "ok", "message": "Plantify Backend is running!"}


@app.get("/test")
def test_database():
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_url": "Set" if os.getenv("DATABASE_URL") else "Not Set",
        "database_name": "Set" if os.getenv("DATABASE_NAME") else "Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is None:
        return response
    try:
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "Connected & Working"
        response["connection_status"] = "Connected"
    except Exception as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = f"Error: {str(e)[:80]}"
    return response


@app.on_event("startup")
def create_indexes():
    if database.db is None:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, running without a database")
        return
    try:
        ensure_indexes(database.db)
    except Exception as e:
        logger.warning("Could not create indexes: %s", e)


# Users
class RegisterDTO(Document):
    name: str = Field(..., min_length=2)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Optional[Role] = None


class LoginDTO(Document):
    email: EmailStr
    password: str


class ProfileUpdateDTO(Document):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    shop_name: Optional[str] = None
    business_type: Optional[BusinessType] = None
    gst_number: Optional[str] = None


class ForgotPasswordDTO(Document):
    email: EmailStr


class ResetPasswordDTO(Document):
    password: Optional[str] = None
    confirm_password: Optional[str] = None


class RoleUpdateDTO(Document):
    role: Optional[Role] = None


@app.post("/api/v1/users/register", status_code=201)
def register(data: RegisterDTO, db: Database = Depends(get_db)):
    email = data.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="An account with this email already exists. Please login.")
    role = data.role or "buyer"
    if role == "admin":
        raise HTTPException(status_code=403, detail="Admin accounts cannot be self-registered")
    user = User(name=data.name, email=email, password_hash=hash_password(data.password), role=role)
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="An account with this email already exists. Please login.")
    logger.info("Registered %s user %s", role, user_id)
    return {
        "success": True,
        "message": "User registered successfully.",
        "user": {"id": user_id, "name": user.name, "email": user.email, "role": user.role},
    }


@app.post("/api/v1/users/login")
def login(data: LoginDTO, response: Response, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": data.email.lower()})
    if not user:
        raise HTTPException(status_code=400, detail="Email not registered. Please sign up first.")
    if not verify_password(data.password, user.get("passwordHash", "")):
        raise HTTPException(status_code=400, detail="Invalid email or password.")
    token = create_token(user)
    response.set_cookie(
        "token", token, httponly=True, secure=COOKIE_SECURE, samesite="strict", max_age=JWT_EXP_MIN * 60
    )
    return {
        "success": True,
        "message": "User logged in successfully.",
        "user": {
            "id": str(user["_id"]),
            "name": user["name"],
            "email": user["email"],
            "role": user.get("role", "buyer"),
            "profileImageId": user.get("profileImageId"),
        },
        "token": token,
    }


@app.post("/api/v1/users/logout")
def logout(response: Response):
    response.delete_cookie("token", httponly=True, secure=COOKIE_SECURE, samesite="strict")
    return {"success": True, "message": "Logged out successfully."}


@app.get("/api/v1/users/profile")
def get_profile(user: Dict[str, Any] = Depends(get_current_user)):
    profile = {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "role": user.get("role", "buyer"),
        "profileImage": user.get("profileImage") or DEFAULT_PROFILE_IMAGE,
        "phone": user.get("phone") or "N/A",
    }
    return {"success": True, "user": profile}


@app.put("/api/v1/users/profile")
def update_profile(data: ProfileUpdateDTO, user: Dict[str, Any] = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    changes = data.model_dump(by_alias=True, exclude_unset=True)
    try:
        updated = User.model_validate({**user, **changes})
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=validation_message(exc))
    fields = updated.model_dump(by_alias=True, include=set(data.model_fields_set))
    fields["isProfileComplete"] = updated.profile_is_complete()
    fields["updatedAt"] = now()
    db["user"].update_one({"_id": user["_id"]}, {"$set": fields})
    return {
        "success": True,
        "message": "Profile updated successfully. Profile completion status updated.",
        "user": user_out(db["user"].find_one({"_id": user["_id"]})),
    }


@app.put("/api/v1/users/profile/upload")
def upload_profile_image(profileImage: Optional[UploadFile] = File(None),
                         user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    if profileImage is None:
        raise HTTPException(status_code=400, detail="No file uploaded")
    path = save_upload(profileImage)
    try:
        image = upload_image(path, "profileImages")
    except UploadFailed as exc:
        raise media_error(exc, "Profile image upload failed")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"profileImage": image.url, "profileImageId": image.public_id, "updatedAt": now()}},
    )
    return {"success": True, "user": user_out(db["user"].find_one({"_id": user["_id"]}))}


@app.post("/api/v1/users/forgot-password")
def forgot_password(data: ForgotPasswordDTO, request: Request, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": data.email.lower()})
    if not user:
        raise HTTPException(status_code=404, detail="User not found with this email.")
    reset_token = secrets.token_hex(20)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {
        "resetPasswordToken": hashlib.sha256(reset_token.encode()).hexdigest(),
        "resetPasswordExpire": now() + timedelta(minutes=RESET_TOKEN_EXP_MIN),
    }})
    reset_url = f"{str(request.base_url).rstrip('/')}/api/v1/users/reset-password/{reset_token}"
    return {"success": True, "message": "Password reset token generated successfully.", "resetUrl": reset_url}


@app.put("/api/v1/users/reset-password/{token}")
def reset_password(token: str, data: ResetPasswordDTO, db: Database = Depends(get_db)):
    if not data.password or not data.confirm_password:
        raise HTTPException(status_code=400, detail="Password and confirmation are required.")
    if data.password != data.confirm_password:
        raise HTTPException(status_code=400, detail="Passwords do not match.")
    if len(data.password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters long")
    hashed = hashlib.sha256(token.encode()).hexdigest()
    user = db["user"].find_one({"resetPasswordToken": hashed})
    expire = (user or {}).get("resetPasswordExpire")
    if expire is not None and expire.tzinfo is None:
        expire = expire.replace(tzinfo=timezone.utc)
    if not user or expire is None or expire <= now():
        raise HTTPException(status_code=400, detail="Invalid or expired reset token.")
    db["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": {"passwordHash": hash_password(data.password), "updatedAt": now()},
            "$unset": {"resetPasswordToken": "", "resetPasswordExpire": ""},
        },
    )
    return {"success": True, "message": "Password reset successfully."}


@app.get("/api/v1/users/all")
def list_users(admin: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    return {"success": True, "users": [user_out(u) for u in get_documents(db, "user")]}


@app.delete("/api/v1/users/{user_id}")
def delete_user(user_id: str, admin: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    result = db["user"].delete_one({"_id": to_object_id(user_id)})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="User not found.")
    logger.info("Admin %s deleted user %s", admin["_id"], user_id)
    return {"success": True, "message": "User deleted successfully."}


@app.put("/api/v1/users/role/{user_id}")
def update_user_role(user_id: str, data: RoleUpdateDTO, admin: Dict[str, Any] = Depends(require_admin),
                     db: Database = Depends(get_db)):
    oid = to_object_id(user_id)
    user = db["user"].find_one({"_id": oid}) if oid else None
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    if data.role:
        db["user"].update_one({"_id": oid}, {"$set": {"role": data.role, "updatedAt": now()}})
    return {
        "success": True,
        "message": "User role updated successfully.",
        "user": user_out(db["user"].find_one({"_id": oid})),
    }


# Products
class RatingDTO(Document):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)


def product_out(product: Dict[str, Any], seller: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out = serialize_doc(product)
    out["averageRating"] = average_rating(product.get("ratings", []))
    if seller is not None:
        out["seller"] = {"id": str(seller["_id"]), "name": seller.get("name"), "email": seller.get("email")}
    return out


def products_with_sellers(db: Database, products: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seller_ids = list({p["sellerId"] for p in products if p.get("sellerId")})
    sellers = {u["_id"]: u for u in db["user"].find({"_id": {"$in": seller_ids}}, {"name": 1, "email": 1})}
    return [product_out(p, sellers.get(p.get("sellerId"))) for p in products]


def get_product_or_404(db: Database, product_id: str) -> Dict[str, Any]:
    oid = to_object_id(product_id)
    product = db["product"].find_one({"_id": oid}) if oid else None
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


def upload_product_images(images: Optional[List[UploadFile]]) -> List[UploadedImage]:
    files = [f for f in images or [] if f.filename]
    if len(files) > MAX_PRODUCT_IMAGES:
        raise HTTPException(status_code=400, detail=f"At most {MAX_PRODUCT_IMAGES} images are allowed")
    paths = []
    try:
        for f in files:
            paths.append(save_upload(f))
    except (HTTPException, OSError):
        for path in paths:
            remove_temp_file(path)
        raise
    uploaded = []
    for i, path in enumerate(paths):
        try:
            uploaded.append(upload_image(path, "products"))
        except UploadFailed as exc:
            for leftover in paths[i + 1:]:
                remove_temp_file(leftover)
            discard_images(uploaded)
            raise media_error(exc, "Product image upload failed")
    return uploaded


def discard_images(images: List[UploadedImage]) -> None:
    for image in images:
        delete_image(image.public_id)


@app.post("/api/v1/products", status_code=201)
def create_product(
    name: str = Form(...),
    description: str = Form(...),
    category: str = Form(...),
    price: float = Form(...),
    stock: int = Form(...),
    images: Optional[List[UploadFile]] = File(None),
    user: Dict[str, Any] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    require_role(user, ["seller", "admin"])
    if db["product"].find_one({"sellerId": user["_id"], "name": name.strip(), "category": category}):
        raise HTTPException(status_code=400, detail="You already have a product with the same name and category.")
    try:
        product = Product(seller_id=user["_id"], name=name, description=description, category=category,
                          price=price, stock=stock)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=validation_message(exc))
    uploaded = upload_product_images(images)
    product.images = [i.url for i in uploaded] or [DEFAULT_PRODUCT_IMAGE]
    try:
        product_id = create_document(db, "product", product)
    except DuplicateKeyError:
        discard_images(uploaded)
        raise HTTPException(status_code=400, detail="Duplicate product detected for this seller.")
    logger.info("Seller %s created product %s", user["_id"], product_id)
    return {
        "success": True,
        "message": "Product created successfully",
        "product": product_out(db["product"].find_one({"_id": to_object_id(product_id)})),
    }


@app.get("/api/v1/products")
def list_products(q: Optional[str] = None, category: Optional[Category] = None, db: Database = Depends(get_db)):
    query: Dict[str, Any] = {}
    if q:
        query["name"] = {"$regex": re.escape(q), "$options": "i"}
    if category:
        query["category"] = category
    return {"success": True, "products": products_with_sellers(db, get_documents(db, "product", query))}


@app.get("/api/v1/products/seller")
def list_seller_products(user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    products = get_documents(db, "product", {"sellerId": user["_id"]})
    if not products:
        raise HTTPException(status_code=404, detail="No products found for this seller")
    return {"success": True, "products": [product_out(p) for p in products]}


@app.get("/api/v1/products/admin/all")
def list_products_admin(admin: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    return {"success": True, "products": products_with_sellers(db, get_documents(db, "product"))}


@app.get("/api/v1/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    product = get_product_or_404(db, product_id)
    return {"success": True, "product": products_with_sellers(db, [product])[0]}


@app.put("/api/v1/products/{product_id}")
def update_product(
    product_id: str,
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    price: Optional[float] = Form(None),
    stock: Optional[int] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    user: Dict[str, Any] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    product = get_product_or_404(db, product_id)
    if product.get("sellerId") != user["_id"]:
        raise HTTPException(status_code=403, detail="Not authorized to update this product")
    updates = {k: v for k, v in {"name": name, "description": description, "category": category,
                                 "price": price, "stock": stock}.items() if v is not None}
    try:
        validated = Product.model_validate({**product, **updates})
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=validation_message(exc))
    fields = validated.model_dump(by_alias=True, include=set(updates))
    uploaded = upload_product_images(images)
    if uploaded:
        fields["images"] = [i.url for i in uploaded]
    fields["updatedAt"] = now()
    try:
        db["product"].update_one({"_id": product["_id"]}, {"$set": fields})
    except DuplicateKeyError:
        discard_images(uploaded)
        raise HTTPException(status_code=400, detail="Duplicate product detected for this seller.")
    return {
        "success": True,
        "message": "Product updated successfully",
        "product": product_out(db["product"].find_one({"_id": product["_id"]})),
    }


@app.delete("/api/v1/products/{product_id}")
def delete_product(product_id: str, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    product = get_product_or_404(db, product_id)
    if product.get("sellerId") != user["_id"]:
        raise HTTPException(status_code=403, detail="Not authorized to delete this product")
    db["product"].delete_one({"_id": product["_id"]})
    logger.info("Seller %s deleted product %s", user["_id"], product_id)
    return {"success": True, "message": "Product deleted successfully"}


@app.post("/api/v1/products/{product_id}/rate")
def rate_product(product_id: str, data: RatingDTO, user: Dict[str, Any] = Depends(get_current_user),
                 db: Database = Depends(get_db)):
    product = get_product_or_404(db, product_id)
    rating = Rating(user_id=user["_id"], rating=data.rating, comment=data.comment, created_at=now())
    ratings = [r for r in product.get("ratings", []) if r.get("userId") != user["_id"]]
    ratings.append(rating.model_dump(by_alias=True))
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"ratings": ratings, "updatedAt": now()}})
    return {
        "success": True,
        "message": "Rating saved",
        "product": product_out(db["product"].find_one({"_id": product["_id"]})),
    }


# Cart
class AddToCartDTO(Document):
    product_id: PyObjectId
    quantity: int = Field(..., ge=1)


class CartQuantityDTO(Document):
    quantity: int = Field(..., ge=1)


def cart_out(db: Database, cart: Dict[str, Any]) -> Dict[str, Any]:
    product_ids = [i["productId"] for i in cart.get("items", [])]
    products = {
        p["_id"]: p
        for p in db["product"].find({"_id": {"$in": product_ids}}, {"name": 1, "price": 1, "images": 1})
    }
    out = serialize_doc(cart)
    for item, raw in zip(out.get("items", []), cart.get("items", [])):
        item["product"] = serialize_doc(products.get(raw["productId"]))
    return out


def get_cart_or_404(db: Database, user_id) -> Dict[str, Any]:
    cart = db["cart"].find_one({"userId": user_id})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    return cart


@app.post("/api/v1/cart/add")
def add_to_cart(data: AddToCartDTO, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    product = db["product"].find_one({"_id": data.product_id})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    cart = db["cart"].find_one({"userId": user["_id"]})
    line = {"productId": product["_id"], "sellerId": product["sellerId"], "quantity": data.quantity,
            "priceAtTime": product["price"]}
    if cart:
        for item in cart["items"]:
            if item["productId"] == product["_id"]:
                item["quantity"] += data.quantity
                break
        else:
            cart["items"].append(line)
        db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": cart["items"], "updatedAt": now()}})
    else:
        create_document(db, "cart", {"userId": user["_id"], "items": [line]})
    cart = db["cart"].find_one({"userId": user["_id"]})
    return {"success": True, "message": "Product added to cart successfully", "cart": cart_out(db, cart)}


@app.delete("/api/v1/cart/remove/{product_id}")
def remove_from_cart(product_id: str, user: Dict[str, Any] = Depends(get_current_user),
                     db: Database = Depends(get_db)):
    cart = get_cart_or_404(db, user["_id"])
    oid = to_object_id(product_id)
    cart["items"] = [i for i in cart["items"] if i["productId"] != oid]
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": cart["items"], "updatedAt": now()}})
    return {"success": True, "message": "Product removed from cart", "cart": cart_out(db, cart)}


@app.put("/api/v1/cart/update/{product_id}")
def update_cart_item_quantity(product_id: str, data: CartQuantityDTO, user: Dict[str, Any] = Depends(get_current_user),
                              db: Database = Depends(get_db)):
    cart = get_cart_or_404(db, user["_id"])
    oid = to_object_id(product_id)
    item = next((i for i in cart["items"] if i["productId"] == oid), None)
    if item is None:
        raise HTTPException(status_code=404, detail="Product not in cart")
    item["quantity"] = data.quantity
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": cart["items"], "updatedAt": now()}})
    return {"success": True, "message": "Cart item quantity updated", "cart": cart_out(db, cart)}


@app.get("/api/v1/cart")
def get_cart(user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = db["cart"].find_one({"userId": user["_id"]})
    if not cart:
        create_document(db, "cart", {"userId": user["_id"], "items": []})
        cart = db["cart"].find_one({"userId": user["_id"]})
    return {"success": True, "cart": cart_out(db, cart)}


# Orders
class OrderLineDTO(Document):
    product_id: str
    quantity: int = Field(..., ge=1)


class PlaceOrderDTO(Document):
    items: List[OrderLineDTO] = []
    shipping_address: Optional[str] = None
    payment_method: PaymentMethod = "COD"
    total_amount: Optional[float] = Field(None, ge=0)


class ItemStatusDTO(Document):
    status: ItemStatus


@app.post("/api/v1/orders", status_code=201)
def place_order(data: PlaceOrderDTO, user: Dict[str, Any] = Depends(get_current_user),
                workflow: OrderWorkflow = Depends(get_order_workflow)):
    order = workflow.place_order(
        user["_id"],
        [{"productId": i.product_id, "quantity": i.quantity} for i in data.items],
        data.shipping_address,
        payment_method=data.payment_method,
        total_amount=data.total_amount,
    )
    return {
        "success": True,
        "message": "Order placed successfully. Notifications sent to buyer and seller.",
        "order": serialize_doc(order),
    }


@app.get("/api/v1/orders/my-orders")
def get_buyer_orders(user: Dict[str, Any] = Depends(get_current_user),
                     workflow: OrderWorkflow = Depends(get_order_workflow)):
    orders = workflow.buyer_orders(user["_id"])
    return {"success": True, "count": len(orders), "orders": serialize_doc(orders)}


@app.get("/api/v1/orders/seller-orders")
def get_seller_orders(user: Dict[str, Any] = Depends(get_current_user),
                      workflow: OrderWorkflow = Depends(get_order_workflow)):
    orders = workflow.seller_orders(user["_id"])
    return {"success": True, "count": len(orders), "orders": serialize_doc(orders)}


@app.get("/api/v1/orders/admin/all")
def get_all_orders_admin(admin: Dict[str, Any] = Depends(require_admin),
                         workflow: OrderWorkflow = Depends(get_order_workflow)):
    orders = workflow.all_orders()
    return {"success": True, "count": len(orders), "orders": serialize_doc(orders)}


@app.put("/api/v1/orders/{order_id}/item/{item_id}/status")
def update_order_item_status(order_id: str, item_id: str, data: ItemStatusDTO,
                             user: Dict[str, Any] = Depends(get_current_user),
                             workflow: OrderWorkflow = Depends(get_order_workflow)):
    order = workflow.update_item_status(order_id, item_id, data.status, user["_id"])
    return {"success": True, "message": "Order item status updated", "order": serialize_doc(order)}


@app.get("/api/v1/orders/{order_id}")
def get_order_by_id(order_id: str, user: Dict[str, Any] = Depends(get_current_user),
                    workflow: OrderWorkflow = Depends(get_order_workflow)):
    return {"success": True, "order": serialize_doc(workflow.get_order(order_id, user))}


@app.delete("/api/v1/orders/remove/{order_id}")
def delete_order(order_id: str, user: Dict[str, Any] = Depends(get_current_user),
                 workflow: OrderWorkflow = Depends(get_order_workflow)):
    workflow.delete_order(order_id, user["_id"], requester_name=user.get("name"))
    return {"success": True, "message": "Order deleted successfully, stock restored, and seller notified."}


# ML
@app.post("/api/v1/ml/detect-disease")
def detect_disease(plantImage: Optional[UploadFile] = File(None), user: Dict[str, Any] = Depends(get_current_user)):
    if plantImage is None:
        raise HTTPException(status_code=400, detail="No image file provided in the request body.")
    path = save_upload(plantImage)
    result = run_prediction(path, plantImage.filename)
    if not result.ok:
        return JSONResponse(
            status_code=result.failure.status_code,
            content={"success": False, "message": result.failure.message},
        )
    return {"success": True, "message": "Prediction received successfully.", **result.payload}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 4000))
    uvicorn.run(app, host="0.0.0.0", port=port)
