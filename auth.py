import logging
import os
from datetime import timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Cookie, Depends, Header, HTTPException
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, get_db, now_utc, parse_object_id, serialize_doc
from schemas import ALL_BRANDS, Address, User as UserSchema, UserStatus

logger = logging.getLogger(__name__)

# JWT Config
SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))  # 1 day

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

router = APIRouter(prefix="/api", tags=["auth"])


# Utilities

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = now_utc() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def token_for_user(user: dict, brand: Optional[str] = None) -> str:
    return create_access_token({
        "sub": str(user["_id"]),
        "brand": brand or user.get("brand"),
        "roles": user.get("roles", ["user"]),
        "name": user.get("first_name", ""),
    })


def public_user(user: dict) -> Dict[str, Any]:
    # Never send password hash
    user = serialize_doc(user)
    user.pop("password_hash", None)
    return user


class AuthContext(BaseModel):
    """Verified identity of the caller, built once per request."""
    user_id: str
    brand: str
    roles: List[str] = []
    name: str = ""

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


# Dependencies

def get_current_user(
    authorization: Optional[str] = Header(default=None),
    token: Optional[str] = Cookie(default=None),
    db: Database = Depends(get_db),
) -> AuthContext:
    raw_token = None
    if authorization and authorization.startswith("Bearer "):
        raw_token = authorization.split(" ", 1)[1]
    elif token:
        raw_token = token
    if not raw_token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    payload = decode_token(raw_token)
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user or user.get("is_deleted") or user.get("status") == "blocked":
        raise HTTPException(status_code=401, detail="User not found")
    return AuthContext(
        user_id=user_id,
        brand=payload.get("brand") or user.get("brand", ""),
        roles=user.get("roles", []),
        name=user.get("first_name", ""),
    )


def require_admin(current_user: AuthContext = Depends(get_current_user)) -> AuthContext:
    if not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Admins only")
    return current_user


def find_user_address(db: Database, user_id: str, address_id: str) -> Optional[dict]:
    """Return one of the user's saved addresses, or None."""
    user = db["user"].find_one({"_id": ObjectId(user_id)}, {"addresses": 1})
    if not user:
        return None
    for addr in user.get("addresses", []):
        if str(addr.get("_id")) == address_id:
            return addr
    return None


# Auth models
class RegisterInput(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=8)
    brand: str = Field(..., min_length=1)


class LoginInput(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)
    brand: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


@router.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterInput, db: Database = Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="User with this email already exists")
    user_model = UserSchema(
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=email,
        password_hash=hash_password(payload.password),
        brand=payload.brand,
    )
    user_id = create_document(db, "user", user_model)
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    logger.info("Registered user %s on %s", user_id, payload.brand)
    return TokenResponse(access_token=token_for_user(user), user=public_user(user))


@router.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginInput, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower(), "is_deleted": {"$ne": True}})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if user.get("status") == "blocked":
        raise HTTPException(status_code=403, detail="Account is blocked")
    return TokenResponse(access_token=token_for_user(user, payload.brand), user=public_user(user))


@router.get("/auth/me")
def me(current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    user = db["user"].find_one({"_id": ObjectId(current_user.user_id)})
    return public_user(user)


# Addresses
@router.get("/user/addresses")
def list_addresses(current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    user = db["user"].find_one({"_id": ObjectId(current_user.user_id)}, {"addresses": 1})
    return {"addresses": [serialize_doc(a) for a in user.get("addresses", [])]}


@router.post("/user/addresses", status_code=201)
def add_address(payload: Address, current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    user_oid = ObjectId(current_user.user_id)
    user = db["user"].find_one({"_id": user_oid}, {"addresses": 1})
    addresses = user.get("addresses", [])
    address = {"_id": ObjectId(), **payload.model_dump()}
    if not addresses:
        address["is_default"] = True
    if address["is_default"]:
        for existing in addresses:
            existing["is_default"] = False
    addresses.append(address)
    db["user"].update_one({"_id": user_oid}, {"$set": {"addresses": addresses, "updated_at": now_utc()}})
    return serialize_doc(address)


@router.delete("/user/addresses/{address_id}")
def delete_address(address_id: str, current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    addr_oid = parse_object_id(address_id, "address id")
    res = db["user"].update_one(
        {"_id": ObjectId(current_user.user_id)},
        {"$pull": {"addresses": {"_id": addr_oid}}, "$set": {"updated_at": now_utc()}},
    )
    if res.modified_count == 0:
        raise HTTPException(status_code=404, detail="Address not found")
    return {"ok": True}


# Account
class ChangePasswordInput(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8)


@router.post("/auth/change-password")
def change_password(payload: ChangePasswordInput, current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    user_oid = ObjectId(current_user.user_id)
    user = db["user"].find_one({"_id": user_oid}, {"password_hash": 1})
    if not verify_password(payload.current_password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Incorrect current password.")
    db["user"].update_one(
        {"_id": user_oid},
        {"$set": {"password_hash": hash_password(payload.new_password), "updated_at": now_utc()}},
    )
    return {"message": "Password updated successfully"}


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1)
    last_name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None


class AccountConfirm(BaseModel):
    password: str = Field(..., min_length=1)


def own_account(current_user: AuthContext, user_id: str) -> ObjectId:
    user_oid = parse_object_id(user_id, "user id")
    if current_user.user_id != user_id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return user_oid


def confirm_password(db: Database, user_oid: ObjectId, password: str) -> None:
    user = db["user"].find_one({"_id": user_oid}, {"password_hash": 1})
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Incorrect password.")


@router.put("/users/{user_id}/profile")
def update_profile(user_id: str, payload: ProfileUpdate, current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    user_oid = parse_object_id(user_id, "user id")
    if current_user.user_id != user_id and not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")
    changes = payload.model_dump(exclude_none=True)
    user = db["user"].find_one_and_update(
        {"_id": user_oid, "is_deleted": {"$ne": True}},
        {"$set": {**changes, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"message": "Profile updated successfully", "user": public_user(user)}


@router.post("/users/{user_id}/deactivate")
def deactivate_account(user_id: str, payload: AccountConfirm, current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    user_oid = own_account(current_user, user_id)
    confirm_password(db, user_oid, payload.password)
    db["user"].update_one({"_id": user_oid}, {"$set": {"status": "blocked", "updated_at": now_utc()}})
    logger.info("User %s deactivated their account", user_id)
    return {"message": "Account deactivated successfully"}


@router.post("/users/{user_id}/delete")
def delete_account(user_id: str, payload: AccountConfirm, current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    user_oid = own_account(current_user, user_id)
    confirm_password(db, user_oid, payload.password)
    # orders stay for bookkeeping; personal data goes
    db["cart"].delete_one({"user_id": user_id})
    db["wishlist"].delete_one({"user_id": user_id})
    db["review"].delete_many({"user_id": user_id})
    db["user"].update_one(
        {"_id": user_oid},
        {"$set": {"is_deleted": True, "addresses": [], "phone": None, "updated_at": now_utc()}},
    )
    logger.info("User %s deleted their account", user_id)
    return {"message": "Account deleted successfully"}


# Admin user management
@router.get("/users")
def list_users(brand: Optional[str] = None, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    query: Dict[str, Any] = {"roles": {"$ne": "admin"}, "is_deleted": {"$ne": True}}
    if brand and brand != ALL_BRANDS:
        query["brand"] = brand
    users = db["user"].find(query).sort("created_at", -1)
    return {"users": [public_user(u) for u in users]}


class StatusInput(BaseModel):
    status: UserStatus


@router.patch("/users/{user_id}/status")
def set_user_status(user_id: str, payload: StatusInput, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    user = db["user"].find_one_and_update(
        {"_id": parse_object_id(user_id, "user id"), "is_deleted": {"$ne": True}},
        {"$set": {"status": payload.status, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("Admin %s set user %s to %s", admin.user_id, user_id, payload.status)
    return {"message": "User status updated successfully", "user": public_user(user)}
