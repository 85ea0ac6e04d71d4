from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator, model_validator
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import AuthContext, require_admin
from database import create_document, get_db, now_utc, parse_object_id, serialize_doc
from schemas import ALL_BRANDS, Coupon as CouponSchema, CouponType

router = APIRouter(prefix="/api/coupons", tags=["coupons"])


class CouponIn(BaseModel):
    code: str = Field(..., min_length=3)
    type: CouponType
    value: Optional[float] = None
    min_purchase: float = Field(0, ge=0)
    brand: str = Field(..., min_length=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def check_rules(self):
        if self.start_date and self.end_date and aware(self.end_date) <= aware(self.start_date):
            raise ValueError("End date must be after start date.")
        if self.type == "percentage" and (self.value is None or not 0 <= self.value <= 100):
            raise ValueError("Percentage coupons need a value between 0 and 100.")
        if self.type == "fixed" and (self.value is None or self.value < 0):
            raise ValueError("Fixed coupons need a non-negative value.")
        if self.type == "free-shipping" and self.value is not None:
            raise ValueError("Free shipping coupons must not have a value.")
        return self


def aware(dt: Optional[datetime]) -> Optional[datetime]:
    # mongo hands datetimes back naive (UTC)
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def is_active(coupon: dict, now: Optional[datetime] = None) -> bool:
    now = now or now_utc()
    start = aware(coupon.get("start_date"))
    end = aware(coupon.get("end_date"))
    has_started = start <= now if start else True
    not_expired = end >= now if end else True
    return has_started and not_expired


def coupon_to_client(doc: dict) -> Dict[str, Any]:
    out = serialize_doc(doc)
    out["is_active"] = is_active(doc)
    return out


def compute_discount(coupon: dict, subtotal: float) -> Dict[str, Any]:
    if coupon["type"] == "percentage":
        discount = round(subtotal * coupon["value"] / 100, 2)
    elif coupon["type"] == "fixed":
        discount = min(float(coupon["value"]), subtotal)
    else:
        discount = 0.0
    return {"discount": discount, "free_shipping": coupon["type"] == "free-shipping"}


@router.get("")
def list_coupons(brand: Optional[str] = None, db: Database = Depends(get_db)):
    query: Dict[str, Any] = {}
    if brand and brand != ALL_BRANDS:
        query["$or"] = [{"brand": brand}, {"brand": ALL_BRANDS}]
    elif brand == ALL_BRANDS:
        query["brand"] = ALL_BRANDS
    coupons = db["coupon"].find(query).sort("created_at", -1)
    return {"coupons": [coupon_to_client(c) for c in coupons]}


@router.post("", status_code=201)
def create_coupon(payload: CouponIn, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    if db["coupon"].find_one({"code": payload.code}):
        raise HTTPException(status_code=409, detail=f"Coupon code '{payload.code}' already exists.")
    try:
        coupon_id = create_document(db, "coupon", CouponSchema(**payload.model_dump()))
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="A coupon with this code already exists.")
    return {"message": "Coupon created successfully", "coupon": coupon_to_client(db["coupon"].find_one({"_id": ObjectId(coupon_id)}))}


class ApplyCouponInput(BaseModel):
    code: str
    subtotal: float = Field(..., ge=0)
    brand: str


@router.post("/apply")
def apply_coupon(payload: ApplyCouponInput, db: Database = Depends(get_db)):
    coupon = db["coupon"].find_one({"code": payload.code.strip().upper()})
    if not coupon:
        raise HTTPException(status_code=404, detail="Coupon not found")
    if not is_active(coupon):
        raise HTTPException(status_code=400, detail="Coupon is not active")
    if coupon["brand"] not in (payload.brand, ALL_BRANDS):
        raise HTTPException(status_code=400, detail="Coupon is not valid for this store")
    if payload.subtotal < coupon.get("min_purchase", 0):
        raise HTTPException(status_code=400, detail=f"Minimum purchase of {coupon['min_purchase']:.2f} required")
    return {"code": coupon["code"], "type": coupon["type"], **compute_discount(coupon, payload.subtotal)}


@router.get("/{coupon_id}")
def get_coupon(coupon_id: str, db: Database = Depends(get_db)):
    coupon = db["coupon"].find_one({"_id": parse_object_id(coupon_id, "coupon id")})
    if not coupon:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return {"coupon": coupon_to_client(coupon)}


@router.put("/{coupon_id}")
def update_coupon(coupon_id: str, payload: CouponIn, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    obj_id = parse_object_id(coupon_id, "coupon id")
    update = CouponSchema(**payload.model_dump()).model_dump()
    update["updated_at"] = now_utc()
    try:
        coupon = db["coupon"].find_one_and_update({"_id": obj_id}, {"$set": update}, return_document=ReturnDocument.AFTER)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Another coupon with this code already exists.")
    if not coupon:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return {"message": "Coupon updated successfully", "coupon": coupon_to_client(coupon)}


@router.delete("/{coupon_id}")
def delete_coupon(coupon_id: str, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    res = db["coupon"].delete_one({"_id": parse_object_id(coupon_id, "coupon id")})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return {"message": "Coupon deleted successfully"}
