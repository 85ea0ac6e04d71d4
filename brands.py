import re
from typing import List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.database import Database

from auth import AuthContext, require_admin
from database import create_document, get_db, now_utc, serialize_doc
from schemas import Banner, Brand as BrandSchema, CancellableUntil, CartSettings, Theme

router = APIRouter(prefix="/api", tags=["brands"])


class BrandUpdate(BaseModel):
    display_name: str = Field(..., min_length=1)
    logo_url: str = Field(..., min_length=1)
    theme_name: str = Field(..., min_length=1)
    theme: Theme
    banners: List[Banner] = []
    categories: List[str] = []


class BrandIn(BrandUpdate):
    permanent_name: str = Field(..., min_length=1, pattern=r"^[a-z0-9-]+$")


def name_filter(name: str) -> dict:
    return {"permanent_name": {"$regex": f"^{re.escape(name)}$", "$options": "i"}}


@router.get("/brands")
def list_brands(db: Database = Depends(get_db)):
    return {"brands": [serialize_doc(b) for b in db["brand"].find({}).sort("display_name", 1)]}


@router.post("/brands", status_code=201)
def create_brand(payload: BrandIn, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    if db["brand"].find_one(name_filter(payload.permanent_name)):
        raise HTTPException(status_code=409, detail=f"A brand with permanent name '{payload.permanent_name}' already exists.")
    brand_id = create_document(db, "brand", BrandSchema(**payload.model_dump()))
    return {"message": "Brand created successfully", "brand": serialize_doc(db["brand"].find_one({"_id": ObjectId(brand_id)}))}


@router.get("/brands/{name}")
def get_brand(name: str, db: Database = Depends(get_db)):
    brand = db["brand"].find_one(name_filter(name))
    if not brand:
        raise HTTPException(status_code=404, detail="Brand not found")
    return {"brand": serialize_doc(brand)}


@router.put("/brands/{name}")
def update_brand(name: str, payload: BrandUpdate, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    # permanent_name can't change
    update = payload.model_dump()
    update["updated_at"] = now_utc()
    brand = db["brand"].find_one_and_update(name_filter(name), {"$set": update}, return_document=ReturnDocument.AFTER)
    if not brand:
        raise HTTPException(status_code=404, detail="Brand not found")
    return {"message": "Brand updated successfully", "brand": serialize_doc(brand)}


# Cart / platform settings (single document)
def get_cart_settings(db: Database) -> CartSettings:
    doc = db["settings"].find_one({}) or {}
    return CartSettings(**{k: v for k, v in doc.items() if k in CartSettings.model_fields})


@router.get("/settings")
def read_settings(db: Database = Depends(get_db)):
    return get_cart_settings(db).model_dump()


class SettingsUpdate(BaseModel):
    free_shipping_threshold: Optional[float] = Field(None, ge=0)
    extra_discount_threshold: Optional[float] = Field(None, ge=0)
    free_gift_threshold: Optional[float] = Field(None, ge=0)
    cancellable_order_status: Optional[CancellableUntil] = None


@router.post("/settings")
def save_settings(payload: SettingsUpdate, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    changes = payload.model_dump(exclude_none=True)
    defaults = {k: v for k, v in CartSettings().model_dump().items() if k not in changes}
    db["settings"].update_one(
        {},
        {"$set": {**changes, "updated_at": now_utc()}, "$setOnInsert": defaults},
        upsert=True,
    )
    return get_cart_settings(db).model_dump()
