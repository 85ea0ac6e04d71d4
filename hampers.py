"""
Gift hampers: packaging boxes/bags and the per-user hamper draft.

A user has at most one open draft (is_complete=False). Every save is an
upsert on that key, so partial saves accumulate into the same document.
Checkout turns the draft into cart lines and keeps it as a completed record.
"""

import logging
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, HttpUrl, field_validator
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import AuthContext, get_current_user, require_admin
from cart import add_items_to_cart, cart_to_client
from database import create_document, get_db, now_utc, parse_object_id, serialize_doc
from schemas import ALL_BRANDS, Box as BoxSchema, Hamper as HamperSchema

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["hampers"])

PACKAGING_STOREFRONT = "hamper-assets"
PACKAGING_STOCK = 999


# Boxes
class BoxIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    price: float = Field(..., ge=0)
    mrp: Optional[float] = Field(None, ge=0)
    images: List[HttpUrl] = Field(..., min_length=1)
    size: Optional[str] = None
    color: Optional[str] = None
    stock: int = Field(..., ge=0)
    storefront: str = Field(..., min_length=1)
    kind: Literal["box", "bag"] = "box"


@router.get("/boxes")
def list_boxes(storefront: Optional[str] = None, kind: Optional[Literal["box", "bag"]] = None, db: Database = Depends(get_db)):
    query: Dict[str, Any] = {}
    if storefront and storefront != ALL_BRANDS:
        query["storefront"] = storefront
    if kind:
        query["kind"] = kind
    boxes = db["box"].find(query).sort("created_at", -1)
    return {"boxes": [serialize_doc(b) for b in boxes]}


@router.post("/boxes", status_code=201)
def create_box(payload: BoxIn, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    box_id = create_document(db, "box", BoxSchema(**payload.model_dump(mode="json")))
    return {"message": "Box created successfully", "box": serialize_doc(db["box"].find_one({"_id": ObjectId(box_id)}))}


@router.delete("/boxes/{box_id}")
def delete_box(box_id: str, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    res = db["box"].delete_one({"_id": parse_object_id(box_id, "box id")})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Box not found")
    return {"message": "Box deleted successfully"}


# Hamper drafts
class HamperUpdate(BaseModel):
    occasion: Optional[str] = None
    box_id: Optional[str] = None
    bag_id: Optional[str] = None
    products: Optional[List[str]] = None
    notes_to_creator: Optional[str] = None
    notes_to_receiver: Optional[str] = None
    add_rose: Optional[bool] = None

    @field_validator("box_id", "bag_id")
    @classmethod
    def check_id(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not ObjectId.is_valid(v):
            raise ValueError("Invalid ID")
        return v

    @field_validator("products")
    @classmethod
    def check_products(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is not None and not all(ObjectId.is_valid(p) for p in v):
            raise ValueError("Invalid product ID")
        return v


def draft_filter(user_id: str) -> dict:
    return {"user_id": user_id, "is_complete": False}


def save_draft(db: Database, user_id: str, update: HamperUpdate) -> dict:
    changes = update.model_dump(exclude_unset=True)
    defaults = HamperSchema(user_id=user_id).model_dump()
    on_insert = {k: v for k, v in defaults.items() if k not in changes and k not in ("user_id", "is_complete")}
    on_insert["created_at"] = now_utc()

    def upsert():
        return db["hamper"].find_one_and_update(
            draft_filter(user_id),
            {"$set": {**changes, "updated_at": now_utc()}, "$setOnInsert": on_insert},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    try:
        return upsert()
    except DuplicateKeyError:
        # a concurrent first save created the draft; this one now matches it
        return upsert()


@router.get("/hampers")
def get_hamper(current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    hamper = db["hamper"].find_one(draft_filter(current_user.user_id))
    return {"hamper": serialize_doc(hamper)}


@router.post("/hampers")
@router.patch("/hampers")
def update_hamper(payload: HamperUpdate, current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    hamper = save_draft(db, current_user.user_id, payload)
    return {"message": "Hamper progress saved", "hamper": serialize_doc(hamper)}


@router.delete("/hampers")
def discard_hamper(current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    db["hamper"].delete_one(draft_filter(current_user.user_id))
    return {"message": "Hamper progress discarded"}


def packaging_product(db: Database, box: dict) -> dict:
    """Catalog product mirroring a box or bag, created once per packaging item."""
    box_id = str(box["_id"])
    now = now_utc()
    return db["product"].find_one_and_update(
        {"packaging_box_id": box_id},
        {"$setOnInsert": {
            "packaging_box_id": box_id,
            "name": box["name"],
            "description": box.get("description") or box["name"],
            "storefront": PACKAGING_STOREFRONT,
            "category": ["Packaging"],
            "brand": "Packaging",
            "selling_price": box["price"],
            "mrp": box.get("mrp"),
            "images": box.get("images", []),
            "stock": PACKAGING_STOCK,
            "rating": 0,
            "views": 0,
            "clicks": 0,
            "keywords": [],
            "return_period": 0,
            "style_id": box_id,
            "created_at": now,
            "updated_at": now,
        }},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


@router.post("/hampers/checkout")
def checkout_hamper(current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    user_id = current_user.user_id
    hamper = db["hamper"].find_one(draft_filter(user_id))
    if not hamper:
        raise HTTPException(status_code=404, detail="No active hamper found to checkout.")
    if not hamper.get("products") or not hamper.get("box_id") or not hamper.get("bag_id"):
        raise HTTPException(status_code=400, detail="Hamper is incomplete. Please select products, a box, and a bag.")

    # Mark the hamper as complete
    completed = db["hamper"].find_one_and_update(
        {"_id": hamper["_id"], "is_complete": False},
        {"$set": {"is_complete": True, "is_added_to_cart": True, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if not completed:
        raise HTTPException(status_code=404, detail="No active hamper found to checkout.")

    lines = []
    product_oids = [ObjectId(pid) for pid in hamper["products"]]
    in_stock = {str(p["_id"]) for p in db["product"].find({"_id": {"$in": product_oids}, "stock": {"$gt": 0}}, {"_id": 1})}
    for pid in hamper["products"]:
        if pid in in_stock:
            lines.append({"product_id": pid, "quantity": 1})

    for packaging_id in (hamper["box_id"], hamper["bag_id"]):
        box = db["box"].find_one_and_update(
            {"_id": ObjectId(packaging_id)},
            {"$inc": {"usage_count": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if box and box.get("price", 0) > 0:
            product = packaging_product(db, box)
            lines.append({"product_id": str(product["_id"]), "quantity": 1})

    cart = add_items_to_cart(db, user_id, lines)
    logger.info("Hamper %s checked out by user %s with %d cart lines", hamper["_id"], user_id, len(lines))
    return {"message": "Hamper added to cart!", "hamper": serialize_doc(completed), "cart": cart_to_client(db, cart)}
