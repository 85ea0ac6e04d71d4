import logging
import math
import re
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, HttpUrl, model_validator
from pymongo import DeleteOne, InsertOne, UpdateOne
from pymongo.database import Database

from auth import AuthContext, require_admin
from database import get_db, now_utc, parse_object_id, serialize_doc
from schemas import Product as ProductSchema

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])

SORT_OPTIONS = {
    "popular": [("clicks", -1), ("views", -1)],
    "price-asc": [("selling_price", 1)],
    "price-desc": [("selling_price", -1)],
    "rating": [("rating", -1)],
    "newest": [("created_at", -1)],
}


class VariantIn(BaseModel):
    id: Optional[str] = None
    size: Optional[str] = None
    color: Optional[str] = None
    stock: int = Field(..., ge=0)
    images: Optional[List[HttpUrl]] = None


class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    mrp: Optional[float] = Field(None, ge=0)
    selling_price: float = Field(..., gt=0)
    purchase_price: Optional[float] = Field(None, ge=0)
    category: List[str] = Field(..., min_length=1)
    brand: str = Field(..., min_length=1)
    storefront: str = Field(..., min_length=1)
    images: List[HttpUrl] = Field(..., min_length=1)
    keywords: List[str] = []
    return_period: int = Field(10, ge=0)
    stock: int = Field(0, ge=0)
    variants: List[VariantIn] = []

    @model_validator(mode="after")
    def check_prices(self):
        if self.mrp is not None and self.selling_price > self.mrp:
            raise ValueError("Selling price cannot be greater than MRP")
        return self


def product_doc(data: ProductIn, style_id: str, variant: Optional[VariantIn] = None) -> Dict[str, Any]:
    common = data.model_dump(mode="json", exclude={"variants"})
    if variant is not None:
        common["stock"] = variant.stock
        common["color"] = variant.color
        common["size"] = variant.size
        if variant.images:
            common["images"] = [str(i) for i in variant.images]
        common["name"] = f"{data.name} - {variant.color or ''} {variant.size or ''}".strip()
    common["style_id"] = style_id
    return ProductSchema(**common).model_dump()


@router.get("")
def list_products(
    storefront: Optional[str] = None,
    category: Optional[str] = None,
    brands: Optional[str] = None,
    colors: Optional[str] = None,
    keyword: Optional[str] = None,
    keywords: Optional[str] = None,
    exclude: Optional[str] = None,
    sort_by: Optional[str] = None,
    limit: int = 50,
    page: int = 1,
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if storefront:
        query["storefront"] = storefront
    if category:
        query["category"] = {"$in": category.split(",")}
    if brands:
        query["brand"] = {"$in": brands.split(",")}
    if colors:
        query["color"] = {"$in": colors.split(",")}
    if keyword:
        keyword = re.escape(keyword)
        query["$or"] = [
            {"name": {"$regex": keyword, "$options": "i"}},
            {"keywords": {"$regex": keyword, "$options": "i"}},
            {"brand": {"$regex": keyword, "$options": "i"}},
            {"category": {"$regex": keyword, "$options": "i"}},
        ]
    if keywords:
        # similar products
        terms = [re.escape(k) for k in keywords.split(",") if k]
        query["$or"] = [{"keywords": {"$regex": k, "$options": "i"}} for k in terms] + [
            {"name": {"$regex": k, "$options": "i"}} for k in terms
        ]
    if exclude and ObjectId.is_valid(exclude):
        query["_id"] = {"$ne": ObjectId(exclude)}
    if sort_by == "popular":
        query["stock"] = {"$gt": 0}

    limit = max(limit, 1)
    page = max(page, 1)
    collection = db["product"]
    total = collection.count_documents(query)
    cursor = collection.find(query).sort(SORT_OPTIONS.get(sort_by, SORT_OPTIONS["newest"]))
    cursor = cursor.skip((page - 1) * limit).limit(limit)
    return {
        "products": [serialize_doc(d) for d in cursor],
        "pagination": {
            "current_page": page,
            "total_pages": math.ceil(total / limit),
            "total_products": total,
            "limit": limit,
        },
    }


@router.post("", status_code=201)
def create_product(data: ProductIn, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    style_id = str(ObjectId())
    now = now_utc()
    if not data.variants:
        docs = [product_doc(data, style_id)]
    else:
        docs = [product_doc(data, style_id, v) for v in data.variants]
    for doc in docs:
        doc["created_at"] = doc["updated_at"] = now
    res = db["product"].insert_many(docs)
    created = db["product"].find({"_id": {"$in": res.inserted_ids}})
    logger.info("Created %d product(s) under style %s", len(docs), style_id)
    return {"products": [serialize_doc(d) for d in created]}


class StockUpdate(BaseModel):
    product_id: str
    stock: int = Field(..., ge=0)


class BulkStockUpdate(BaseModel):
    updates: List[StockUpdate]


@router.post("/bulk-update-stock")
def bulk_update_stock(payload: BulkStockUpdate, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    if not payload.updates:
        raise HTTPException(status_code=400, detail="No valid updates provided")
    ops = [
        UpdateOne(
            {"_id": parse_object_id(u.product_id, "product id")},
            {"$set": {"stock": u.stock, "updated_at": now_utc()}},
        )
        for u in payload.updates
    ]
    result = db["product"].bulk_write(ops)
    return {"updated_count": result.modified_count}


@router.get("/variants/{style_id}")
def get_variants(style_id: str, db: Database = Depends(get_db)):
    variants = [serialize_doc(d) for d in db["product"].find({"style_id": style_id})]
    if not variants:
        raise HTTPException(status_code=404, detail="No variants found for this style")
    return {"variants": variants}


@router.get("/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    obj_id = parse_object_id(product_id, "product id")
    product = db["product"].find_one({"_id": obj_id})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return serialize_doc(product)


@router.put("/{product_id}")
def update_product(product_id: str, data: ProductIn, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    obj_id = parse_object_id(product_id, "product id")
    existing = db["product"].find_one({"_id": obj_id})
    if not existing:
        raise HTTPException(status_code=404, detail="Product not found")
    style_id = existing.get("style_id") or str(ObjectId())
    now = now_utc()

    if not data.variants:
        update_dict = product_doc(data, style_id)
        # counters and rating are not owned by the form
        for key in ("views", "clicks", "rating", "color", "size"):
            update_dict.pop(key, None)
        update_dict["updated_at"] = now
        db["product"].update_one({"_id": obj_id}, {"$set": update_dict})
        return serialize_doc(db["product"].find_one({"_id": obj_id}))

    ops = []
    keep_ids = set()
    for variant in data.variants:
        doc = product_doc(data, style_id, variant)
        if variant.id and ObjectId.is_valid(variant.id):
            keep_ids.add(variant.id)
            for key in ("views", "clicks", "rating"):
                doc.pop(key, None)
            doc["updated_at"] = now
            ops.append(UpdateOne({"_id": ObjectId(variant.id), "style_id": style_id}, {"$set": doc}))
        else:
            doc["created_at"] = doc["updated_at"] = now
            ops.append(InsertOne(doc))
    for member in db["product"].find({"style_id": style_id}, {"_id": 1}):
        if str(member["_id"]) not in keep_ids:
            ops.append(DeleteOne({"_id": member["_id"]}))
    if ops:
        db["product"].bulk_write(ops)
    return {"products": [serialize_doc(d) for d in db["product"].find({"style_id": style_id})]}


@router.delete("/{product_id}")
def delete_product(product_id: str, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    obj_id = parse_object_id(product_id, "product id")
    res = db["product"].delete_one({"_id": obj_id})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"ok": True}


class TrackInput(BaseModel):
    metric: Literal["views", "clicks"]


@router.patch("/{product_id}/track")
def track_product(product_id: str, payload: TrackInput, db: Database = Depends(get_db)):
    obj_id = parse_object_id(product_id, "product id")
    res = db["product"].update_one({"_id": obj_id}, {"$inc": {payload.metric: 1}})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"ok": True}
