from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.database import Database

from auth import AuthContext, get_current_user
from database import get_db, now_utc, parse_object_id, serialize_doc

router = APIRouter(prefix="/api", tags=["cart"])

PRODUCT_SUMMARY = {
    "name": 1, "images": 1, "selling_price": 1, "mrp": 1, "stock": 1,
    "storefront": 1, "brand": 1, "color": 1, "size": 1, "category": 1, "rating": 1,
}


def product_summaries(db: Database, product_ids: List[str]) -> Dict[str, Dict[str, Any]]:
    """Map product id -> serialized summary for every id that still exists."""
    oids = [ObjectId(pid) for pid in product_ids if ObjectId.is_valid(pid)]
    if not oids:
        return {}
    return {str(p["_id"]): serialize_doc(p) for p in db["product"].find({"_id": {"$in": oids}}, PRODUCT_SUMMARY)}


def cart_to_client(db: Database, cart: Optional[dict]) -> Dict[str, Any]:
    items = (cart or {}).get("items", [])
    products = product_summaries(db, [it["product_id"] for it in items])
    return {
        "id": str(cart["_id"]) if cart and cart.get("_id") else None,
        "items": [{**it, "product": products.get(it["product_id"])} for it in items],
        "total_items": sum(int(it.get("quantity", 0)) for it in items),
    }


def add_items_to_cart(db: Database, user_id: str, lines: List[Dict[str, Any]]) -> dict:
    """Append plain (no size/color) lines to the user's cart, merging quantities."""
    cart = db["cart"].find_one({"user_id": user_id}) or {"items": []}
    items = cart.get("items", [])
    for line in lines:
        for it in items:
            if it["product_id"] == line["product_id"] and not it.get("size") and not it.get("color"):
                it["quantity"] = int(it.get("quantity", 1)) + int(line["quantity"])
                break
        else:
            items.append({"product_id": line["product_id"], "quantity": int(line["quantity"]), "size": None, "color": None})
    return db["cart"].find_one_and_update(
        {"user_id": user_id},
        {"$set": {"items": items, "updated_at": now_utc()}, "$setOnInsert": {"created_at": now_utc()}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def clear_cart(db: Database, user_id: str) -> None:
    db["cart"].update_one({"user_id": user_id}, {"$set": {"items": [], "updated_at": now_utc()}})


# Cart
class CartItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None
    color: Optional[str] = None


@router.get("/cart")
def get_cart(current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = db["cart"].find_one({"user_id": current_user.user_id})
    return {"cart": cart_to_client(db, cart)}


@router.post("/cart")
def add_to_cart(item: CartItemIn, current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    prod = db["product"].find_one({"_id": parse_object_id(item.product_id, "product id")})
    if not prod:
        raise HTTPException(status_code=404, detail="Product not found")
    if prod.get("stock", 0) < item.quantity:
        raise HTTPException(status_code=400, detail="Not enough stock available")

    cart = db["cart"].find_one({"user_id": current_user.user_id}) or {"items": []}
    items = cart.get("items", [])
    # same variant -> set quantity
    for it in items:
        if it["product_id"] == item.product_id and it.get("size") == item.size and it.get("color") == item.color:
            it["quantity"] = item.quantity
            break
    else:
        items.append(item.model_dump())
    cart = db["cart"].find_one_and_update(
        {"user_id": current_user.user_id},
        {"$set": {"items": items, "updated_at": now_utc()}, "$setOnInsert": {"created_at": now_utc()}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return {"message": "Cart updated successfully", "cart": cart_to_client(db, cart)}


@router.delete("/cart")
def remove_from_cart(product_id: Optional[str] = None, current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    if not product_id:
        raise HTTPException(status_code=400, detail="Product ID is required")
    cart = db["cart"].find_one({"user_id": current_user.user_id})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    items = cart.get("items", [])
    new_items = [it for it in items if it["product_id"] != product_id]
    if len(new_items) == len(items):
        raise HTTPException(status_code=404, detail="Product not found in cart")
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": new_items, "updated_at": now_utc()}})
    cart["items"] = new_items
    return {"message": "Product removed from cart", "cart": cart_to_client(db, cart)}


# Wishlist
class WishlistToggle(BaseModel):
    product_id: str


def wishlist_to_client(db: Database, wishlist: Optional[dict]) -> Dict[str, Any]:
    product_ids = (wishlist or {}).get("products", [])
    products = product_summaries(db, product_ids)
    listed = [products[pid] for pid in product_ids if pid in products]
    return {"products": listed, "total_items": len(listed)}


@router.get("/wishlist")
def get_wishlist(current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    wishlist = db["wishlist"].find_one({"user_id": current_user.user_id})
    return {"wishlist": wishlist_to_client(db, wishlist)}


@router.post("/wishlist")
def toggle_wishlist(payload: WishlistToggle, current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    if not db["product"].find_one({"_id": parse_object_id(payload.product_id, "product id")}, {"_id": 1}):
        raise HTTPException(status_code=404, detail="Product not found")
    removed = db["wishlist"].update_one(
        {"user_id": current_user.user_id, "products": payload.product_id},
        {"$pull": {"products": payload.product_id}, "$set": {"updated_at": now_utc()}},
    )
    if removed.modified_count:
        message = "Product removed from wishlist."
    else:
        db["wishlist"].update_one(
            {"user_id": current_user.user_id},
            {"$addToSet": {"products": payload.product_id}, "$set": {"updated_at": now_utc()}},
            upsert=True,
        )
        message = "Product added to wishlist."
    wishlist = db["wishlist"].find_one({"user_id": current_user.user_id})
    return {"message": message, "wishlist": wishlist_to_client(db, wishlist)}
