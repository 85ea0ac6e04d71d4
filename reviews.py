from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, HttpUrl
from pymongo import ReturnDocument
from pymongo.database import Database

from auth import AuthContext, get_current_user
from database import create_document, get_db, now_utc, parse_object_id, serialize_doc
from schemas import Review as ReviewSchema

router = APIRouter(prefix="/api/reviews", tags=["reviews"])


class ReviewIn(BaseModel):
    product_id: str
    rating: int = Field(..., ge=1, le=5)
    review_text: str = Field(..., min_length=1)
    images: List[HttpUrl] = []


def style_member_ids(db: Database, product_oid: ObjectId) -> List[str]:
    """Ids of every variant sharing the product's style (or just the product)."""
    product = db["product"].find_one({"_id": product_oid}, {"style_id": 1})
    if not product or not product.get("style_id"):
        return [str(product_oid)]
    return [str(p["_id"]) for p in db["product"].find({"style_id": product["style_id"]}, {"_id": 1})]


def review_stats(db: Database, product_ids: List[str]) -> Dict[str, Any]:
    stats = list(db["review"].aggregate([
        {"$match": {"product_id": {"$in": product_ids}}},
        {"$group": {"_id": None, "total_ratings": {"$sum": 1}, "average_rating": {"$avg": "$rating"}}},
    ]))
    if not stats:
        return {"total_ratings": 0, "total_reviews": 0, "average_rating": 0}
    total_reviews = db["review"].count_documents({"product_id": {"$in": product_ids}, "review": {"$ne": ""}})
    return {
        "total_ratings": stats[0]["total_ratings"],
        "total_reviews": total_reviews,
        "average_rating": stats[0]["average_rating"] or 0,
    }


@router.post("", status_code=201)
def submit_review(payload: ReviewIn, current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    product_oid = parse_object_id(payload.product_id, "product id")
    if not db["product"].find_one({"_id": product_oid}, {"_id": 1}):
        raise HTTPException(status_code=404, detail="Product not found")
    if db["review"].find_one({"product_id": payload.product_id, "user_id": current_user.user_id}):
        raise HTTPException(status_code=409, detail="You have already reviewed this product.")
    has_purchased = db["order"].find_one({
        "user_id": current_user.user_id,
        "products.product_id": payload.product_id,
        "status": "delivered",
    })
    if not has_purchased:
        raise HTTPException(status_code=403, detail="You can only review products you've purchased and received.")

    review = ReviewSchema(
        product_id=payload.product_id,
        user_id=current_user.user_id,
        user_name=current_user.name,
        rating=payload.rating,
        review=payload.review_text,
        images=[str(i) for i in payload.images],
    )
    review_id = create_document(db, "review", review)

    stats = review_stats(db, [payload.product_id])
    db["product"].update_one({"_id": product_oid}, {"$set": {"rating": stats["average_rating"], "updated_at": now_utc()}})
    return {"message": "Review submitted successfully", "review": serialize_doc(db["review"].find_one({"_id": ObjectId(review_id)}))}


@router.post("/like/{review_id}")
def like_review(review_id: str, db: Database = Depends(get_db)):
    review = db["review"].find_one_and_update(
        {"_id": parse_object_id(review_id, "review id")},
        {"$inc": {"likes": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    return {"message": "Review liked successfully", "review": serialize_doc(review)}


@router.get("/{product_id}")
def list_reviews(product_id: str, limit: Optional[int] = 10, db: Database = Depends(get_db)):
    ids = style_member_ids(db, parse_object_id(product_id, "product id"))
    reviews = db["review"].find({"product_id": {"$in": ids}}).sort("likes", -1).limit(limit or 10)
    return {"reviews": [serialize_doc(r) for r in reviews]}


@router.get("/{product_id}/stats")
def get_review_stats(product_id: str, db: Database = Depends(get_db)):
    ids = style_member_ids(db, parse_object_id(product_id, "product id"))
    return review_stats(db, ids)
