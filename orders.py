"""
Order placement, cancellation and the admin order workflow.

Stock is reserved with guarded decrements (the filter requires enough stock),
so a product's stock never goes negative even when two checkouts race for the
last units. Whoever loses the race gets a 409 and any units it had already
reserved are put back.
"""

import logging
import random
from typing import Any, Dict, List, Literal, Optional, Set

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from pymongo import ReturnDocument, UpdateOne
from pymongo.database import Database

from auth import AuthContext, find_user_address, get_current_user, require_admin
from brands import get_cart_settings
from cart import clear_cart, product_summaries
from database import create_document, get_db, now_utc, parse_object_id, serialize_doc
from notifications import notify_user_quietly
from schemas import ALL_BRANDS, Order as OrderSchema, OrderLine, OrderStatus, Rejection

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["orders"])
admin_router = APIRouter(prefix="/api/admin/orders", tags=["admin"])

FREE_GIFT_ID = "free-gift-id"
FREE_GIFT_PRODUCT_ID = "66a9354045a279093079919f"
PRICE_TOLERANCE = 0.01

CANCELLED = "cancelled"
BASE_CANCELLABLE = ("pending", "on-hold")
NOT_READDRESSABLE = ("shipped", "delivered", "cancelled")

# admin-driven transitions; cancellation has its own paths
ADMIN_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"on-hold", "ready-to-ship"},
    "on-hold": {"pending", "ready-to-ship"},
    "ready-to-ship": {"shipped"},
    "shipped": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
}


class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    color: Optional[str] = None
    size: Optional[str] = None

    @field_validator("product_id")
    @classmethod
    def check_product_id(cls, v: str) -> str:
        if v != FREE_GIFT_ID and not ObjectId.is_valid(v):
            raise ValueError("Invalid product ID")
        return v


class PlaceOrderInput(BaseModel):
    items: List[OrderItemIn]
    subtotal: float = Field(..., ge=0)
    shipping_address_id: str

    @field_validator("shipping_address_id")
    @classmethod
    def check_address_id(cls, v: str) -> str:
        if not ObjectId.is_valid(v):
            raise ValueError("Invalid address ID")
        return v


def generate_order_number(db: Database) -> str:
    while True:
        number = f"ORD-{random.randint(100000, 999999)}"
        if not db["order"].find_one({"order_number": number}, {"_id": 1}):
            return number


def reserve_stock(db: Database, reservations: List[Dict[str, Any]]) -> bool:
    """Decrement stock for every reservation or for none of them.

    Each decrement only applies while the product still has enough stock.
    When one misses, the decrements already applied are rolled back.
    """
    applied = []
    for res in reservations:
        result = db["product"].update_one(
            {"_id": res["_id"], "stock": {"$gte": res["quantity"]}},
            {"$inc": {"stock": -res["quantity"]}},
        )
        if result.modified_count != 1:
            logger.warning("Stock reservation failed for product %s", res["_id"])
            release_stock(db, applied)
            return False
        applied.append(res)
    return True


def release_stock(db: Database, reservations: List[Dict[str, Any]]) -> None:
    ops = [UpdateOne({"_id": r["_id"]}, {"$inc": {"stock": r["quantity"]}}) for r in reservations]
    if ops:
        db["product"].bulk_write(ops)


def restore_order_stock(db: Database, order: dict) -> None:
    release_stock(db, [
        {"_id": ObjectId(line["product_id"]), "quantity": line["quantity"]}
        for line in order.get("products", [])
        if line["product_id"] != FREE_GIFT_PRODUCT_ID and ObjectId.is_valid(line["product_id"])
    ])


def cancellable_statuses(db: Database) -> List[str]:
    until = get_cart_settings(db).cancellable_order_status
    statuses = list(BASE_CANCELLABLE)
    if until == "ready-to-ship":
        statuses.append("ready-to-ship")
    return statuses


def place_order(db: Database, auth: AuthContext, data: PlaceOrderInput) -> dict:
    if not data.items:
        raise HTTPException(status_code=400, detail="Cannot place an empty order.")

    paid_items = [i for i in data.items if i.product_id != FREE_GIFT_ID]
    gift_items = [i for i in data.items if i.product_id == FREE_GIFT_ID]
    if not paid_items:
        raise HTTPException(status_code=400, detail="An order needs at least one paid item.")
    if len(gift_items) > 1 or any(i.quantity != 1 for i in gift_items):
        raise HTTPException(status_code=400, detail="Only one free gift is allowed per order.")

    # Stock & price verification
    product_ids = {ObjectId(i.product_id) for i in paid_items}
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": list(product_ids)}})}

    # lines for the same product draw on the same stock
    requested: Dict[str, int] = {}
    for item in paid_items:
        requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity

    calculated_subtotal = 0.0
    lines = []
    for item in paid_items:
        product = products.get(item.product_id)
        if not product:
            raise HTTPException(status_code=404, detail=f"Product with ID {item.product_id} not found.")
        stock = product.get("stock", 0)
        if stock < requested[item.product_id]:
            raise HTTPException(status_code=400, detail=f"Not enough stock for {product['name']}. Only {stock} available.")
        if product.get("selling_price") != item.price:
            raise HTTPException(status_code=409, detail=f"Price for {product['name']} has changed. Please refresh your cart.")
        calculated_subtotal += item.price * item.quantity
        lines.append(OrderLine(**item.model_dump()))

    if abs(calculated_subtotal - data.subtotal) > PRICE_TOLERANCE:
        raise HTTPException(status_code=400, detail="Total amount mismatch. Please try again.")

    if gift_items:
        threshold = get_cart_settings(db).free_gift_threshold
        if not threshold or calculated_subtotal < threshold:
            raise HTTPException(status_code=400, detail="This order does not qualify for a free gift.")
        gift = gift_items[0]
        lines.append(OrderLine(product_id=FREE_GIFT_PRODUCT_ID, quantity=1, price=0, color=gift.color, size=gift.size))

    reservations = [{"_id": products[pid]["_id"], "quantity": qty} for pid, qty in requested.items()]

    address = find_user_address(db, auth.user_id, data.shipping_address_id)
    if not address:
        raise HTTPException(status_code=404, detail="Shipping address not found.")
    shipping_address = {k: v for k, v in address.items() if k != "_id"}

    if not reserve_stock(db, reservations):
        raise HTTPException(status_code=409, detail="Some items just went out of stock. Please review your cart.")

    order = OrderSchema(
        user_id=auth.user_id,
        order_number=generate_order_number(db),
        products=lines,
        total_amount=round(calculated_subtotal, 2),
        status="pending",
        brand=auth.brand,
        shipping_address=shipping_address,
    )
    try:
        order_id = create_document(db, "order", order)
    except Exception:
        release_stock(db, reservations)
        raise

    clear_cart(db, auth.user_id)
    logger.info("Order %s placed by user %s for %.2f", order.order_number, auth.user_id, order.total_amount)

    notify_user_quietly(
        db, auth.user_id,
        title="Order Placed!",
        message=f"Your order #{order.order_number} for {order.total_amount:.2f} has been placed successfully.",
        type="order_success",
        link=f"/dashboard/orders/{order_id}",
    )
    return {"order_id": order_id, "order_number": order.order_number}


def cancel_order(db: Database, auth: AuthContext, order_id: str) -> dict:
    obj_id = parse_object_id(order_id, "order id")
    order = db["order"].find_one({"_id": obj_id, "user_id": auth.user_id})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    allowed = cancellable_statuses(db)
    if order["status"] not in allowed:
        raise HTTPException(status_code=400, detail=f"Order cannot be cancelled as it is already {order['status']}.")

    # Only the caller that flips the status restores stock.
    updated = db["order"].find_one_and_update(
        {"_id": obj_id, "user_id": auth.user_id, "status": {"$in": allowed}},
        {"$set": {"status": CANCELLED, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        current = db["order"].find_one({"_id": obj_id}, {"status": 1}) or {}
        raise HTTPException(status_code=400, detail=f"Order cannot be cancelled as it is already {current.get('status')}.")
    restore_order_stock(db, updated)
    logger.info("Order %s cancelled by user %s", updated.get("order_number"), auth.user_id)
    return updated


def order_to_client(db: Database, order: dict) -> Dict[str, Any]:
    out = serialize_doc(order)
    products = product_summaries(db, [line["product_id"] for line in order.get("products", [])])
    out["products"] = [{**line, "product": products.get(line["product_id"])} for line in out.get("products", [])]
    return out


# User endpoints
@router.post("/orders/place", status_code=201)
def place_order_route(payload: PlaceOrderInput, current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    result = place_order(db, current_user, payload)
    return {"message": "Order placed successfully", **result}


@router.get("/orders/user")
def list_user_orders(current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    orders = db["order"].find({"user_id": current_user.user_id}).sort("created_at", -1)
    return {"orders": [order_to_client(db, o) for o in orders]}


@router.get("/orders/{order_id}")
def get_order(order_id: str, current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    obj_id = parse_object_id(order_id, "order id")
    order = db["order"].find_one({"_id": obj_id, "user_id": current_user.user_id})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"order": order_to_client(db, order)}


@router.patch("/orders/{order_id}/cancel")
def cancel_order_route(order_id: str, current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    order = cancel_order(db, current_user, order_id)
    return {"message": "Order cancelled successfully", "order": serialize_doc(order)}


class UpdateAddressInput(BaseModel):
    address_id: str


@router.patch("/orders/{order_id}/update-address")
def update_order_address(order_id: str, payload: UpdateAddressInput, current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    obj_id = parse_object_id(order_id, "order id")
    order = db["order"].find_one({"_id": obj_id, "user_id": current_user.user_id})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order["status"] in NOT_READDRESSABLE:
        raise HTTPException(status_code=400, detail=f"Cannot change address for an order that is {order['status']}.")
    address = find_user_address(db, current_user.user_id, payload.address_id)
    if not address:
        raise HTTPException(status_code=404, detail="Selected address not found in your address book.")
    shipping_address = {k: v for k, v in address.items() if k != "_id"}
    order = db["order"].find_one_and_update(
        {"_id": obj_id, "status": {"$nin": list(NOT_READDRESSABLE)}},
        {"$set": {"shipping_address": shipping_address, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if not order:
        raise HTTPException(status_code=400, detail="Order can no longer be updated")
    return {"message": "Shipping address updated successfully", "order": serialize_doc(order)}


# Admin endpoints
@admin_router.get("")
def admin_list_orders(brand: Optional[str] = None, status: Optional[OrderStatus] = None, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    query: Dict[str, Any] = {}
    if brand and brand != ALL_BRANDS:
        query["brand"] = brand
    if status:
        query["status"] = status
    orders = list(db["order"].find(query).sort("created_at", -1))
    user_ids = {ObjectId(o["user_id"]) for o in orders if ObjectId.is_valid(o.get("user_id", ""))}
    users = {
        str(u["_id"]): serialize_doc(u)
        for u in db["user"].find({"_id": {"$in": list(user_ids)}}, {"first_name": 1, "last_name": 1, "email": 1})
    }
    return {"orders": [{**serialize_doc(o), "user": users.get(o["user_id"])} for o in orders]}


def transition_order(db: Database, order_id: str, new_status: str) -> dict:
    obj_id = parse_object_id(order_id, "order id")
    order = db["order"].find_one({"_id": obj_id})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    current = order["status"]
    if new_status not in ADMIN_TRANSITIONS.get(current, set()):
        raise HTTPException(status_code=400, detail=f"Cannot move order from {current} to {new_status}.")
    updated = db["order"].find_one_and_update(
        {"_id": obj_id, "status": current},
        {"$set": {"status": new_status, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=409, detail="Order was modified concurrently. Please retry.")
    notify_user_quietly(
        db, updated["user_id"],
        title="Order Update",
        message=f"Your order #{updated.get('order_number')} is now {new_status}.",
        type="order_delivery" if new_status == "delivered" else "order_status",
        link=f"/dashboard/orders/{order_id}",
    )
    return updated


@admin_router.patch("/{order_id}/accept")
def admin_accept_order(order_id: str, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    order = transition_order(db, order_id, "ready-to-ship")
    return {"message": "Order accepted", "order": serialize_doc(order)}


class StatusChange(BaseModel):
    status: Literal["pending", "on-hold", "ready-to-ship", "shipped", "delivered"]


@admin_router.patch("/{order_id}/status")
def admin_change_status(order_id: str, payload: StatusChange, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    order = transition_order(db, order_id, payload.status)
    return {"message": "Order status updated", "order": serialize_doc(order)}


class RejectInput(BaseModel):
    reason: str = Field(..., min_length=1)


@admin_router.patch("/{order_id}/reject")
def admin_reject_order(order_id: str, payload: RejectInput, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    obj_id = parse_object_id(order_id, "order id")
    order = db["order"].find_one({"_id": obj_id})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order["status"] in ("shipped", "delivered", CANCELLED):
        raise HTTPException(status_code=400, detail=f"Order cannot be rejected as it is already {order['status']}.")
    updated = db["order"].find_one_and_update(
        {"_id": obj_id, "status": order["status"]},
        {"$set": {"status": CANCELLED, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=409, detail="Order was modified concurrently. Please retry.")

    create_document(db, "rejection", Rejection(order_id=order_id, reason=payload.reason, rejected_by=admin.user_id))
    restore_order_stock(db, updated)
    logger.info("Order %s rejected by admin %s", updated.get("order_number"), admin.user_id)

    notify_user_quietly(
        db, updated["user_id"],
        title="Order Cancelled",
        message=f"Your order #{updated.get('order_number')} was cancelled: {payload.reason}",
        type="order_status",
        link=f"/dashboard/orders/{order_id}",
    )
    return {"message": "Order rejected and cancelled", "order": serialize_doc(updated)}
