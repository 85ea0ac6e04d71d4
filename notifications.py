import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.database import Database

from auth import AuthContext, get_current_user, require_admin
from database import create_document, get_db, now_utc, parse_object_id, serialize_doc
from schemas import Notification as NotificationSchema, NotificationType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def notify_user(db: Database, user_id: str, title: str, message: str, type: str, link: str = "") -> str:
    notification = NotificationSchema(
        recipient_users=[user_id], title=title, message=message, type=type, link=link,
    )
    return create_document(db, "notification", notification)


def notify_user_quietly(db: Database, user_id: str, title: str, message: str, type: str, link: str = "") -> Optional[str]:
    """Like notify_user, but a failure is logged instead of raised."""
    try:
        return notify_user(db, user_id, title, message, type, link)
    except Exception:
        logger.exception("Failed to create %s notification for user %s", type, user_id)
        return None


def notification_to_client(doc: dict, user_id: str) -> Dict[str, Any]:
    out = serialize_doc(doc)
    out["is_read"] = user_id in doc.get("read_by", [])
    out.pop("recipient_users", None)
    out.pop("read_by", None)
    return out


@router.get("")
def list_notifications(current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    docs = db["notification"].find({"recipient_users": current_user.user_id}).sort("created_at", -1)
    return {"notifications": [notification_to_client(d, current_user.user_id) for d in docs]}


@router.post("/mark-all-read")
def mark_all_read(current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    db["notification"].update_many(
        {"recipient_users": current_user.user_id},
        {"$addToSet": {"read_by": current_user.user_id}},
    )
    return {"message": "All notifications marked as read"}


class BroadcastInput(BaseModel):
    title: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    link: Optional[str] = None
    type: NotificationType = "admin_announcement"


@router.post("/broadcast")
def broadcast(payload: BroadcastInput, admin: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    users: List[dict] = list(db["user"].find(
        {"roles": {"$ne": "admin"}, "is_deleted": {"$ne": True}, "status": {"$ne": "blocked"}},
        {"_id": 1},
    ))
    if not users:
        return {"message": "No users found to send notifications to.", "notification_count": 0}
    now = now_utc()
    docs = []
    for user in users:
        doc = NotificationSchema(
            recipient_users=[str(user["_id"])],
            title=payload.title,
            message=payload.message,
            link=payload.link or "",
            type=payload.type,
        ).model_dump()
        doc["created_at"] = doc["updated_at"] = now
        docs.append(doc)
    db["notification"].insert_many(docs)
    logger.info("Broadcast '%s' to %d users", payload.title, len(docs))
    return {"message": "Notifications sent successfully", "notification_count": len(docs)}


@router.patch("/{notification_id}")
def mark_read(notification_id: str, current_user: AuthContext = Depends(get_current_user), db: Database = Depends(get_db)):
    obj_id = parse_object_id(notification_id, "notification id")
    doc = db["notification"].find_one_and_update(
        {"_id": obj_id, "recipient_users": current_user.user_id},
        {"$addToSet": {"read_by": current_user.user_id}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=404, detail="Notification not found or not intended for user")
    return {"message": "Notification marked as read", "notification": notification_to_client(doc, current_user.user_id)}
