"""
Customer <-> breeder messaging.

Conversations group the messages two users exchange about one listing. Every
function takes the Database handle as its first argument and raises the
errors from errors.py; none of them know about HTTP.

Writes are single-document operations. A message is always inserted before
the conversation's last_message_id pointer is moved to it, and the pointer is
cleared before a conversation's messages are deleted, so the pointer never
names a message that does not exist.
"""
import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from accounts import public_user
from database import create_document, get_document, next_sequence, now_utc
from errors import Forbidden, NotFound, ValidationError
from schemas import Block as BlockSchema, Conversation as ConversationSchema, Message as MessageSchema

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 120
DEFAULT_SUBJECT = "Inquiry about dog"
MESSAGE_ORDER = [("created_at", 1), ("seq", 1)]


def _clean_body(body: Optional[str]) -> str:
    text = (body or "").strip()
    if not text:
        raise ValidationError("Message body cannot be empty")
    return text


# ---------------------------------------------------------------------------
# Block-list guard
# ---------------------------------------------------------------------------

def can_message(db: Database, sender_id: str, recipient_id: str) -> bool:
    """False when the recipient has blocked the sender."""
    return db["block"].find_one({"blocker_id": recipient_id, "blocked_id": sender_id}) is None


def block_user(db: Database, blocker_id: str, blocked_id: str) -> bool:
    """Record a block. Returns False if it already existed."""
    if blocker_id == blocked_id:
        raise ValidationError("You cannot block yourself")
    if get_document(db, "user", blocked_id) is None:
        raise NotFound("User not found")
    if db["block"].find_one({"blocker_id": blocker_id, "blocked_id": blocked_id}):
        return False
    try:
        create_document(db, "block", BlockSchema(blocker_id=blocker_id, blocked_id=blocked_id))
    except DuplicateKeyError:
        return False
    logger.info("user %s blocked %s", blocker_id, blocked_id)
    return True


def unblock_user(db: Database, blocker_id: str, blocked_id: str) -> bool:
    if get_document(db, "user", blocked_id) is None:
        raise NotFound("User not found")
    result = db["block"].delete_many({"blocker_id": blocker_id, "blocked_id": blocked_id})
    if result.deleted_count:
        logger.info("user %s unblocked %s", blocker_id, blocked_id)
    return result.deleted_count > 0


def list_blocked(db: Database, blocker_id: str) -> List[str]:
    return [b["blocked_id"] for b in db["block"].find({"blocker_id": blocker_id}).sort([("created_at", 1), ("_id", 1)])]


# ---------------------------------------------------------------------------
# Conversation store
# ---------------------------------------------------------------------------

def participants_key(user_a: str, user_b: str) -> str:
    lo, hi = sorted((user_a, user_b))
    return f"{lo}:{hi}"


def find_or_create_conversation(db: Database, user_a: str, user_b: str, listing_id: str) -> Dict[str, Any]:
    """Return the conversation for the unordered pair and listing, creating it if needed."""
    if user_a == user_b:
        raise ValidationError("A conversation needs two different participants")
    key = participants_key(user_a, user_b)
    query = {"participants_key": key, "listing_id": listing_id}
    convo = ConversationSchema(participants=sorted([user_a, user_b]), participants_key=key, listing_id=listing_id)
    on_insert = convo.model_dump(exclude={"participants_key", "listing_id"})
    now = now_utc()
    on_insert["created_at"] = now
    on_insert["updated_at"] = now
    for _ in range(2):
        try:
            return db["conversation"].find_one_and_update(
                query,
                {"$setOnInsert": on_insert},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # lost the race against a concurrent upsert of the same key
            existing = db["conversation"].find_one(query)
            if existing is not None:
                return existing
            # deleted again before the re-read; upsert once more
    raise NotFound("Conversation not found")


def get_participant_conversation(db: Database, conversation_id: str, user_id: str) -> Dict[str, Any]:
    convo = get_document(db, "conversation", conversation_id)
    if convo is None:
        raise NotFound("Conversation not found")
    if user_id not in convo.get("participants", []):
        raise Forbidden("You are not a participant in this conversation")
    return convo


def set_last_message(db: Database, conversation_oid: ObjectId, message: Dict[str, Any]) -> None:
    db["conversation"].update_one(
        {"_id": conversation_oid},
        {"$set": {
            "last_message_id": str(message["_id"]),
            "last_seq": message["seq"],
            "updated_at": now_utc(),
        }},
    )


def delete_conversation(db: Database, conversation_id: str, user_id: str) -> int:
    """Hard-delete a conversation and all its messages. Returns the number of messages removed."""
    convo = get_participant_conversation(db, conversation_id, user_id)
    db["conversation"].update_one({"_id": convo["_id"]}, {"$unset": {"last_message_id": ""}})
    result = db["message"].delete_many({"conversation_id": str(convo["_id"])})
    db["conversation"].delete_one({"_id": convo["_id"]})
    logger.info("conversation %s deleted by %s (%d messages)", convo["_id"], user_id, result.deleted_count)
    return result.deleted_count


# ---------------------------------------------------------------------------
# Message store
# ---------------------------------------------------------------------------

def _insert_message(
    db: Database,
    convo: Dict[str, Any],
    from_user_id: str,
    to_user_id: str,
    body: str,
    subject: Optional[str],
) -> Dict[str, Any]:
    msg = MessageSchema(
        conversation_id=str(convo["_id"]),
        from_user_id=from_user_id,
        to_user_id=to_user_id,
        listing_id=convo["listing_id"],
        subject=subject,
        body=body,
        read=False,
        seq=next_sequence(db, "message"),
    )
    mid = create_document(db, "message", msg)
    doc = db["message"].find_one({"_id": ObjectId(mid)})
    try:
        set_last_message(db, convo["_id"], doc)
    except PyMongoError as e:
        # the thread is read from the message collection; the pointer only orders the inbox
        logger.warning("conversation %s last_message not updated: %s", convo["_id"], e)
    logger.info("message %s sent in conversation %s", mid, convo["_id"])
    return doc


def create_message(
    db: Database,
    from_user_id: str,
    recipient_id: Optional[str],
    listing_id: Optional[str],
    body: Optional[str],
) -> Dict[str, Any]:
    if not recipient_id or not listing_id or not body:
        raise ValidationError("Missing required fields")
    text = _clean_body(body)
    recipient = get_document(db, "user", recipient_id)
    if recipient is None:
        raise NotFound("Recipient not found")
    listing = get_document(db, "dog", listing_id)
    if listing is None:
        raise NotFound("Listing not found")
    to_user_id = str(recipient["_id"])
    if not can_message(db, from_user_id, to_user_id):
        raise Forbidden("You are blocked from messaging this user")
    convo = find_or_create_conversation(db, from_user_id, to_user_id, str(listing["_id"]))
    return _insert_message(db, convo, from_user_id, to_user_id, text, DEFAULT_SUBJECT)


def list_messages(db: Database, conversation_id: str, user_id: str) -> List[Dict[str, Any]]:
    convo = get_participant_conversation(db, conversation_id, user_id)
    return list(db["message"].find({"conversation_id": str(convo["_id"])}).sort(MESSAGE_ORDER))


def mark_read(db: Database, conversation_id: str, reader_id: str) -> bool:
    """Mark the reader's unread messages in the conversation read. True if any changed."""
    convo = get_participant_conversation(db, conversation_id, reader_id)
    result = db["message"].update_many(
        {"conversation_id": str(convo["_id"]), "to_user_id": reader_id, "read": False},
        {"$set": {"read": True}},
    )
    return result.modified_count > 0


def reply_recipient(parent: Dict[str, Any], replier_id: str) -> str:
    """The other side of the parent message relative to the replier."""
    if parent["from_user_id"] == replier_id:
        return parent["to_user_id"]
    return parent["from_user_id"]


def reply(
    db: Database,
    parent_message_id: str,
    replier_id: str,
    body: Optional[str],
    recipient_id: Optional[str] = None,
) -> Dict[str, Any]:
    parent = get_document(db, "message", parent_message_id)
    if parent is None:
        raise NotFound("Original message not found")
    convo = get_participant_conversation(db, parent["conversation_id"], replier_id)
    text = _clean_body(body)
    other = next(p for p in convo["participants"] if p != replier_id)
    if recipient_id is not None and recipient_id != other:
        raise ValidationError("Recipient must be the other participant")
    to_user_id = recipient_id or reply_recipient(parent, replier_id)
    if not can_message(db, replier_id, to_user_id):
        raise Forbidden("You are blocked from messaging this user")
    return _insert_message(db, convo, replier_id, to_user_id, text, parent.get("subject"))


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------

def unread_count(db: Database, user_id: str) -> int:
    return db["message"].count_documents({"to_user_id": user_id, "read": False})


def _last_message(db: Database, convo: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    last = None
    if convo.get("last_message_id"):
        last = get_document(db, "message", convo["last_message_id"])
    if last is None:
        last = db["message"].find_one(
            {"conversation_id": str(convo["_id"])},
            sort=[("created_at", -1), ("seq", -1)],
        )
    return last


def list_conversations(db: Database, user_id: str) -> List[Dict[str, Any]]:
    """Inbox previews for the user, most recently active first."""
    convos = db["conversation"].find({"participants": user_id}).sort([("last_seq", -1), ("updated_at", -1)])
    previews = []
    for c in convos:
        cid = str(c["_id"])
        other_id = next((p for p in c["participants"] if p != user_id), None)
        other = get_document(db, "user", other_id)
        listing = get_document(db, "dog", c.get("listing_id"))
        last = _last_message(db, c)
        previews.append({
            "id": cid,
            "other": public_user(other) if other else {"id": other_id},
            "listing": {
                "id": str(listing["_id"]),
                "name": listing.get("name"),
                "slug": listing.get("slug"),
            } if listing else None,
            "last_message": {
                "id": str(last["_id"]),
                "from_user_id": last["from_user_id"],
                "snippet": last["body"][:SNIPPET_LENGTH],
                "created_at": last.get("created_at"),
            } if last else None,
            "unread": db["message"].count_documents({"conversation_id": cid, "to_user_id": user_id, "read": False}),
            "updated_at": c.get("updated_at"),
        })
    return previews
