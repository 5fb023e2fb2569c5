"""
Best-effort audit trail.

Entries are written from BackgroundTasks after the response is sent; a failed
write is logged and dropped, never surfaced to the caller.
"""
import logging
from typing import Any, Dict, Optional

from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document
from schemas import Auditlog as AuditlogSchema

logger = logging.getLogger(__name__)

SIGNUP = "SIGNUP"
LOGIN_SUCCESS = "LOGIN_SUCCESS"
LOGIN_FAILED = "LOGIN_FAILED"
LOGOUT = "LOGOUT"
MESSAGE_SENT = "MESSAGE_SENT"
CONVERSATION_DELETED = "CONVERSATION_DELETED"
USER_BLOCKED = "USER_BLOCKED"
USER_UNBLOCKED = "USER_UNBLOCKED"
USER_LOCKED = "USER_LOCKED"
USER_UNLOCKED = "USER_UNLOCKED"


def record_audit(
    db: Database,
    action: str,
    user_id: Optional[str] = None,
    ip: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    entry = AuditlogSchema(action=action, user_id=user_id, ip=ip, metadata=metadata or {})
    try:
        create_document(db, "auditlog", entry)
    except PyMongoError as e:
        logger.warning("audit entry %s dropped: %s", action, e)
