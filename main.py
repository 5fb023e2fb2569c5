import logging
import os
import re
from contextlib import asynccontextmanager
from uuid import uuid4
from datetime import datetime, timezone
from typing import Optional, Literal, Dict, Any

from fastapi import FastAPI, Depends, Request, Response, BackgroundTasks
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import audit
import messaging
from accounts import (
    ADMINISTRATORS,
    LISTING_MANAGERS,
    SELF_REGISTERABLE,
    has_permission,
    hash_password,
    public_user,
    resolve_user,
    verify_password,
)
from database import connect, create_document, ensure_indexes, get_document
from errors import AppError, Forbidden, NotFound, ServerError, Unauthenticated, ValidationError
from schemas import (
    BreederProfile,
    Consent,
    Dog as DogSchema,
    Role,
    Session as SessionSchema,
    User as UserSchema,
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logger = logging.getLogger(__name__)

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "").lower()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    db = connect()
    ensure_indexes(db)
    app.state.db = db
    logger.info("connected to database %s", db.name)
    yield
    db.client.close()


app = FastAPI(title="Kennel Messenger API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

security = HTTPBearer(auto_error=False)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for e in exc.errors():
        loc = e["loc"][1:] if e["loc"] and e["loc"][0] == "body" else e["loc"]
        field = ".".join(str(p) for p in loc) or "body"
        problems.append(f"{field}: {e['msg']}")
    detail = "; ".join(problems) or ValidationError.default_detail
    return JSONResponse(status_code=ValidationError.status_code, content={"detail": detail})


@app.exception_handler(PyMongoError)
async def storage_error_handler(request: Request, exc: PyMongoError):
    logger.error("storage error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=ServerError.status_code, content={"detail": ServerError.default_detail})


def get_db(request: Request) -> Database:
    return request.app.state.db


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


class SignupPayload(BaseModel):
    email: str
    username: str
    password: str
    role: Role = Role.CUSTOMER
    consent: bool = False
    kennel_name: Optional[str] = None
    location: Optional[str] = None


class LoginPayload(BaseModel):
    identifier: str  # email or username
    password: str


class SendMessagePayload(BaseModel):
    recipient_id: Optional[str] = None
    listing_id: Optional[str] = None
    body: Optional[str] = None


class ReplyPayload(BaseModel):
    body: Optional[str] = None
    recipient_id: Optional[str] = None


class DogPayload(BaseModel):
    name: str
    breed: str
    description: Optional[str] = None
    status: Literal["draft", "published", "archived"] = "draft"
    visibility: Literal["public", "private"] = "public"
    image_url: Optional[str] = None


def message_out(m: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(m["_id"]),
        "conversation_id": m.get("conversation_id"),
        "from_user_id": m.get("from_user_id"),
        "to_user_id": m.get("to_user_id"),
        "listing_id": m.get("listing_id"),
        "subject": m.get("subject"),
        "body": m.get("body"),
        "read": m.get("read", False),
        "created_at": m.get("created_at"),
    }


def dog_out(d: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(d["_id"]),
        "breeder_id": d.get("breeder_id"),
        "name": d.get("name"),
        "breed": d.get("breed"),
        "description": d.get("description"),
        "status": d.get("status"),
        "visibility": d.get("visibility"),
        "image_url": d.get("image_url"),
        "slug": d.get("slug"),
        "created_at": d.get("created_at"),
    }


@app.get("/")
def read_root():
    return {"message": "Kennel Messenger API running"}


@app.get("/healthz")
def healthz():
    return {"ok": True, "time": datetime.now(timezone.utc).isoformat()}


def get_current_session(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Database = Depends(get_db),
):
    if creds is None:
        raise Unauthenticated("Not authenticated")
    sess = db["session"].find_one({"token": creds.credentials, "valid": True})
    if not sess:
        raise Unauthenticated("Invalid session")
    user = get_document(db, "user", sess["user_id"])
    if not user:
        raise Unauthenticated("User not found")
    if user.get("is_locked", False):
        db["session"].update_many({"user_id": str(user["_id"])}, {"$set": {"valid": False}})
        raise Forbidden("Account is locked")
    return {"session": sess, "user": user, "user_id": str(user["_id"])}


def get_optional_session(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Database = Depends(get_db),
):
    if creds is None:
        return None
    return get_current_session(creds, db)


def require_admin(ctx=Depends(get_current_session)):
    if not has_permission(ADMINISTRATORS, ctx["user"]):
        raise Forbidden("Admin only")
    return ctx


def open_session(db: Database, user: Dict[str, Any], request: Request) -> str:
    token = uuid4().hex
    sess = SessionSchema(user_id=str(user["_id"]), token=token, role=user.get("role", Role.CUSTOMER), ip=client_ip(request))
    create_document(db, "session", sess)
    return token


# ---------------------------------------------
# Auth
# ---------------------------------------------

@app.post("/auth/signup")
def signup(payload: SignupPayload, request: Request, background_tasks: BackgroundTasks, db: Database = Depends(get_db)):
    email = payload.email.strip().lower()
    username = payload.username.strip().lower()
    if not email or not username or not payload.password:
        raise ValidationError("Email, username and password are required")
    if db["user"].find_one({"$or": [{"email": email}, {"username": username}]}):
        raise ValidationError("Email or username already exists")
    is_bootstrap_admin = bool(ADMIN_EMAIL) and email == ADMIN_EMAIL
    if not is_bootstrap_admin and not SELF_REGISTERABLE[payload.role]:
        raise ValidationError("Role cannot be self-registered")
    role = Role.ADMIN if is_bootstrap_admin else payload.role
    user_data = UserSchema(
        email=email,
        username=username,
        password_hash=hash_password(payload.password),
        role=role,
        consent=Consent(agreed=payload.consent, ip=client_ip(request)),
        breeder_profile=BreederProfile(kennel_name=payload.kennel_name, location=payload.location) if role == Role.BREEDER else None,
    )
    try:
        user_id = create_document(db, "user", user_data)
    except DuplicateKeyError:
        raise ValidationError("Email or username already exists")
    user_doc = get_document(db, "user", user_id)

    # auto login
    token = open_session(db, user_doc, request)
    background_tasks.add_task(audit.record_audit, db, audit.SIGNUP, user_id, client_ip(request), {"role": role.value})
    return {"token": token, "user": public_user(user_doc), "role": role.value}


@app.post("/auth/login")
def login(payload: LoginPayload, request: Request, background_tasks: BackgroundTasks, db: Database = Depends(get_db)):
    identifier = payload.identifier.strip().lower()
    user = db["user"].find_one({"$or": [{"username": identifier}, {"email": identifier}]})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        # raised errors skip background tasks, so record inline
        audit.record_audit(db, audit.LOGIN_FAILED, None, client_ip(request), {"identifier": identifier})
        raise Unauthenticated("Invalid credentials")
    if user.get("is_locked", False):
        raise Forbidden("Account is locked")

    token = open_session(db, user, request)
    background_tasks.add_task(audit.record_audit, db, audit.LOGIN_SUCCESS, str(user["_id"]), client_ip(request))
    return {"token": token, "user": public_user(user), "role": user.get("role")}


@app.post("/auth/logout")
def logout(request: Request, background_tasks: BackgroundTasks, ctx=Depends(get_current_session), db: Database = Depends(get_db)):
    db["session"].update_one({"_id": ctx["session"]["_id"]}, {"$set": {"valid": False}})
    background_tasks.add_task(audit.record_audit, db, audit.LOGOUT, ctx["user_id"], client_ip(request))
    return {"ok": True}


@app.get("/me")
def get_me(ctx=Depends(get_current_session)):
    return public_user(ctx["user"])


# ---------------------------------------------
# Messaging
# ---------------------------------------------

@app.post("/messages")
def send_message(payload: SendMessagePayload, request: Request, background_tasks: BackgroundTasks,
                 ctx=Depends(get_current_session), db: Database = Depends(get_db)):
    msg = messaging.create_message(db, ctx["user_id"], payload.recipient_id, payload.listing_id, payload.body)
    background_tasks.add_task(audit.record_audit, db, audit.MESSAGE_SENT, ctx["user_id"], client_ip(request),
                              {"conversation_id": msg["conversation_id"]})
    return message_out(msg)


@app.get("/messages/conversations")
def conversations(ctx=Depends(get_current_session), db: Database = Depends(get_db)):
    return messaging.list_conversations(db, ctx["user_id"])


@app.get("/messages/conversation/{conversation_id}")
def get_conversation(conversation_id: str, response: Response, ctx=Depends(get_current_session), db: Database = Depends(get_db)):
    msgs = messaging.list_messages(db, conversation_id, ctx["user_id"])
    response.headers["Cache-Control"] = "no-store"
    return [message_out(m) for m in msgs]


@app.post("/messages/{message_id}/reply")
def reply_message(message_id: str, payload: ReplyPayload, request: Request, background_tasks: BackgroundTasks,
                  ctx=Depends(get_current_session), db: Database = Depends(get_db)):
    msg = messaging.reply(db, message_id, ctx["user_id"], payload.body, payload.recipient_id)
    background_tasks.add_task(audit.record_audit, db, audit.MESSAGE_SENT, ctx["user_id"], client_ip(request),
                              {"conversation_id": msg["conversation_id"], "reply_to": message_id})
    return message_out(msg)


@app.post("/messages/conversation/{conversation_id}/read")
def mark_conversation_read(conversation_id: str, ctx=Depends(get_current_session), db: Database = Depends(get_db)):
    return {"updated": messaging.mark_read(db, conversation_id, ctx["user_id"])}


@app.get("/messages/unread/count")
def unread_count(ctx=Depends(get_current_session), db: Database = Depends(get_db)):
    return {"count": messaging.unread_count(db, ctx["user_id"])}


@app.delete("/messages/conversation/{conversation_id}")
def delete_conversation(conversation_id: str, request: Request, background_tasks: BackgroundTasks,
                        ctx=Depends(get_current_session), db: Database = Depends(get_db)):
    removed = messaging.delete_conversation(db, conversation_id, ctx["user_id"])
    background_tasks.add_task(audit.record_audit, db, audit.CONVERSATION_DELETED, ctx["user_id"], client_ip(request),
                              {"conversation_id": conversation_id, "messages": removed})
    return {"message": "Conversation deleted"}


# ---------------------------------------------
# Blocking
# ---------------------------------------------

@app.get("/block")
def blocked_users(ctx=Depends(get_current_session), db: Database = Depends(get_db)):
    return {"blocked": messaging.list_blocked(db, ctx["user_id"])}


@app.post("/block/{user_id}")
def block_user(user_id: str, request: Request, background_tasks: BackgroundTasks,
               ctx=Depends(get_current_session), db: Database = Depends(get_db)):
    if messaging.block_user(db, ctx["user_id"], user_id):
        background_tasks.add_task(audit.record_audit, db, audit.USER_BLOCKED, ctx["user_id"], client_ip(request),
                                  {"blocked_id": user_id})
    return {"message": "User blocked"}


@app.delete("/block/{user_id}")
def unblock_user(user_id: str, request: Request, background_tasks: BackgroundTasks,
                 ctx=Depends(get_current_session), db: Database = Depends(get_db)):
    if messaging.unblock_user(db, ctx["user_id"], user_id):
        background_tasks.add_task(audit.record_audit, db, audit.USER_UNBLOCKED, ctx["user_id"], client_ip(request),
                                  {"blocked_id": user_id})
    return {"message": "User unblocked"}


# ---------------------------------------------
# Listings
# ---------------------------------------------

def slugify(text: str) -> str:
    return re.sub(r"[\s\W-]+", "-", text.lower().strip()).strip("-")


def find_dog(db: Database, id_or_slug: str) -> Optional[dict]:
    return get_document(db, "dog", id_or_slug) or db["dog"].find_one({"slug": id_or_slug})


def can_edit_dog(user: Dict[str, Any], dog: Dict[str, Any]) -> bool:
    return dog.get("breeder_id") == str(user["_id"]) or has_permission(ADMINISTRATORS, user)


@app.post("/dogs")
def create_dog(payload: DogPayload, ctx=Depends(get_current_session), db: Database = Depends(get_db)):
    if not has_permission(LISTING_MANAGERS, ctx["user"]):
        raise Forbidden("Only breeders can create listings")
    name = payload.name.strip()
    if not name:
        raise ValidationError("Name is required")
    dog = DogSchema(
        breeder_id=ctx["user_id"],
        name=name,
        breed=payload.breed.strip(),
        description=payload.description,
        status=payload.status,
        visibility=payload.visibility,
        image_url=payload.image_url,
        slug=f"{slugify(name) or 'dog'}-{uuid4().hex[:6]}",
    )
    dog_id = create_document(db, "dog", dog)
    return dog_out(get_document(db, "dog", dog_id))


@app.get("/dogs")
def search_dogs(q: Optional[str] = None, db: Database = Depends(get_db)):
    query: Dict[str, Any] = {"status": "published", "visibility": "public"}
    if q:
        pattern = re.escape(q.strip())
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"breed": {"$regex": pattern, "$options": "i"}},
        ]
    return [dog_out(d) for d in db["dog"].find(query).sort("created_at", -1).limit(50)]


@app.get("/dogs/{id_or_slug}")
def get_dog(id_or_slug: str, ctx=Depends(get_optional_session), db: Database = Depends(get_db)):
    dog = find_dog(db, id_or_slug)
    if not dog:
        raise NotFound("Dog not found")
    is_public = dog.get("status") == "published" and dog.get("visibility") == "public"
    if not is_public and (ctx is None or not can_edit_dog(ctx["user"], dog)):
        raise NotFound("Dog not found")
    return dog_out(dog)


@app.delete("/dogs/{dog_id}")
def delete_dog(dog_id: str, ctx=Depends(get_current_session), db: Database = Depends(get_db)):
    dog = get_document(db, "dog", dog_id)
    if not dog:
        raise NotFound("Dog not found")
    if not can_edit_dog(ctx["user"], dog):
        raise Forbidden("Not authorized to delete this dog")
    db["dog"].delete_one({"_id": dog["_id"]})
    logger.info("dog %s deleted by %s", dog_id, ctx["user_id"])
    return {"message": "Dog deleted"}


# ---------------------------------------------
# Admin
# ---------------------------------------------

@app.get("/admin/users")
def admin_list_users(ctx=Depends(require_admin), db: Database = Depends(get_db)):
    result = []
    for u in db["user"].find({}).sort("created_at", 1):
        item = public_user(u)
        item["is_locked"] = u.get("is_locked", False)
        result.append(item)
    return result


def set_locked(db: Database, user_id: str, locked: bool) -> Dict[str, Any]:
    u = resolve_user(db, user_id)
    if not u:
        raise NotFound("User not found")
    db["user"].update_one({"_id": u["_id"]}, {"$set": {"is_locked": locked, "updated_at": datetime.now(timezone.utc)}})
    if locked:
        db["session"].update_many({"user_id": str(u["_id"])}, {"$set": {"valid": False}})
    logger.info("user %s %s", u["_id"], "locked" if locked else "unlocked")
    return u


@app.post("/admin/lock/{user_id}")
def admin_lock(user_id: str, request: Request, background_tasks: BackgroundTasks,
               ctx=Depends(require_admin), db: Database = Depends(get_db)):
    target = resolve_user(db, user_id)
    if target and str(target["_id"]) == ctx["user_id"]:
        raise ValidationError("You cannot lock your own account")
    u = set_locked(db, user_id, True)
    background_tasks.add_task(audit.record_audit, db, audit.USER_LOCKED, ctx["user_id"], client_ip(request),
                              {"target_id": str(u["_id"])})
    return {"ok": True}


@app.post("/admin/unlock/{user_id}")
def admin_unlock(user_id: str, request: Request, background_tasks: BackgroundTasks,
                 ctx=Depends(require_admin), db: Database = Depends(get_db)):
    u = set_locked(db, user_id, False)
    background_tasks.add_task(audit.record_audit, db, audit.USER_UNLOCKED, ctx["user_id"], client_ip(request),
                              {"target_id": str(u["_id"])})
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
