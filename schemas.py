"""
Database Schemas for Kennel Messenger

Each Pydantic model represents a MongoDB collection (collection name is the lowercase class name).
References between documents are stored as string ids.
"""
from enum import Enum
from typing import List, Optional, Literal
from pydantic import BaseModel, Field


class Role(str, Enum):
    ADMIN = "admin"
    BREEDER = "breeder"
    CUSTOMER = "customer"


class Consent(BaseModel):
    agreed: bool = False
    version: str = "v1.0"
    ip: Optional[str] = None


class BreederProfile(BaseModel):
    kennel_name: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None


class User(BaseModel):
    email: str = Field(..., description="Unique email (lowercase)")
    username: str = Field(..., description="Unique username (lowercase, no spaces)")
    password_hash: str = Field(..., description="salt$hash, pbkdf2-sha256")
    role: Role = Field(Role.CUSTOMER, description="Closed role set")
    is_verified: bool = Field(False, description="Email verified")
    is_locked: bool = Field(False, description="Locked by an admin")
    consent: Consent = Field(default_factory=Consent)
    breeder_profile: Optional[BreederProfile] = None
    favorites: List[str] = Field(default_factory=list, description="Dog ids")


class Session(BaseModel):
    user_id: str
    token: str
    role: Role = Role.CUSTOMER
    ip: Optional[str] = None
    valid: bool = True


class Dog(BaseModel):
    breeder_id: str
    name: str
    breed: str
    description: Optional[str] = None
    status: Literal["draft", "published", "archived"] = "draft"
    visibility: Literal["public", "private"] = "public"
    image_url: Optional[str] = None
    slug: str


class Conversation(BaseModel):
    participants: List[str] = Field(..., min_length=2, max_length=2, description="Sorted user ids")
    participants_key: str = Field(..., description="'<lo>:<hi>' of the sorted participant ids")
    listing_id: str
    last_message_id: Optional[str] = Field(None, description="Display pointer only")
    last_seq: int = Field(0, description="seq of the last message, orders the inbox")


class Message(BaseModel):
    conversation_id: str
    from_user_id: str
    to_user_id: str
    listing_id: str
    subject: Optional[str] = None
    body: str = Field(..., min_length=1)
    read: bool = False
    seq: int = Field(..., description="Insertion sequence, breaks created_at ties")


class Block(BaseModel):
    blocker_id: str
    blocked_id: str


class Auditlog(BaseModel):
    action: str
    user_id: Optional[str] = None
    ip: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
