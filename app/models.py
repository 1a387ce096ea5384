"""
Data models for the Email Auto-Responder
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from enum import Enum


class ConnectionState(str, Enum):
    """State of the mailbox connection owned by the inbox watcher"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    ERROR = "error"


class IncomingMessage(BaseModel):
    """A message fetched from the mailbox and parsed"""
    uid: str = Field(..., description="Sequence identifier in the mailbox")
    message_id: Optional[str] = Field(default=None, description="Message-ID header, if present")
    sender: str = Field(default="", description="Bare address of the first From entry")
    subject: str = "No subject"
    body_text: str = ""
    body_html: str = ""
    in_reply_to: Optional[str] = None
    references: Optional[str] = None


class ReplyDraft(BaseModel):
    """A reply ready to hand to the mail transport"""
    recipient: str = Field(..., description="Bare address, already matched against ALLOWED_SENDER")
    subject: str
    body_text: str
    body_html: str
    in_reply_to: Optional[str] = None
    references: Optional[str] = None


class DeliveryReceipt(BaseModel):
    """Result of a successful SMTP delivery"""
    recipient: str
    subject: str
    response: str = ""
    sent_at: datetime = Field(default_factory=datetime.utcnow)


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    service: str = "email-auto-responder"
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class CheckNowResponse(BaseModel):
    """Response of the manual check trigger"""
    message: str
