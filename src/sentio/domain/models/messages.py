"""Inbound and outbound message types."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sentio.domain.models.utils import ensure_utc, utc_now

MessageId = str


class InboundMessage(BaseModel):
    """A parsed, deduplicated message delivered by the inbound source."""

    model_config = ConfigDict(frozen=True)

    sender_address: str = Field(min_length=1)
    subject: str = ""
    body_text: str = ""
    received_at: datetime = Field(default_factory=utc_now)
    message_id: MessageId | None = None

    @field_validator("sender_address")
    @classmethod
    def normalize_sender(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("sender_address must not be blank")
        return value

    @field_validator("received_at")
    @classmethod
    def normalize_received_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def user_id(self) -> str:
        """Memory records are keyed by the normalized sender address."""
        return self.sender_address


class OutgoingMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    to: str
    sender: str
    subject: str
    body: str
    in_reply_to: MessageId | None = None

    @classmethod
    def reply_to(cls, message: InboundMessage, body: str, sender: str, prefix: str = "Re: ") -> "OutgoingMessage":
        subject = message.subject or ""
        if not subject.lower().startswith(prefix.strip().lower()):
            subject = f"{prefix}{subject}"
        return cls(to=message.sender_address, sender=sender, subject=subject, body=body, in_reply_to=message.message_id)
