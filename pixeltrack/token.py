"""Tracking token codec.

A token is the base64url (unpadded) encoding of a compact JSON array:

    [user_id, email_id, recipient, sent_at, sender_email?]

The trailing sender_email is omitted when absent. Tokens issued before the
positional format carried a JSON object with the same keys, and are still
accepted by decode_token.
"""
import base64
import binascii
import json
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import InvalidToken

REQUIRED_FIELDS = ("user_id", "email_id", "recipient", "sent_at")

MIN_SENT_YEAR = 1970
MAX_SENT_YEAR = 9000


class TrackingPayload(BaseModel):
    user_id: str = Field(min_length=1)
    email_id: str = Field(min_length=1)
    recipient: str = Field(min_length=1)
    sender_email: Optional[str] = None
    sent_at: datetime

    @field_validator("sent_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        # Leaves room for the guard and window arithmetic done on sent_at
        if not MIN_SENT_YEAR <= value.year <= MAX_SENT_YEAR:
            raise ValueError(f"sent_at year {value.year} is out of range")
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @field_validator("sender_email")
    @classmethod
    def _blank_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


def new_email_id() -> str:
    """Random 128-bit identifier for one outgoing tracked message."""
    return str(uuid.uuid4())


def format_timestamp(dt: datetime) -> str:
    """ISO-8601 in UTC with a Z suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


def _to_base64url(raw: str) -> str:
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def _from_base64url(token: str) -> str:
    padded = token + "=" * (-len(token) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")


def encode_token(payload: TrackingPayload) -> str:
    fields = [
        payload.user_id,
        payload.email_id,
        payload.recipient,
        format_timestamp(payload.sent_at),
    ]
    if payload.sender_email:
        fields.append(payload.sender_email)
    return _to_base64url(json.dumps(fields, separators=(",", ":"), ensure_ascii=False))


def decode_token(token: str) -> TrackingPayload:
    if not token:
        raise InvalidToken("empty token")

    try:
        decoded = json.loads(_from_base64url(token.strip()))
    except (binascii.Error, UnicodeError, ValueError, RecursionError) as e:
        raise InvalidToken(f"token could not be decoded: {e}") from e

    if isinstance(decoded, list):
        fields = dict(zip(REQUIRED_FIELDS + ("sender_email",), decoded))
    elif isinstance(decoded, dict):
        # Legacy key-value tokens
        fields = {key: decoded.get(key) for key in REQUIRED_FIELDS + ("sender_email",)}
    else:
        raise InvalidToken(f"unsupported token shape: {type(decoded).__name__}")

    missing = [key for key in REQUIRED_FIELDS if not fields.get(key)]
    if missing:
        raise InvalidToken(f"token missing required fields: {', '.join(missing)}")

    try:
        return TrackingPayload(**fields)
    except ValidationError as e:
        raise InvalidToken(f"token payload is invalid: {e.error_count()} error(s)") from e
