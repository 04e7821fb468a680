from datetime import datetime, timezone
from pathlib import Path

from fastapi import Request
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    select,
    update,
)
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class TrackedEmail(Base):
    __tablename__ = "tracked_emails"

    email_id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    recipient = Column(String(255), nullable=False)
    sender_email = Column(String(255), nullable=True)
    sent_at = Column(DateTime, nullable=False)
    open_count = Column(Integer, nullable=False, default=0, server_default="0")  # Genuine opens only
    created_at = Column(DateTime, server_default=func.now())


class OpenEvent(Base):
    __tablename__ = "open_events"
    __table_args__ = (Index("ix_open_events_email_opened", "email_id", "opened_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    email_id = Column(String(64), ForeignKey("tracked_emails.email_id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(64), nullable=False)
    recipient = Column(String(255), nullable=False)
    opened_at = Column(DateTime, nullable=False)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    geo_country = Column(String(100), nullable=True)
    geo_region = Column(String(100), nullable=True)
    geo_city = Column(String(100), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    device_type = Column(String(16), nullable=False, default="other")
    is_duplicate = Column(Boolean, nullable=False, default=False)
    is_sender_suppressed = Column(Boolean, nullable=False, default=False)
    suppression_reason = Column(String(32), nullable=True)


class SenderHeartbeat(Base):
    __tablename__ = "sender_heartbeats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email_id = Column(String(64), nullable=False, index=True)  # Heartbeat can precede the first tracking hit
    user_id = Column(String(64), nullable=False)
    sender_email = Column(String(255), nullable=True)
    seen_at = Column(DateTime, nullable=False)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(dt: datetime) -> datetime:
    """Datetimes are stored as naive UTC."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def from_db_time(dt: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime read back from the database."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def make_engine(database_url: str) -> AsyncEngine:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        return create_async_engine(url, echo=False)
    return create_async_engine(database_url, echo=False, pool_pre_ping=True, pool_timeout=5)


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db(request: Request):
    async with request.app.state.sessionmaker() as session:
        yield session


async def upsert_tracked_email(
    db: AsyncSession,
    *,
    email_id: str,
    user_id: str,
    recipient: str,
    sender_email: str | None,
    sent_at: datetime,
    created_at: datetime,
):
    """
    Insert the tracked email or refresh its identity fields.

    sender_email is coalesced so an empty value never overwrites a stored one.
    open_count is never touched here.
    """
    values = dict(
        email_id=email_id,
        user_id=user_id,
        recipient=recipient,
        sender_email=sender_email or None,
        sent_at=to_db_time(sent_at),
        open_count=0,
        created_at=to_db_time(created_at),
    )
    dialect = db.bind.dialect.name

    if dialect in ("sqlite", "postgresql"):
        insert = sqlite_insert if dialect == "sqlite" else postgresql_insert
        stmt = insert(TrackedEmail).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[TrackedEmail.email_id],
            set_=dict(
                user_id=stmt.excluded.user_id,
                recipient=stmt.excluded.recipient,
                sent_at=stmt.excluded.sent_at,
                sender_email=func.coalesce(
                    func.nullif(stmt.excluded.sender_email, ""), TrackedEmail.sender_email
                ),
            ),
        )
        await db.execute(stmt)
        return

    if dialect in ("mysql", "mariadb"):
        stmt = mysql_insert(TrackedEmail).values(**values)
        stmt = stmt.on_duplicate_key_update(
            user_id=stmt.inserted.user_id,
            recipient=stmt.inserted.recipient,
            sent_at=stmt.inserted.sent_at,
            sender_email=func.coalesce(
                func.nullif(stmt.inserted.sender_email, ""), TrackedEmail.sender_email
            ),
        )
        await db.execute(stmt)
        return

    # Generic fallback for dialects without an upsert construct
    result = await db.execute(select(TrackedEmail.email_id).where(TrackedEmail.email_id == email_id))
    if result.scalar_one_or_none() is None:
        db.add(TrackedEmail(**values))
        await db.flush()
        return

    refreshed = dict(user_id=user_id, recipient=recipient, sent_at=values["sent_at"])
    if sender_email:
        refreshed["sender_email"] = sender_email
    await db.execute(update(TrackedEmail).where(TrackedEmail.email_id == email_id).values(**refreshed))
