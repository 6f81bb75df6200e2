from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from shelfsync.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")

ENTITY_TYPES = ("spaces", "people", "conference")
QUEUE_ACTIONS = ("create", "update", "delete", "link", "unlink")

QUEUE_PENDING = "pending"
QUEUE_PROCESSING = "processing"
QUEUE_COMPLETED = "completed"
QUEUE_FAILED = "failed"
QUEUE_STATUSES = (QUEUE_PENDING, QUEUE_PROCESSING, QUEUE_COMPLETED, QUEUE_FAILED)

ENTITY_SYNC_PENDING = "pending"
ENTITY_SYNC_SYNCED = "synced"
ENTITY_SYNC_FAILED = "failed"

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


class Company(Base):
    __tablename__ = "company"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    aims_base_url: Mapped[str | None] = mapped_column(Text)
    aims_cluster: Mapped[str | None] = mapped_column(Text)
    aims_username: Mapped[str | None] = mapped_column(Text)
    aims_password: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Store(Base):
    __tablename__ = "store"
    __table_args__ = (UniqueConstraint("company_id", "code", name="store_company_code"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("company.id"), nullable=False
    )
    code: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_aims_sync_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    settings: Mapped[dict | None] = mapped_column(JSON_TYPE)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class User(Base):
    __tablename__ = "app_user"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    global_role: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class StoreMembership(Base):
    __tablename__ = "store_membership"
    __table_args__ = (UniqueConstraint("user_id", "store_id", name="membership_user_store"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("app_user.id"), nullable=False
    )
    store_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("store.id"), nullable=False
    )
    role: Mapped[str] = mapped_column(Text, nullable=False)


class Space(Base):
    __tablename__ = "space"
    __table_args__ = (UniqueConstraint("store_id", "external_id", name="space_store_external"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("store.id"), nullable=False
    )
    external_id: Mapped[str] = mapped_column(Text, nullable=False)
    label_code: Mapped[str | None] = mapped_column(Text)
    data: Mapped[dict | None] = mapped_column(JSON_TYPE)
    sync_status: Mapped[str] = mapped_column(Text, nullable=False, default=ENTITY_SYNC_PENDING)
    last_synced_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Person(Base):
    __tablename__ = "person"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("store.id"), nullable=False
    )
    external_id: Mapped[str | None] = mapped_column(Text)
    assigned_space_id: Mapped[str | None] = mapped_column(Text)
    data: Mapped[dict | None] = mapped_column(JSON_TYPE)
    sync_status: Mapped[str] = mapped_column(Text, nullable=False, default=ENTITY_SYNC_PENDING)
    last_synced_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class ConferenceRoom(Base):
    __tablename__ = "conference_room"
    __table_args__ = (
        UniqueConstraint("store_id", "external_id", name="conference_store_external"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("store.id"), nullable=False
    )
    external_id: Mapped[str] = mapped_column(Text, nullable=False)
    label_code: Mapped[str | None] = mapped_column(Text)
    data: Mapped[dict | None] = mapped_column(JSON_TYPE)
    sync_status: Mapped[str] = mapped_column(Text, nullable=False, default=ENTITY_SYNC_PENDING)
    last_synced_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class SyncQueueItem(Base):
    __tablename__ = "sync_queue_item"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="sync_queue_status",
        ),
        CheckConstraint("retry_count >= 0", name="sync_queue_retry_non_negative"),
        Index("ix_sync_queue_store_status_scheduled", "store_id", "status", "scheduled_at"),
        Index("ix_sync_queue_entity", "store_id", "entity_type", "entity_id"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("store.id"), nullable=False
    )
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=QUEUE_PENDING)
    payload: Mapped[dict | None] = mapped_column(JSON_TYPE)
    error_message: Mapped[str | None] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scheduled_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    lease_owner: Mapped[str | None] = mapped_column(Text)
    lease_expires_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    processed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class SyncJob(Base):
    __tablename__ = "sync_job"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("store.id"), nullable=False
    )
    job_type: Mapped[str] = mapped_column(Text, nullable=False)
    entities: Mapped[list | None] = mapped_column(JSON_TYPE)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=JOB_QUEUED)
    stats: Mapped[dict | None] = mapped_column(JSON_TYPE)
    error_message: Mapped[str | None] = mapped_column(Text)
    requested_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("app_user.id"))
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
