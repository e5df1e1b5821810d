from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Postgres stores JSON payloads as JSONB; SQLite test databases fall back to JSON text.
JsonType = JSON().with_variant(JSONB(), "postgresql")


class RegistryBase(DeclarativeBase):
    pass


class TenantBase(DeclarativeBase):
    pass


# Registry database: shared across all tenants.


class Tenant(RegistryBase):
    __tablename__ = "tenants"
    __table_args__ = (
        UniqueConstraint("organization_id", name="uq_tenants_organization_id"),
        Index("ix_tenants_status", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # One tenant per organization; provisioning refuses duplicates.
    organization_id: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Connection coordinates are written once by provisioning and only changed by repair.
    connection_url: Mapped[str] = mapped_column(Text, nullable=False)
    host: Mapped[str] = mapped_column(String, nullable=False)
    port: Mapped[int] = mapped_column(Integer, nullable=False)
    database_name: Mapped[str] = mapped_column(String, nullable=False)
    subscription_plan: Mapped[str] = mapped_column(String, nullable=False, default="trial")
    subscription_status: Mapped[str] = mapped_column(String, nullable=False, default="trial")
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Lifecycle status downgrades to suspended instead of deleting the row.
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    schema_version: Mapped[str] = mapped_column(String, nullable=False)
    # Outbound sender coordinates used by the messaging provider.
    sender_phone_number: Mapped[str | None] = mapped_column(String, nullable=True)
    rcs_agent_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    last_accessed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DeadLetter(RegistryBase):
    __tablename__ = "dead_letters"
    __table_args__ = (
        Index("ix_dead_letters_status_created", "status", "created_at"),
        Index("ix_dead_letters_tenant_id", "tenant_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    category: Mapped[str] = mapped_column(String, nullable=False)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Job id or provider id that identifies the failed operation.
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    # pending -> resolved (replayed) | dead (given up by an operator).
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


# Tenant databases: one isolated instance per tenant, no tenant_id columns.


class Member(TenantBase):
    __tablename__ = "members"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    first_name: Mapped[str] = mapped_column(String, nullable=False)
    last_name: Mapped[str] = mapped_column(String, nullable=False)
    phone: Mapped[str] = mapped_column(String, nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    opted_out: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Message(TenantBase):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[str] = mapped_column(String, nullable=False, default="sms")
    media_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_recipients: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class MessageRecipient(TenantBase):
    __tablename__ = "message_recipients"
    __table_args__ = (
        Index("ix_message_recipients_message_status", "message_id", "status"),
        Index("ix_message_recipients_provider_message_id", "provider_message_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    message_id: Mapped[str] = mapped_column(String, ForeignKey("messages.id"), nullable=False)
    member_id: Mapped[str | None] = mapped_column(String, ForeignKey("members.id"), nullable=True)
    phone: Mapped[str] = mapped_column(String, nullable=False)
    # pending until the provider callback reports sent; failed once attempts are exhausted.
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    provider_message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    channel: Mapped[str | None] = mapped_column(String, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ConversationMessage(TenantBase):
    __tablename__ = "conversation_messages"
    __table_args__ = (
        Index("ix_conversation_messages_conversation", "conversation_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String, nullable=False)
    member_id: Mapped[str | None] = mapped_column(String, ForeignKey("members.id"), nullable=True)
    direction: Mapped[str] = mapped_column(String, nullable=False, default="outbound")
    body: Mapped[str] = mapped_column(Text, nullable=False)
    media_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    provider_message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    channel: Mapped[str | None] = mapped_column(String, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
