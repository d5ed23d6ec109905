from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean, Column, Integer, String, Text, DateTime, ForeignKey, JSON,
    Index, UniqueConstraint, Enum
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

TODOIST_PROVIDER = "todoist"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

# --- Enums ---

class TaskPriority(PyEnum):
    none = "none"
    low = "low"
    medium = "medium"
    high = "high"

class DueDatePrecision(PyEnum):
    day = "day"
    week = "week"
    month = "month"
    year = "year"

class MappingEntityType(PyEnum):
    list = "list"
    list_label = "list_label"
    task = "task"
    label = "label"

class SyncStatus(PyEnum):
    idle = "idle"
    syncing = "syncing"
    error = "error"

class ConflictStatus(PyEnum):
    pending = "pending"
    resolved = "resolved"

class ConflictResolution(PyEnum):
    local = "local"
    remote = "remote"

# --- Local store ---

class TaskList(Base):
    __tablename__ = "lists"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    name = Column(Text, nullable=False)
    slug = Column(String, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("user_id", "slug", name="uq_lists_user_slug"),
        Index("idx_lists_user_position", "user_id", "position"),
    )

class Label(Base):
    __tablename__ = "labels"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    name = Column(Text, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_labels_user", "user_id"),
    )

class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    list_id = Column(Integer, ForeignKey("lists.id", ondelete="SET NULL"), nullable=True)
    parent_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(Enum(TaskPriority), nullable=False, default=TaskPriority.none)
    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    due_date_precision = Column(Enum(DueDatePrecision), nullable=True)
    deadline = Column(DateTime(timezone=True), nullable=True)
    estimate_minutes = Column(Integer, nullable=True)
    is_recurring = Column(Boolean, nullable=False, default=False)
    recurring_rule = Column(Text, nullable=True)
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("idx_tasks_user_list", "user_id", "list_id"),
        Index("idx_tasks_user_updated", "user_id", updated_at.desc()),
    )

class TaskLabel(Base):
    __tablename__ = "task_labels"

    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True)
    label_id = Column(Integer, ForeignKey("labels.id", ondelete="CASCADE"), primary_key=True)

# --- External integration ---

class ExternalIntegration(Base):
    __tablename__ = "external_integrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    access_token_encrypted = Column(Text, nullable=False)
    access_token_iv = Column(String, nullable=False)
    access_token_tag = Column(String, nullable=False)
    access_token_key_id = Column(String, nullable=False, default="default")
    refresh_token_encrypted = Column(Text, nullable=True)
    refresh_token_iv = Column(String, nullable=True)
    refresh_token_tag = Column(String, nullable=True)
    refresh_token_key_id = Column(String, nullable=True)
    scopes = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_external_integrations_user_provider"),
    )

class ExternalEntityMap(Base):
    __tablename__ = "external_entity_map"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    entity_type = Column(Enum(MappingEntityType), nullable=False)
    local_id = Column(Integer, nullable=True)  # null = explicitly mapped to nothing
    external_id = Column(String, nullable=False)
    external_parent_id = Column(String, nullable=True)
    local_version = Column(DateTime(timezone=True), nullable=True)
    remote_version = Column(String, nullable=True)
    due_precision = Column(Enum(DueDatePrecision), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", "entity_type", "external_id", name="uq_entity_map_external"),
        # Unique indexes treat NULLs as distinct, so explicit "map to nothing" rows never collide.
        Index("idx_entity_map_local_lookup", "user_id", "provider", "entity_type", "local_id", unique=True),
    )

class ExternalSyncState(Base):
    __tablename__ = "external_sync_state"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    status = Column(Enum(SyncStatus), nullable=False, default=SyncStatus.idle)
    sync_started_at = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_external_sync_state_user_provider"),
    )

class ExternalSyncConflict(Base):
    __tablename__ = "external_sync_conflicts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    entity_type = Column(Enum(MappingEntityType), nullable=False)
    local_id = Column(Integer, nullable=True)
    external_id = Column(String, nullable=True)
    conflict_type = Column(String, nullable=False, default="both_modified")
    local_payload = Column(JSON, nullable=True)
    external_payload = Column(JSON, nullable=True)
    status = Column(Enum(ConflictStatus), nullable=False, default=ConflictStatus.pending)
    resolution = Column(Enum(ConflictResolution), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_sync_conflicts_user_status", "user_id", "provider", "status"),
    )

class EventLog(Base):
    __tablename__ = "event_log"

    id = Column(String, primary_key=True)
    request_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    entity_type = Column(String, nullable=True)
    entity_id = Column(String, nullable=True)
    payload_json = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_event_log_request", "request_id"),
        Index("idx_event_log_user_created", "user_id", created_at.desc()),
    )
