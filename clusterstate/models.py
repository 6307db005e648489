"""ORM tables for observed cluster resources and their snapshot history.

Child tables (vms, containers, tasks) reference ``nodes.id`` through a plain
``node_id`` column. No database-level foreign key is declared: the
repositories enforce parent existence themselves, so the same logic holds on
stores without constraint support. Relationships below are therefore declared
with explicit ``primaryjoin``/``foreign()`` annotations and are read-only.
"""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, foreign, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp stored and returned in UTC.

    SQLite has no timezone support and hands back naive values; results are
    tagged with UTC so reads compare equal to what was written.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value)

    def process_result_value(self, value, dialect):
        return as_utc(value)


class Base(DeclarativeBase):
    pass


class Node(Base):
    __tablename__ = "nodes"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    status: Mapped[str] = mapped_column(String(32))
    type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    cpu_usage: Mapped[float | None] = mapped_column(Float, nullable=True)
    cpu_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    memory_usage: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    memory_max: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    disk_usage: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    disk_max: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    uptime: Mapped[int | None] = mapped_column(Integer, nullable=True)
    load_average: Mapped[str | None] = mapped_column(String(64), nullable=True)
    pve_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    kernel_version: Mapped[str | None] = mapped_column(String(128), nullable=True)
    subscription: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_seen: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    vms: Mapped[list[VM]] = relationship(
        "VM",
        primaryjoin="Node.id == foreign(VM.node_id)",
        viewonly=True,
        order_by="VM.created_at.desc()",
    )
    containers: Mapped[list[Container]] = relationship(
        "Container",
        primaryjoin="Node.id == foreign(Container.node_id)",
        viewonly=True,
        order_by="Container.created_at.desc()",
    )
    tasks: Mapped[list[Task]] = relationship(
        "Task",
        primaryjoin="Node.id == foreign(Task.node_id)",
        viewonly=True,
        order_by="Task.start_time.desc()",
    )


class VM(Base):
    __tablename__ = "vms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    node_id: Mapped[str] = mapped_column(String(255), index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(32))
    template: Mapped[bool] = mapped_column(Boolean, default=False)
    cpu_cores: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cpu_usage: Mapped[float | None] = mapped_column(Float, nullable=True)
    memory_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    memory_usage: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    disk_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    disk_usage: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    network_in: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    network_out: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    uptime: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pid: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ha_managed: Mapped[bool] = mapped_column(Boolean, default=False)
    lock_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    config_digest: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_seen: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    node: Mapped[Node | None] = relationship(
        "Node",
        primaryjoin="foreign(VM.node_id) == Node.id",
        viewonly=True,
    )


class Container(Base):
    __tablename__ = "containers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    node_id: Mapped[str] = mapped_column(String(255), index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    hostname: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(32))
    template: Mapped[bool] = mapped_column(Boolean, default=False)
    cpu_cores: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cpu_usage: Mapped[float | None] = mapped_column(Float, nullable=True)
    memory_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    memory_usage: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    swap_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    swap_usage: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    disk_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    disk_usage: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    network_in: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    network_out: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    uptime: Mapped[int | None] = mapped_column(Integer, nullable=True)
    os_template: Mapped[str | None] = mapped_column(String(255), nullable=True)
    privileged: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    protection: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    ha_managed: Mapped[bool] = mapped_column(Boolean, default=False)
    lock_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    config_digest: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_seen: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    node: Mapped[Node | None] = relationship(
        "Node",
        primaryjoin="foreign(Container.node_id) == Node.id",
        viewonly=True,
    )


class Storage(Base):
    __tablename__ = "storage"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    type: Mapped[str] = mapped_column(String(32))
    content_types: Mapped[str | None] = mapped_column(String(255), nullable=True)  # comma-separated tags
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    shared: Mapped[bool] = mapped_column(Boolean, default=False)
    total_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    used_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    available_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    nodes: Mapped[str | None] = mapped_column(Text, nullable=True)  # comma-separated node ids
    config_digest: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_seen: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)


class Task(Base):
    __tablename__ = "tasks"

    upid: Mapped[str] = mapped_column(String(512), primary_key=True)
    node_id: Mapped[str] = mapped_column(String(255), index=True)
    type: Mapped[str] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(32))
    resource_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user: Mapped[str | None] = mapped_column(String(255), nullable=True)
    start_time: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    exit_status: Mapped[str | None] = mapped_column(String(255), nullable=True)
    log_entries: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON array of lines
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    node: Mapped[Node | None] = relationship(
        "Node",
        primaryjoin="foreign(Task.node_id) == Node.id",
        viewonly=True,
    )


class StateSnapshot(Base):
    """One immutable observation of a resource.

    ``(resource_type, resource_id)`` is a logical reference only; snapshots
    outlive the resources they describe.
    """

    __tablename__ = "state_snapshots"
    __table_args__ = (
        Index("ix_state_snapshots_resource", "resource_type", "resource_id", "snapshot_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_time: Mapped[datetime] = mapped_column(UTCDateTime(), index=True)
    resource_type: Mapped[str] = mapped_column(String(32))
    resource_id: Mapped[str] = mapped_column(String(255))
    resource_data: Mapped[str] = mapped_column(Text)  # JSON object
    change_type: Mapped[str] = mapped_column(String(32), index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
