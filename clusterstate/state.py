"""Centralized enums for resource status values and snapshot classification.

Repositories validate incoming payloads against these sets; the ORM stores
the plain string values.
"""

from enum import Enum


class NodeStatus(str, Enum):
    """Reachability of a cluster host."""

    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class GuestStatus(str, Enum):
    """Power state shared by VMs and containers."""

    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"
    SUSPENDED = "suspended"
    UNKNOWN = "unknown"


class StorageType(str, Enum):
    """Backend type of a storage pool."""

    DIR = "dir"
    LVM = "lvm"
    LVMTHIN = "lvmthin"
    ZFS = "zfs"
    NFS = "nfs"
    CIFS = "cifs"
    GLUSTERFS = "glusterfs"
    CEPHFS = "cephfs"
    RBD = "rbd"


class TaskStatus(str, Enum):
    """Lifecycle of an operation record.

    ``running``/``stopped`` are transient; ``OK``/``ERROR``/``WARNING`` are
    exit states reported once the task has finished.
    """

    RUNNING = "running"
    STOPPED = "stopped"
    OK = "OK"
    ERROR = "ERROR"
    WARNING = "WARNING"


class ResourceType(str, Enum):
    """Kinds of resource that can be snapshotted."""

    NODE = "node"
    VM = "vm"
    CONTAINER = "container"
    STORAGE = "storage"
    TASK = "task"


class ChangeType(str, Enum):
    """How a snapshot relates to the previous observation of its resource."""

    CREATED = "created"  # First observation
    UPDATED = "updated"  # Non-volatile fields differ from previous snapshot
    DELETED = "deleted"  # Resource observed as removed
    DISCOVERED = "discovered"  # Re-observed without meaningful change


def values(enum_cls: type[Enum]) -> list[str]:
    """Return the string values of an enum, in declaration order."""
    return [member.value for member in enum_cls]


# Task exit states (task has finished)
COMPLETED_TASK_STATUSES: frozenset[str] = frozenset(
    {TaskStatus.OK.value, TaskStatus.ERROR.value, TaskStatus.WARNING.value}
)

# Resource types a task may reference (tasks never act on other tasks)
TASK_TARGET_TYPES: list[str] = [
    ResourceType.VM.value,
    ResourceType.CONTAINER.value,
    ResourceType.NODE.value,
    ResourceType.STORAGE.value,
]
