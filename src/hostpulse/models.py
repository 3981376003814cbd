"""Data models for hostpulse."""

from dataclasses import dataclass
from enum import Enum


class DiskType(Enum):
    """Physical media labels shown next to each disk."""

    SSD = "SSD"
    HDD = "HDD"
    NVME = "NVMe"
    UNKNOWN = "Disk"


@dataclass(slots=True, frozen=True)
class RamSnapshot:
    """Immutable snapshot of physical memory usage."""

    total_bytes: int
    used_bytes: int
    percent: float  # 0.0 - 100.0


@dataclass(slots=True)
class PhysicalDiskSnapshot:
    """Snapshot of one physical disk, keyed by its enumeration index."""

    index: int
    model: str
    type_label: str
    size_bytes: int
    used_bytes: int
    total_bytes: int
    used_percent: float
    has_usage: bool  # True only when logical usage is attributable to this disk
    active_percent: float


@dataclass(slots=True, frozen=True)
class DiskDevice:
    """A physical disk as enumerated by the metric source."""

    name: str  # OS counter key, e.g. 'sda' or 'PhysicalDrive0'
    model: str
    size_bytes: int


@dataclass(slots=True, frozen=True)
class FileStore:
    """Capacity figures of one mounted file system."""

    total_bytes: int
    free_bytes: int


@dataclass(slots=True, frozen=True)
class GpuDevice:
    """A display adapter as enumerated by the metric source."""

    vendor: str
    name: str


@dataclass(slots=True)
class DiskInventoryInfo:
    """One physical medium reported by an external disk inventory.

    Built while classifying disk types and discarded afterwards.
    """

    model: str
    media_type: str = ""
    size_bytes: int = 0
    rotation_rate: int | None = None
    bus_type: str = ""
