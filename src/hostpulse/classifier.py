"""Heuristic SSD/HDD/NVMe labelling of physical disks."""

import json
import logging
import sys
import threading
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path

from hostpulse.models import DiskDevice, DiskInventoryInfo, DiskType
from hostpulse.probe import ProbeRunner, is_windows

log = logging.getLogger(__name__)

# Disks report slightly different byte counts through different APIs
SIZE_MATCH_TOLERANCE = 0.10

PHYSICAL_DISK_PS = (
    "Get-PhysicalDisk | "
    'ForEach-Object { "$($_.FriendlyName)|$($_.MediaType)|$($_.Size)|$($_.BusType)" }'
)

DISK_DRIVE_PS = (
    "Get-CimInstance Win32_DiskDrive | "
    'ForEach-Object { "$($_.Model)|$($_.MediaType)|$($_.Size)|$($_.RotationRate)" }'
)

LSBLK_ARGS = ["lsblk", "-d", "-J", "-b", "-o", "NAME,MODEL,SIZE,ROTA,TRAN"]

SYS_BLOCK = Path("/sys/block")

Inventory = Callable[[], list[DiskInventoryInfo]]


class DiskTypeCache:
    """Thread-safe index -> label map, filled once by the classifier."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._labels: dict[int, str] = {}

    def get(self, index: int, default: str = DiskType.UNKNOWN.value) -> str:
        with self._lock:
            return self._labels.get(index, default)

    def put(self, index: int, label: str) -> None:
        with self._lock:
            self._labels[index] = label

    def snapshot(self) -> dict[int, str]:
        """Return a copy of all labels known so far."""
        with self._lock:
            return dict(self._labels)

    def __len__(self) -> int:
        with self._lock:
            return len(self._labels)


def parse_physical_disk_lines(output: str | None) -> list[DiskInventoryInfo]:
    """Parse 'FriendlyName|MediaType|Size[|BusType]' lines."""
    infos: list[DiskInventoryInfo] = []
    for line in (output or "").splitlines():
        parts = [p.strip() for p in line.strip().split("|")]
        if len(parts) < 3 or not parts[0] or not parts[2]:
            continue
        try:
            size = int(parts[2])
        except ValueError:
            log.debug("Skipping physical disk line: %r", line)
            continue
        infos.append(
            DiskInventoryInfo(
                model=parts[0],
                media_type=parts[1],
                size_bytes=size,
                bus_type=parts[3] if len(parts) > 3 else "",
            )
        )
    return infos


def parse_disk_drive_lines(output: str | None) -> list[DiskInventoryInfo]:
    """Parse 'Model|MediaType|Size|RotationRate' lines."""
    infos: list[DiskInventoryInfo] = []
    for line in (output or "").splitlines():
        parts = [p.strip() for p in line.strip().split("|")]
        if len(parts) < 4 or not parts[0] or not parts[2]:
            continue
        try:
            size = int(parts[2])
            rotation = int(parts[3]) if parts[3] else None
        except ValueError:
            log.debug("Skipping disk drive line: %r", line)
            continue
        infos.append(
            DiskInventoryInfo(
                model=parts[0],
                media_type=parts[1],
                size_bytes=size,
                rotation_rate=rotation,
            )
        )
    return infos


def parse_lsblk_json(output: str | None) -> list[DiskInventoryInfo]:
    """Parse `lsblk -d -J -b -o NAME,MODEL,SIZE,ROTA,TRAN` output."""
    if not output:
        return []
    try:
        devices = json.loads(output).get("blockdevices", [])
    except (json.JSONDecodeError, AttributeError):
        log.debug("Unparsable lsblk output")
        return []

    infos: list[DiskInventoryInfo] = []
    for device in devices:
        try:
            model = (device.get("model") or "").strip()
            size = int(device.get("size") or 0)
            rota = device.get("rota")
            if isinstance(rota, str):
                rota = rota.strip() not in ("0", "false", "")
        except (AttributeError, TypeError, ValueError):
            log.debug("Skipping lsblk device: %r", device)
            continue
        if not model or size <= 0:
            continue
        infos.append(
            DiskInventoryInfo(
                model=model,
                size_bytes=size,
                rotation_rate=None if rota is None else int(bool(rota)),
                bus_type=(device.get("tran") or "").strip(),
            )
        )
    return infos


def read_sysfs_inventory(root: Path = SYS_BLOCK) -> list[DiskInventoryInfo]:
    """Model, size and rotational flag of each disk under /sys/block."""
    infos: list[DiskInventoryInfo] = []
    try:
        entries = sorted(root.iterdir())
    except OSError:
        return infos

    for entry in entries:
        try:
            model = (entry / "device" / "model").read_text(encoding="utf-8").strip()
            size = int((entry / "size").read_text(encoding="utf-8").strip()) * 512
            rotational = int((entry / "queue" / "rotational").read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            continue
        if not model or size <= 0:
            continue
        infos.append(
            DiskInventoryInfo(
                model=model,
                size_bytes=size,
                rotation_rate=rotational,
                bus_type="nvme" if entry.name.startswith("nvme") else "",
            )
        )
    return infos


def default_inventories(probe: ProbeRunner) -> list[Inventory]:
    """Platform-specific inventory queries, primary first."""
    if is_windows():
        return [
            lambda: parse_physical_disk_lines(probe.powershell(PHYSICAL_DISK_PS)),
            lambda: parse_disk_drive_lines(probe.powershell(DISK_DRIVE_PS)),
        ]
    if sys.platform.startswith("linux"):
        return [
            lambda: parse_lsblk_json(probe.run(LSBLK_ARGS)),
            read_sysfs_inventory,
        ]
    return []


def merge_inventories(
    inventories: Iterable[Iterable[DiskInventoryInfo]],
) -> dict[str, DiskInventoryInfo]:
    """
    Merge inventories by lower-cased model name.

    Later inventories only fill gaps left by earlier ones, except for the
    rotation hint and size, which they refresh when they report one.
    """
    merged: dict[str, DiskInventoryInfo] = {}
    for inventory in inventories:
        for info in inventory:
            key = info.model.strip().lower()
            if not key:
                continue
            existing = merged.get(key)
            if existing is None:
                merged[key] = DiskInventoryInfo(
                    model=info.model.strip(),
                    media_type=info.media_type,
                    size_bytes=info.size_bytes,
                    rotation_rate=info.rotation_rate,
                    bus_type=info.bus_type,
                )
                continue
            if not existing.media_type.strip():
                existing.media_type = info.media_type
            if not existing.bus_type.strip():
                existing.bus_type = info.bus_type
            if info.rotation_rate is not None:
                existing.rotation_rate = info.rotation_rate
            if info.size_bytes > 0:
                existing.size_bytes = info.size_bytes
    return merged


def find_by_model(merged: dict[str, DiskInventoryInfo], model: str) -> DiskInventoryInfo | None:
    """Exact, then substring (either direction), case-insensitive model match."""
    key = model.strip().lower()
    if not key:
        return None
    exact = merged.get(key)
    if exact is not None:
        return exact
    for name, info in merged.items():
        if name in key or key in name:
            return info
    return None


def find_by_size(merged: dict[str, DiskInventoryInfo], size_bytes: int) -> DiskInventoryInfo | None:
    """Nearest-size match, accepted only within SIZE_MATCH_TOLERANCE."""
    if size_bytes <= 0:
        return None
    best: DiskInventoryInfo | None = None
    best_diff: int | None = None
    for info in merged.values():
        if info.size_bytes <= 0:
            continue
        diff = abs(info.size_bytes - size_bytes)
        if best_diff is None or diff < best_diff:
            best, best_diff = info, diff
    if best is None or best_diff is None:
        return None
    return best if best_diff / size_bytes <= SIZE_MATCH_TOLERANCE else None


def decide_label(info: DiskInventoryInfo) -> str:
    """Declared media type first, then the rotation hint, else unknown."""
    media = info.media_type.lower()
    nvme = "nvme" in info.bus_type.lower() or "nvme" in media

    if "ssd" in media:
        return DiskType.NVME.value if nvme else DiskType.SSD.value
    if "hdd" in media:
        return DiskType.HDD.value
    if nvme:
        return DiskType.NVME.value
    if info.rotation_rate is not None:
        return DiskType.SSD.value if info.rotation_rate == 0 else DiskType.HDD.value
    return DiskType.UNKNOWN.value


class DiskTypeClassifier:
    """
    Labels each enumerated disk by cross-referencing external inventories.

    Runs once; a failing inventory contributes nothing and a total failure
    leaves every disk at the default label.
    """

    def __init__(self, inventories: Sequence[Inventory], cache: DiskTypeCache) -> None:
        self._inventories = list(inventories)
        self._cache = cache

    @property
    def cache(self) -> DiskTypeCache:
        return self._cache

    def classify(self, disks: Sequence[DiskDevice]) -> dict[int, str]:
        """Compute a label per disk index without touching the cache."""
        gathered: list[list[DiskInventoryInfo]] = []
        for inventory in self._inventories:
            try:
                gathered.append(inventory())
            except Exception:
                log.debug("Disk inventory failed", exc_info=True)
        merged = merge_inventories(gathered)

        labels: dict[int, str] = {}
        for index, disk in enumerate(disks):
            best = None
            # 'Disk' is the placeholder for an unknown model
            if disk.model.strip().lower() not in ("", DiskType.UNKNOWN.value.lower()):
                best = find_by_model(merged, disk.model)
            if best is None:
                best = find_by_size(merged, disk.size_bytes)
            labels[index] = decide_label(best) if best is not None else DiskType.UNKNOWN.value
        return labels

    def run(self, disks: Sequence[DiskDevice]) -> dict[int, str]:
        """Classify and publish the labels into the cache. Never raises."""
        try:
            labels = self.classify(disks)
        except Exception:
            log.warning("Disk type classification failed", exc_info=True)
            return {}
        for index, label in labels.items():
            self._cache.put(index, label)
        log.debug("Disk types: %s", labels)
        return labels
