from collections.abc import Sequence
from threading import Lock

from vm_manager.errors import InvalidLun, LunOutOfRange
from vm_manager.models import DataDisk


FIRST_DEVICE_LETTER = "c"
# /dev/sdc .. /dev/sdx
MAX_LUN = 21


def next_lun(current_disks: Sequence[DataDisk]) -> int:
    # Not safe against a concurrent attach on the same VM; callers hold
    # InstanceLocks.lock_for(instance_id) around read-then-attach.
    return len(current_disks)


def lun_of(
    disk: DataDisk, instance_id: str | None = None, operation: str = "lun_of"
) -> int:
    # The provider omits <Lun> for LUN 0.
    raw = (disk.lun or "").strip()
    if not raw:
        return 0
    if not (raw.isascii() and raw.isdigit()):
        raise InvalidLun(
            disk_name=disk.name, lun=raw, operation=operation, instance_id=instance_id
        )
    return int(raw)


def device_path(lun: int, instance_id: str | None = None) -> str:
    if lun < 0 or lun > MAX_LUN:
        raise LunOutOfRange(lun=lun, max_lun=MAX_LUN, instance_id=instance_id)
    return f"/dev/sd{chr(ord(FIRST_DEVICE_LETTER) + lun)}"


def find_disk(disks: Sequence[DataDisk], disk_name: str) -> DataDisk | None:
    for disk in disks:
        if disk.name == disk_name:
            return disk
    return None


class InstanceLocks:
    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[str, Lock] = {}

    def lock_for(self, instance_id: str) -> Lock:
        with self._guard:
            lock = self._locks.get(instance_id)
            if lock is None:
                lock = Lock()
                self._locks[instance_id] = lock
            return lock
