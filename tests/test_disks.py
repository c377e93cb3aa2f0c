import threading

import pytest

from vm_manager.disks import (
    MAX_LUN,
    InstanceLocks,
    device_path,
    find_disk,
    lun_of,
    next_lun,
)
from vm_manager.errors import InvalidLun, LunOutOfRange
from vm_manager.models import DataDisk


def test_device_path_mapping():
    assert device_path(0) == "/dev/sdc"
    assert device_path(1) == "/dev/sdd"
    assert device_path(MAX_LUN) == "/dev/sdx"
    paths = [device_path(lun) for lun in range(MAX_LUN + 1)]
    assert paths == sorted(paths)
    assert len(set(paths)) == MAX_LUN + 1


@pytest.mark.parametrize("lun", [22, 40, -1])
def test_device_path_rejects_out_of_range(lun):
    with pytest.raises(LunOutOfRange):
        device_path(lun, instance_id="abc")


def test_next_lun_is_disk_count():
    assert next_lun([]) == 0
    assert next_lun([DataDisk(name="d0", lun=""), DataDisk(name="d1", lun="1")]) == 2


def test_lun_of_defaults_empty_to_zero():
    assert lun_of(DataDisk(name="d0", lun="")) == 0
    assert lun_of(DataDisk(name="d3", lun="3")) == 3
    assert lun_of(DataDisk(name="d4", lun=" 4 ")) == 4


@pytest.mark.parametrize("raw", ["abc", "-1", "1.5"])
def test_lun_of_rejects_non_numeric(raw):
    with pytest.raises(InvalidLun) as exc:
        lun_of(DataDisk(name="d9", lun=raw), "inst-1", "detach_disk")
    assert exc.value.disk_name == "d9"
    assert exc.value.instance_id == "inst-1"
    assert exc.value.operation == "detach_disk"
    assert "d9" in str(exc.value)


def test_find_disk():
    disks = [DataDisk(name="a", lun=""), DataDisk(name="b", lun="1")]
    assert find_disk(disks, "b") is disks[1]
    assert find_disk(disks, "c") is None


def test_instance_locks_are_per_instance():
    locks = InstanceLocks()
    assert locks.lock_for("i1") is locks.lock_for("i1")
    assert locks.lock_for("i1") is not locks.lock_for("i2")


def test_instance_lock_serializes_holders():
    locks = InstanceLocks()
    order: list[str] = []
    lock = locks.lock_for("i1")
    lock.acquire()

    def worker():
        with locks.lock_for("i1"):
            order.append("worker")

    thread = threading.Thread(target=worker)
    thread.start()
    thread.join(timeout=0.1)
    order.append("holder")
    lock.release()
    thread.join(timeout=2)
    assert order == ["holder", "worker"]
