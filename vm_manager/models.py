from dataclasses import dataclass, field
from enum import Enum


class VMState(str, Enum):
    PROVISIONING = "PROVISIONING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    UNKNOWN = "UNKNOWN"


POWER_STATES: dict[str, VMState] = {
    "Started": VMState.RUNNING,
    "Starting": VMState.PROVISIONING,
    "Stopping": VMState.RUNNING,
    "Stopped": VMState.STOPPED,
}


def vm_state_from_power_state(power_state: str | None) -> VMState:
    if not power_state:
        return VMState.UNKNOWN
    return POWER_STATES.get(power_state, VMState.UNKNOWN)


@dataclass
class DataDisk:
    name: str
    lun: str = ""
    host_caching: str | None = None
    label: str | None = None
    media_link: str | None = None


@dataclass
class VMRecord:
    vm_name: str
    cloud_service_name: str
    deployment_name: str
    status: str | None = None
    power_state: str | None = None
    ip_address: str | None = None
    role_size: str | None = None
    data_disks: list[DataDisk] = field(default_factory=list)

    @property
    def state(self) -> VMState:
        return vm_state_from_power_state(self.power_state)
