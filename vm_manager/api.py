import threading

from fastapi import APIRouter, Depends, HTTPException

from vm_manager.clients.http import RequestFailure
from vm_manager.clients.service_management import RoleNotFound
from vm_manager.disks import lun_of
from vm_manager.errors import (
    DiskNotAttached,
    EndpointParseError,
    InstanceNotFound,
    InvalidLun,
    LunOutOfRange,
    MalformedIdentity,
    ProviderOperationFailed,
    ProviderOperationTimeout,
    ProvisioningFailed,
    VMManagerError,
)
from vm_manager.manager import VMManager, build_manager
from vm_manager.metrics import metrics
from vm_manager.schemas import (
    AttachDiskResponse,
    CreateVMRequest,
    CreateVMResponse,
    DataDiskRead,
    DiskListResponse,
    VMRead,
)


router = APIRouter()
_manager: VMManager | None = None
_manager_lock = threading.Lock()


def get_manager() -> VMManager:
    global _manager
    if _manager is None:
        with _manager_lock:
            if _manager is None:
                _manager = build_manager()
    return _manager


def _error(status_code: int, exc: Exception) -> HTTPException:
    detail: dict = {"error": exc.__class__.__name__, "message": str(exc)}
    if isinstance(exc, VMManagerError):
        detail["operation"] = exc.operation
        detail["instance_id"] = exc.instance_id
    if isinstance(exc, ProviderOperationFailed):
        detail["request_id"] = exc.request_id
        detail["error_code"] = exc.error_code
    if isinstance(exc, ProvisioningFailed):
        detail["exit_code"] = exc.exit_code
        detail["log"] = exc.log
    if isinstance(exc, RequestFailure):
        detail["status_code"] = exc.status_code
        detail["request_id"] = exc.request_id
    return HTTPException(status_code=status_code, detail=detail)


def _translate(exc: Exception) -> HTTPException:
    if isinstance(exc, (InstanceNotFound, DiskNotAttached, RoleNotFound)):
        return _error(404, exc)
    if isinstance(exc, (MalformedIdentity, EndpointParseError, LunOutOfRange)):
        return _error(400, exc)
    if isinstance(exc, ProviderOperationTimeout):
        return _error(504, exc)
    if isinstance(exc, (ProvisioningFailed, ProviderOperationFailed, InvalidLun)):
        return _error(502, exc)
    if isinstance(exc, RequestFailure):
        return _error(502, exc)
    return _error(500, exc)


HANDLED = (VMManagerError, RequestFailure, RoleNotFound)


@router.get("/healthz")
def healthz() -> dict:
    return {"ok": True}


@router.get("/metrics")
def get_metrics() -> dict[str, float]:
    return metrics.snapshot()


@router.post("/v1/vms", status_code=201, response_model=CreateVMResponse)
def create_vm(
    req: CreateVMRequest, manager: VMManager = Depends(get_manager)
) -> CreateVMResponse:
    try:
        instance_id = manager.create(
            req.uuid, req.image, req.cloud_opts, req.network_config, req.resource_pool
        )
    except HANDLED as exc:
        raise _translate(exc) from exc
    return CreateVMResponse(instance_id=instance_id)


@router.get("/v1/vms/{instance_id}", response_model=VMRead)
def get_vm(instance_id: str, manager: VMManager = Depends(get_manager)) -> VMRead:
    try:
        vm = manager.find(instance_id)
    except HANDLED as exc:
        raise _translate(exc) from exc
    if vm is None:
        raise _translate(InstanceNotFound(instance_id=instance_id, operation="find"))
    try:
        disks = [
            DataDiskRead(
                name=disk.name,
                lun=lun_of(disk, instance_id, "find"),
                host_caching=disk.host_caching,
                label=disk.label,
            )
            for disk in vm.data_disks
        ]
    except InvalidLun as exc:
        raise _translate(exc) from exc
    return VMRead(
        instance_id=instance_id,
        vm_name=vm.vm_name,
        cloud_service_name=vm.cloud_service_name,
        deployment_name=vm.deployment_name,
        state=vm.state.value,
        status=vm.status,
        ip_address=vm.ip_address,
        role_size=vm.role_size,
        data_disks=disks,
    )


@router.delete("/v1/vms/{instance_id}", status_code=202)
def delete_vm(instance_id: str, manager: VMManager = Depends(get_manager)) -> dict:
    try:
        manager.delete(instance_id)
    except HANDLED as exc:
        raise _translate(exc) from exc
    return {"instance_id": instance_id, "operation": "delete"}


@router.post("/v1/vms/{instance_id}/{operation}", status_code=202)
def control_vm(
    instance_id: str, operation: str, manager: VMManager = Depends(get_manager)
) -> dict:
    actions = {
        "reboot": manager.reboot,
        "start": manager.start,
        "shutdown": manager.shutdown,
    }
    action = actions.get(operation)
    if action is None:
        raise HTTPException(status_code=404, detail=f"unknown operation {operation}")
    try:
        action(instance_id)
    except HANDLED as exc:
        raise _translate(exc) from exc
    return {"instance_id": instance_id, "operation": operation}


@router.get("/v1/vms/{instance_id}/disks", response_model=DiskListResponse)
def list_disks(
    instance_id: str, manager: VMManager = Depends(get_manager)
) -> DiskListResponse:
    try:
        disks = manager.get_disks(instance_id)
    except HANDLED as exc:
        raise _translate(exc) from exc
    return DiskListResponse(disks=disks)


@router.put("/v1/vms/{instance_id}/disks/{disk_name}", response_model=AttachDiskResponse)
def attach_disk(
    instance_id: str, disk_name: str, manager: VMManager = Depends(get_manager)
) -> AttachDiskResponse:
    try:
        path = manager.attach_disk(instance_id, disk_name)
    except HANDLED as exc:
        raise _translate(exc) from exc
    return AttachDiskResponse(device_path=path)


@router.get("/v1/vms/{instance_id}/disks/{disk_name}", response_model=AttachDiskResponse)
def get_volume_name(
    instance_id: str, disk_name: str, manager: VMManager = Depends(get_manager)
) -> AttachDiskResponse:
    try:
        path = manager.get_volume_name(instance_id, disk_name)
    except HANDLED as exc:
        raise _translate(exc) from exc
    return AttachDiskResponse(device_path=path)


@router.delete("/v1/vms/{instance_id}/disks/{disk_name}", status_code=202)
def detach_disk(
    instance_id: str, disk_name: str, manager: VMManager = Depends(get_manager)
) -> dict:
    try:
        manager.detach_disk(instance_id, disk_name)
    except HANDLED as exc:
        raise _translate(exc) from exc
    return {"instance_id": instance_id, "disk_name": disk_name, "operation": "detach"}
