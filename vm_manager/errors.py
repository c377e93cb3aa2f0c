class VMManagerError(RuntimeError):
    def __init__(
        self,
        *,
        operation: str,
        detail: str,
        instance_id: str | None = None,
    ):
        self.operation = operation
        self.detail = detail
        self.instance_id = instance_id
        where = f" instance_id={instance_id}" if instance_id else ""
        super().__init__(f"{operation} failed{where}: {detail}")


class ProvisioningFailed(VMManagerError):
    """The provisioning subprocess exited non-zero or could not be run."""

    def __init__(
        self,
        *,
        vm_name: str,
        detail: str,
        log: str = "",
        exit_code: int | None = None,
        operation: str = "create",
    ):
        self.vm_name = vm_name
        self.log = log
        self.exit_code = exit_code
        super().__init__(
            operation=operation,
            detail=f"vm_name={vm_name} exit_code={exit_code}: {detail}",
        )


class ProvisioningTimeout(ProvisioningFailed):
    def __init__(self, *, vm_name: str, timeout_sec: float, log: str = ""):
        self.timeout_sec = timeout_sec
        super().__init__(
            vm_name=vm_name,
            detail=f"provisioning did not finish within {timeout_sec}s",
            log=log,
        )


class InstanceNotFound(VMManagerError):
    def __init__(self, *, instance_id: str, operation: str):
        super().__init__(
            operation=operation,
            detail="given instance id does not exist",
            instance_id=instance_id,
        )


class DiskNotAttached(VMManagerError):
    def __init__(self, *, instance_id: str, disk_name: str, operation: str):
        self.disk_name = disk_name
        super().__init__(
            operation=operation,
            detail=f"disk {disk_name} is not attached",
            instance_id=instance_id,
        )


class MalformedIdentity(VMManagerError):
    def __init__(self, *, instance_id: str, detail: str):
        super().__init__(
            operation="decode_instance_id", detail=detail, instance_id=instance_id
        )


class GuestConfigParseError(VMManagerError):
    def __init__(self, *, field: str, detail: str):
        self.field = field
        super().__init__(operation="read_guest_config", detail=f"{field}: {detail}")


class EndpointParseError(VMManagerError):
    def __init__(self, *, entry: str, protocol: str, detail: str):
        self.entry = entry
        self.protocol = protocol
        super().__init__(
            operation="parse_endpoints",
            detail=f"{protocol} entry {entry!r}: {detail}",
        )


class LunOutOfRange(VMManagerError):
    def __init__(self, *, lun: int, max_lun: int, instance_id: str | None = None):
        self.lun = lun
        self.max_lun = max_lun
        super().__init__(
            operation="device_path",
            detail=f"lun {lun} outside supported range 0..{max_lun}",
            instance_id=instance_id,
        )


class InvalidLun(VMManagerError):
    def __init__(
        self, *, disk_name: str, lun: str, operation: str, instance_id: str | None = None
    ):
        self.disk_name = disk_name
        self.lun = lun
        super().__init__(
            operation=operation,
            detail=f"disk {disk_name} reports non-numeric lun {lun!r}",
            instance_id=instance_id,
        )


class ProviderOperationFailed(VMManagerError):
    """An accepted provider request finished with status Failed."""

    def __init__(
        self,
        *,
        operation: str,
        request_id: str,
        detail: str,
        error_code: str | None = None,
    ):
        self.request_id = request_id
        self.error_code = error_code
        code = f" code={error_code}" if error_code else ""
        super().__init__(
            operation=operation,
            detail=f"request_id={request_id}{code}: {detail}",
        )


class ProviderOperationTimeout(ProviderOperationFailed):
    def __init__(self, *, operation: str, request_id: str, timeout_sec: float):
        self.timeout_sec = timeout_sec
        super().__init__(
            operation=operation,
            request_id=request_id,
            detail=f"still in progress after {timeout_sec}s",
        )
