"""Azure Service Management (classic) client for virtual machine roles.

Only the reads and control operations the VM manager needs: look up a role in
a cloud service's production deployment, start/stop/restart/delete it and
add data disks. Requests are authenticated with a management certificate.

State-changing calls are answered with 202 Accepted and an ``x-ms-request-id``;
each one polls ``/operations/<request-id>`` until the provider reports
Succeeded, so callers observe the change once the method returns.
"""

import logging
import ssl
import time
import xml.etree.ElementTree as ET
from typing import Any

import httpx

from vm_manager.clients.http import REQUEST_ID_HEADER, RetryPolicy, request_with_retry
from vm_manager.config import Settings
from vm_manager.errors import ProviderOperationFailed, ProviderOperationTimeout
from vm_manager.models import DataDisk, VMRecord


logger = logging.getLogger(__name__)

NAMESPACE = "http://schemas.microsoft.com/windowsazure"
NS = {"wa": NAMESPACE}


class RoleNotFound(LookupError):
    def __init__(self, vm_name: str, cloud_service: str):
        self.vm_name = vm_name
        self.cloud_service = cloud_service
        super().__init__(
            f"virtual machine {vm_name} not found in cloud service {cloud_service}"
        )


def _text(element: ET.Element | None, path: str) -> str | None:
    if element is None:
        return None
    found = element.find(path, NS)
    if found is None or found.text is None:
        return None
    return found.text.strip()


def _role_operation_xml(operation: str, **fields: str) -> str:
    root = ET.Element(operation, {"xmlns": NAMESPACE})
    ET.SubElement(root, "OperationType").text = operation
    for key, value in fields.items():
        ET.SubElement(root, key).text = value
    return ET.tostring(root, encoding="unicode")


def data_disk_xml(options: dict[str, Any]) -> str:
    root = ET.Element("DataVirtualHardDisk", {"xmlns": NAMESPACE})
    ET.SubElement(root, "HostCaching").text = options.get("host_caching", "ReadOnly")
    ET.SubElement(root, "DiskLabel").text = options.get("disk_label", "")
    if options.get("import"):
        ET.SubElement(root, "DiskName").text = options["disk_name"]
    ET.SubElement(root, "Lun").text = str(options.get("lun", 0))
    if not options.get("import"):
        ET.SubElement(root, "LogicalDiskSizeInGB").text = str(
            options.get("disk_size", 100)
        )
        ET.SubElement(root, "MediaLink").text = options["media_link"]
    return ET.tostring(root, encoding="unicode")


def parse_deployment(
    body: str, vm_name: str, cloud_service: str
) -> tuple[VMRecord | None, int]:
    """Return the role named ``vm_name`` and the deployment's role count."""
    root = ET.fromstring(body)
    deployment_name = _text(root, "wa:Name") or ""
    roles = root.findall("wa:RoleList/wa:Role", NS)
    role = next((r for r in roles if _text(r, "wa:RoleName") == vm_name), None)
    if role is None:
        return None, len(roles)

    instance = next(
        (
            i
            for i in root.findall("wa:RoleInstanceList/wa:RoleInstance", NS)
            if _text(i, "wa:RoleName") == vm_name
        ),
        None,
    )
    disks = [
        DataDisk(
            name=_text(disk, "wa:DiskName") or "",
            lun=_text(disk, "wa:Lun") or "",
            host_caching=_text(disk, "wa:HostCaching"),
            label=_text(disk, "wa:DiskLabel"),
            media_link=_text(disk, "wa:MediaLink"),
        )
        for disk in role.findall(
            "wa:DataVirtualHardDisks/wa:DataVirtualHardDisk", NS
        )
    ]
    record = VMRecord(
        vm_name=vm_name,
        cloud_service_name=cloud_service,
        deployment_name=deployment_name,
        status=_text(instance, "wa:InstanceStatus"),
        power_state=_text(instance, "wa:PowerState"),
        ip_address=_text(instance, "wa:IpAddress"),
        role_size=_text(role, "wa:RoleSize"),
        data_disks=disks,
    )
    return record, len(roles)


def parse_operation_status(body: str) -> tuple[str, str | None, str | None]:
    """Return ``(status, error_code, error_message)`` from an Operation body."""
    root = ET.fromstring(body)
    return (
        _text(root, "wa:Status") or "",
        _text(root, "wa:Error/wa:Code"),
        _text(root, "wa:Error/wa:Message"),
    )


class ServiceManagementClient:
    def __init__(
        self,
        base_url: str,
        subscription_id: str,
        retry: RetryPolicy,
        *,
        api_version: str = "2014-06-01",
        cert_path: str | None = None,
        timeout: float = 30.0,
        poll_interval_sec: float = 2.0,
        operation_timeout_sec: float = 600.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.subscription_id = subscription_id
        self.retry = retry
        self.poll_interval_sec = poll_interval_sec
        self.operation_timeout_sec = operation_timeout_sec
        headers = {"x-ms-version": api_version, "Content-Type": "application/xml"}
        verify: ssl.SSLContext | bool = True
        if cert_path:
            context = ssl.create_default_context()
            context.load_cert_chain(cert_path)
            verify = context
        self.client = httpx.Client(
            base_url=f"{base_url.rstrip('/')}/{subscription_id}",
            headers=headers,
            timeout=timeout,
            verify=verify,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ServiceManagementClient":
        return cls(
            base_url=settings.management_url,
            subscription_id=settings.subscription_id,
            retry=RetryPolicy(settings.retry_attempts, settings.retry_sleep_sec),
            api_version=settings.management_api_version,
            cert_path=settings.management_cert_path,
            timeout=settings.http_timeout_sec,
            poll_interval_sec=settings.operation_poll_interval_sec,
            operation_timeout_sec=settings.operation_timeout_sec,
        )

    def _deployment(self, vm_name: str, cloud_service: str) -> tuple[VMRecord | None, int]:
        response = request_with_retry(
            self.client,
            "GET",
            f"/services/hostedservices/{cloud_service}/deploymentslots/production",
            self.retry,
            allowed_statuses=frozenset({404}),
        )
        if response.status_code == 404:
            return None, 0
        return parse_deployment(response.text, vm_name, cloud_service)

    def _require_vm(self, vm_name: str, cloud_service: str) -> tuple[VMRecord, int]:
        vm, role_count = self._deployment(vm_name, cloud_service)
        if vm is None:
            raise RoleNotFound(vm_name, cloud_service)
        return vm, role_count

    def _role_instance_path(self, vm: VMRecord) -> str:
        return (
            f"/services/hostedservices/{vm.cloud_service_name}"
            f"/deployments/{vm.deployment_name}/roleinstances/{vm.vm_name}"
        )

    def _submit(self, operation: str, method: str, path: str, **kwargs: Any) -> None:
        response = request_with_retry(self.client, method, path, self.retry, **kwargs)
        self._wait_for_operation(operation, response)

    def _wait_for_operation(self, operation: str, response: httpx.Response) -> None:
        """Block until an accepted (202) request has been applied by the provider."""
        if response.status_code != 202:
            return
        request_id = response.headers.get(REQUEST_ID_HEADER)
        if not request_id:
            logger.warning(
                "accepted response without request id operation=%s, not waiting",
                operation,
            )
            return

        deadline = time.monotonic() + self.operation_timeout_sec
        polls = 0
        while True:
            polled = request_with_retry(
                self.client, "GET", f"/operations/{request_id}", self.retry
            )
            polls += 1
            status, error_code, error_message = parse_operation_status(polled.text)
            if status == "Succeeded":
                logger.debug(
                    "operation succeeded operation=%s request_id=%s polls=%s",
                    operation,
                    request_id,
                    polls,
                )
                return
            if status == "Failed":
                logger.error(
                    "operation failed operation=%s request_id=%s code=%s: %s",
                    operation,
                    request_id,
                    error_code,
                    error_message,
                )
                raise ProviderOperationFailed(
                    operation=operation,
                    request_id=request_id,
                    detail=error_message or "provider reported Failed",
                    error_code=error_code,
                )
            if time.monotonic() >= deadline:
                raise ProviderOperationTimeout(
                    operation=operation,
                    request_id=request_id,
                    timeout_sec=self.operation_timeout_sec,
                )
            time.sleep(self.poll_interval_sec)

    def get_virtual_machine(self, vm_name: str, cloud_service: str) -> VMRecord | None:
        vm, _ = self._deployment(vm_name, cloud_service)
        return vm

    def start_virtual_machine(self, vm_name: str, cloud_service: str) -> None:
        vm, _ = self._require_vm(vm_name, cloud_service)
        logger.info("starting vm vm_name=%s cloud_service=%s", vm_name, cloud_service)
        self._submit(
            "start",
            "POST",
            f"{self._role_instance_path(vm)}/Operations",
            content=_role_operation_xml("StartRoleOperation"),
        )

    def shutdown_virtual_machine(self, vm_name: str, cloud_service: str) -> None:
        vm, _ = self._require_vm(vm_name, cloud_service)
        logger.info(
            "shutting down vm vm_name=%s cloud_service=%s", vm_name, cloud_service
        )
        self._submit(
            "shutdown",
            "POST",
            f"{self._role_instance_path(vm)}/Operations",
            content=_role_operation_xml(
                "ShutdownRoleOperation", PostShutdownAction="StoppedDeallocated"
            ),
        )

    def restart_virtual_machine(self, vm_name: str, cloud_service: str) -> None:
        vm, _ = self._require_vm(vm_name, cloud_service)
        logger.info(
            "restarting vm vm_name=%s cloud_service=%s", vm_name, cloud_service
        )
        self._submit(
            "reboot",
            "POST",
            f"{self._role_instance_path(vm)}/Operations",
            content=_role_operation_xml("RestartRoleOperation"),
        )

    def delete_virtual_machine(self, vm_name: str, cloud_service: str) -> None:
        vm, role_count = self._require_vm(vm_name, cloud_service)
        deployment_path = (
            f"/services/hostedservices/{cloud_service}/deployments/{vm.deployment_name}"
        )
        # The last role can only be removed together with its deployment.
        if role_count <= 1:
            path = deployment_path
        else:
            path = f"{deployment_path}/roles/{vm_name}"
        logger.info(
            "deleting vm vm_name=%s cloud_service=%s path=%s",
            vm_name,
            cloud_service,
            path,
        )
        self._submit("delete", "DELETE", path, params={"comp": "media"})

    def add_data_disk(
        self, vm_name: str, cloud_service: str, options: dict[str, Any]
    ) -> None:
        vm, _ = self._require_vm(vm_name, cloud_service)
        logger.info(
            "adding data disk vm_name=%s disk=%s lun=%s",
            vm_name,
            options.get("disk_name") or options.get("media_link"),
            options.get("lun"),
        )
        self._submit(
            "attach_disk",
            "POST",
            f"/services/hostedservices/{cloud_service}/deployments"
            f"/{vm.deployment_name}/roles/{vm_name}/DataDisks",
            content=data_disk_xml(options),
        )

    def http_delete(self, path: str) -> None:
        self._submit("delete", "DELETE", f"/{path.lstrip('/')}")
