import xml.etree.ElementTree as ET
from typing import Any, cast

import httpx
import pytest

from vm_manager.clients.http import RequestFailure, RetryPolicy
from vm_manager.clients.service_management import (
    NS,
    RoleNotFound,
    ServiceManagementClient,
    parse_deployment,
    parse_operation_status,
)
from vm_manager.config import Settings
from vm_manager.errors import ProviderOperationFailed, ProviderOperationTimeout
from vm_manager.identity import encode
from vm_manager.manager import VMManager
from vm_manager.models import VMState


DEPLOYMENT_XML = """<Deployment xmlns="http://schemas.microsoft.com/windowsazure">
  <Name>dep1</Name>
  <DeploymentSlot>Production</DeploymentSlot>
  <RoleInstanceList>
    <RoleInstance>
      <RoleName>bosh-vm-abc</RoleName>
      <InstanceStatus>ReadyRole</InstanceStatus>
      <IpAddress>10.0.0.4</IpAddress>
      <PowerState>Started</PowerState>
    </RoleInstance>
  </RoleInstanceList>
  <RoleList>
    <Role>
      <RoleName>bosh-vm-abc</RoleName>
      <DataVirtualHardDisks>
        <DataVirtualHardDisk>
          <HostCaching>ReadOnly</HostCaching>
          <DiskLabel>bosh</DiskLabel>
          <DiskName>disk0</DiskName>
          <MediaLink>https://store1.blob.core.windows.net/vhds/disk0.vhd</MediaLink>
        </DataVirtualHardDisk>
        <DataVirtualHardDisk>
          <HostCaching>ReadOnly</HostCaching>
          <DiskLabel>bosh</DiskLabel>
          <DiskName>disk1</DiskName>
          <Lun>1</Lun>
        </DataVirtualHardDisk>
      </DataVirtualHardDisks>
      <RoleSize>Standard_A1</RoleSize>
    </Role>
  </RoleList>
</Deployment>
"""

DEPLOYMENT_PATH = "/sub1/services/hostedservices/dg1/deploymentslots/production"
OPERATION_ID = "op-1"
OPERATION_PATH = f"/sub1/operations/{OPERATION_ID}"


def _operation_xml(status: str, code: str | None = None, message: str | None = None) -> str:
    error = ""
    if code:
        error = f"<Error><Code>{code}</Code><Message>{message}</Message></Error>"
    return (
        '<Operation xmlns="http://schemas.microsoft.com/windowsazure">'
        f"<ID>{OPERATION_ID}</ID><Status>{status}</Status>"
        f"<HttpStatusCode>200</HttpStatusCode>{error}</Operation>"
    )


def _client(handler, **kwargs) -> tuple[ServiceManagementClient, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    kwargs.setdefault("poll_interval_sec", 0)
    client = ServiceManagementClient(
        "https://management.example.test",
        "sub1",
        RetryPolicy(1, 0),
        transport=httpx.MockTransport(record),
        **kwargs,
    )
    return client, seen


def _accepted(request: httpx.Request) -> httpx.Response:
    return httpx.Response(202, headers={"x-ms-request-id": OPERATION_ID}, request=request)


def _deployment_or_accept(request: httpx.Request) -> httpx.Response:
    if request.url.path == OPERATION_PATH:
        return httpx.Response(200, text=_operation_xml("Succeeded"), request=request)
    if request.method == "GET":
        return httpx.Response(200, text=DEPLOYMENT_XML, request=request)
    return _accepted(request)


def _last(seen: list[httpx.Request], method: str) -> httpx.Request:
    return next(request for request in reversed(seen) if request.method == method)


def _operation_polls(seen: list[httpx.Request]) -> int:
    return sum(1 for request in seen if request.url.path == OPERATION_PATH)



def test_parse_deployment():
    vm, role_count = parse_deployment(DEPLOYMENT_XML, "bosh-vm-abc", "dg1")
    assert role_count == 1
    assert vm is not None
    assert vm.deployment_name == "dep1"
    assert vm.ip_address == "10.0.0.4"
    assert vm.role_size == "Standard_A1"
    assert vm.state == VMState.RUNNING
    assert [(d.name, d.lun) for d in vm.data_disks] == [("disk0", ""), ("disk1", "1")]


def test_parse_deployment_unknown_role():
    vm, role_count = parse_deployment(DEPLOYMENT_XML, "other", "dg1")
    assert vm is None
    assert role_count == 1


def test_get_virtual_machine_sends_version_header():
    client, seen = _client(_deployment_or_accept)
    vm = client.get_virtual_machine("bosh-vm-abc", "dg1")
    assert vm is not None and vm.cloud_service_name == "dg1"
    assert seen[0].url.path == DEPLOYMENT_PATH
    assert seen[0].headers["x-ms-version"] == "2014-06-01"


def test_get_virtual_machine_missing_deployment():
    client, _ = _client(lambda request: httpx.Response(404, request=request))
    assert client.get_virtual_machine("bosh-vm-abc", "dg1") is None


def test_get_virtual_machine_server_error_propagates():
    client, _ = _client(lambda request: httpx.Response(503, text="busy", request=request))
    with pytest.raises(RequestFailure) as exc:
        client.get_virtual_machine("bosh-vm-abc", "dg1")
    assert exc.value.status_code == 503


@pytest.mark.parametrize(
    ("method", "operation"),
    [
        ("start_virtual_machine", "StartRoleOperation"),
        ("shutdown_virtual_machine", "ShutdownRoleOperation"),
        ("restart_virtual_machine", "RestartRoleOperation"),
    ],
)
def test_role_operations(method, operation):
    client, seen = _client(_deployment_or_accept)
    getattr(client, method)("bosh-vm-abc", "dg1")
    post = _last(seen, "POST")
    assert post.method == "POST"
    assert post.url.path == (
        "/sub1/services/hostedservices/dg1/deployments/dep1"
        "/roleinstances/bosh-vm-abc/Operations"
    )
    body = post.content.decode()
    assert f"<OperationType>{operation}</OperationType>" in body
    assert seen[-1].url.path == OPERATION_PATH


def test_shutdown_deallocates():
    client, seen = _client(_deployment_or_accept)
    client.shutdown_virtual_machine("bosh-vm-abc", "dg1")
    assert "<PostShutdownAction>StoppedDeallocated</PostShutdownAction>" in (
        _last(seen, "POST").content.decode()
    )


def test_delete_last_role_deletes_deployment():
    client, seen = _client(_deployment_or_accept)
    client.delete_virtual_machine("bosh-vm-abc", "dg1")
    delete = _last(seen, "DELETE")
    assert delete.url.path == "/sub1/services/hostedservices/dg1/deployments/dep1"
    assert delete.url.params["comp"] == "media"


def test_delete_one_of_many_roles():
    two_roles = DEPLOYMENT_XML.replace(
        "</RoleList>", "<Role><RoleName>other</RoleName></Role></RoleList>"
    )

    def handler(request):
        if request.url.path == DEPLOYMENT_PATH:
            return httpx.Response(200, text=two_roles, request=request)
        return _deployment_or_accept(request)

    client, seen = _client(handler)
    client.delete_virtual_machine("bosh-vm-abc", "dg1")
    assert _last(seen, "DELETE").url.path.endswith("/deployments/dep1/roles/bosh-vm-abc")


def test_control_operation_on_missing_role():
    client, seen = _client(_deployment_or_accept)
    with pytest.raises(RoleNotFound):
        client.start_virtual_machine("ghost", "dg1")
    assert [r.method for r in seen] == ["GET"]


def test_add_data_disk_body():
    client, seen = _client(_deployment_or_accept)
    client.add_data_disk(
        "bosh-vm-abc",
        "dg1",
        {
            "import": True,
            "disk_name": "disk2",
            "host_caching": "ReadOnly",
            "disk_label": "bosh",
            "lun": 2,
        },
    )
    post = _last(seen, "POST")
    assert post.url.path == (
        "/sub1/services/hostedservices/dg1/deployments/dep1/roles/bosh-vm-abc/DataDisks"
    )
    body = post.content.decode()
    assert "<DiskName>disk2</DiskName>" in body
    assert "<Lun>2</Lun>" in body
    assert "<HostCaching>ReadOnly</HostCaching>" in body
    assert "<DiskLabel>bosh</DiskLabel>" in body


def test_http_delete_path():
    client, seen = _client(_deployment_or_accept)
    client.http_delete(
        "services/hostedservices/dg1/deployments/dep1/roles/bosh-vm-abc/DataDisks/1"
    )
    assert seen[0].method == "DELETE"
    assert seen[0].url.path == (
        "/sub1/services/hostedservices/dg1/deployments/dep1/roles/bosh-vm-abc/DataDisks/1"
    )
    assert _operation_polls(seen) == 1


def test_http_delete_conflict_propagates():
    client, _ = _client(
        lambda request: httpx.Response(
            409,
            text="ConflictError",
            headers={"x-ms-request-id": "req-1"},
            request=request,
        )
    )
    with pytest.raises(RequestFailure) as exc:
        client.http_delete("services/hostedservices/dg1")
    assert exc.value.status_code == 409
    assert exc.value.request_id == "req-1"
    assert exc.value.attempts == 1


def test_parse_operation_status():
    assert parse_operation_status(_operation_xml("InProgress")) == (
        "InProgress",
        None,
        None,
    )
    assert parse_operation_status(
        _operation_xml("Failed", "ResourceNotFound", "disk missing")
    ) == ("Failed", "ResourceNotFound", "disk missing")


def test_accepted_request_polls_until_succeeded():
    statuses = iter(["InProgress", "InProgress", "Succeeded"])

    def handler(request):
        if request.url.path == OPERATION_PATH:
            return httpx.Response(200, text=_operation_xml(next(statuses)), request=request)
        return _deployment_or_accept(request)

    client, seen = _client(handler)
    client.start_virtual_machine("bosh-vm-abc", "dg1")
    assert _operation_polls(seen) == 3
    assert seen[-1].headers["x-ms-version"] == "2014-06-01"


def test_failed_operation_raises_provider_error():
    def handler(request):
        if request.url.path == OPERATION_PATH:
            return httpx.Response(
                200,
                text=_operation_xml("Failed", "ConflictError", "lun 2 is in use"),
                request=request,
            )
        return _deployment_or_accept(request)

    client, _ = _client(handler)
    with pytest.raises(ProviderOperationFailed) as exc:
        client.add_data_disk(
            "bosh-vm-abc", "dg1", {"import": True, "disk_name": "disk2", "lun": 2}
        )
    assert exc.value.operation == "attach_disk"
    assert exc.value.request_id == OPERATION_ID
    assert exc.value.error_code == "ConflictError"
    assert "lun 2 is in use" in str(exc.value)


def test_operation_in_progress_past_deadline_times_out():
    def handler(request):
        if request.url.path == OPERATION_PATH:
            return httpx.Response(200, text=_operation_xml("InProgress"), request=request)
        return _deployment_or_accept(request)

    client, seen = _client(handler, poll_interval_sec=0.01, operation_timeout_sec=0.05)
    with pytest.raises(ProviderOperationTimeout) as exc:
        client.restart_virtual_machine("bosh-vm-abc", "dg1")
    assert exc.value.operation == "reboot"
    assert exc.value.timeout_sec == 0.05
    assert _operation_polls(seen) >= 1


def test_accepted_without_request_id_does_not_poll():
    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, text=DEPLOYMENT_XML, request=request)
        return httpx.Response(202, request=request)

    client, seen = _client(handler)
    client.shutdown_virtual_machine("bosh-vm-abc", "dg1")
    assert [r.method for r in seen] == ["GET", "POST"]


def test_synchronous_success_does_not_poll():
    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, text=DEPLOYMENT_XML, request=request)
        return httpx.Response(
            200, headers={"x-ms-request-id": OPERATION_ID}, request=request
        )

    client, seen = _client(handler)
    client.delete_virtual_machine("bosh-vm-abc", "dg1")
    assert _operation_polls(seen) == 0


ROLE_DEPLOYMENT_XML = """<Deployment xmlns="http://schemas.microsoft.com/windowsazure">
  <Name>dep1</Name>
  <RoleInstanceList>
    <RoleInstance>
      <RoleName>bosh-vm-abc</RoleName>
      <PowerState>Started</PowerState>
    </RoleInstance>
  </RoleInstanceList>
  <RoleList>
    <Role>
      <RoleName>bosh-vm-abc</RoleName>
      <DataVirtualHardDisks>{disks}</DataVirtualHardDisks>
    </Role>
  </RoleList>
</Deployment>
"""


class DiskCommittingProvider:
    """Applies an accepted data disk only when its operation is polled."""

    def __init__(self):
        self.disks: list[tuple[str, int]] = []
        self.pending: dict[str, tuple[str, int]] = {}
        self.accepted = 0

    def deployment_xml(self) -> str:
        entries = []
        for name, lun in self.disks:
            # LUN 0 is reported without a <Lun> element.
            lun_xml = f"<Lun>{lun}</Lun>" if lun else ""
            entries.append(
                f"<DataVirtualHardDisk><DiskName>{name}</DiskName>{lun_xml}"
                "</DataVirtualHardDisk>"
            )
        return ROLE_DEPLOYMENT_XML.format(disks="".join(entries))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/sub1/operations/"):
            request_id = path.rsplit("/", 1)[1]
            self.disks.append(self.pending.pop(request_id))
            return httpx.Response(200, text=_operation_xml("Succeeded"), request=request)
        if request.method == "GET":
            return httpx.Response(200, text=self.deployment_xml(), request=request)
        body = ET.fromstring(request.content)
        name = body.findtext("wa:DiskName", namespaces=NS)
        lun = int(body.findtext("wa:Lun", namespaces=NS))
        self.accepted += 1
        request_id = f"op-{self.accepted}"
        self.pending[request_id] = (name, lun)
        return httpx.Response(202, headers={"x-ms-request-id": request_id}, request=request)


def test_sequential_attaches_wait_for_each_disk_to_commit():
    provider = DiskCommittingProvider()
    client, _ = _client(provider)
    manager = VMManager(
        provider=client,
        executor=cast(Any, None),
        registry=cast(Any, None),
        storage=cast(Any, None),
        settings=Settings(),
    )
    instance_id = encode("dg1", "bosh-vm-abc")

    paths = [manager.attach_disk(instance_id, f"disk{i}") for i in range(3)]

    assert paths == ["/dev/sdc", "/dev/sdd", "/dev/sde"]
    assert provider.disks == [("disk0", 0), ("disk1", 1), ("disk2", 2)]
    assert provider.pending == {}
    assert manager.get_volume_name(instance_id, "disk2") == "/dev/sde"
