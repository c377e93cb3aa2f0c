"""Deployment descriptor assembly.

Network, resource pool, cloud options and collaborator outputs are merged
into one typed ``DeploymentDescriptor``. ``DeploymentDescriptor.to_parameters``
is the only place that knows the template's parameter envelope.
"""

import base64
import json
import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from vm_manager.errors import EndpointParseError
from vm_manager.schemas import CloudOptions, NetworkConfig, ResourcePool


logger = logging.getLogger(__name__)

VM_NAME_PREFIX = "bosh-vm-"
PROTOCOLS = ("tcp", "udp")


class Endpoint(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str = Field(alias="endpointName")
    public_port: int = Field(alias="publicPort", ge=1, le=65535)
    private_port: int = Field(alias="privatePort", ge=1, le=65535)
    protocol: Literal["tcp", "udp"]
    direct_server_return: bool = Field(
        default=False, alias="enableDirectServerReturn"
    )


class DeploymentDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True, str_min_length=1)

    vm_name: str
    vm_user: str
    image: str
    location: str
    domain_name: str
    virtual_network_name: str
    ip: str
    subnet_name: str
    vm_size: str
    password: str
    storage_account_name: str
    custom_data: str
    deploy_script_parameter: str
    endpoints: list[Endpoint] = Field(default_factory=list)

    def to_parameters(self) -> dict[str, dict[str, Any]]:
        values = self.model_dump(by_alias=True)
        return {key: {"value": value} for key, value in values.items()}


def _parse_port(token: str, entry: str, protocol: str) -> int:
    port = token.strip()
    if not (port.isascii() and port.isdigit()):
        raise EndpointParseError(
            entry=entry, protocol=protocol, detail=f"port {port!r} is not a number"
        )
    value = int(port)
    if not 1 <= value <= 65535:
        raise EndpointParseError(
            entry=entry, protocol=protocol, detail=f"port {value} out of range"
        )
    return value


def parse_endpoints(endpoint_list: str | None, protocol: str) -> list[Endpoint]:
    if protocol not in PROTOCOLS:
        raise EndpointParseError(
            entry=endpoint_list or "", protocol=protocol, detail="unsupported protocol"
        )
    if not endpoint_list or not endpoint_list.strip():
        return []
    endpoints: list[Endpoint] = []
    for entry in endpoint_list.split(","):
        if not entry.strip():
            continue
        tokens = entry.split(":")
        if len(tokens) != 2:
            raise EndpointParseError(
                entry=entry.strip(),
                protocol=protocol,
                detail="expected exactly one public:private pair",
            )
        public_port = _parse_port(tokens[0], entry.strip(), protocol)
        private_port = _parse_port(tokens[1], entry.strip(), protocol)
        endpoints.append(
            Endpoint(
                name=f"{protocol}{public_port}",
                public_port=public_port,
                private_port=private_port,
                protocol=protocol,
            )
        )
    return endpoints


def build_endpoints(tcp_list: str | None, udp_list: str | None) -> list[Endpoint]:
    endpoints = parse_endpoints(tcp_list, "tcp") + parse_endpoints(udp_list, "udp")
    seen: set[str] = set()
    for endpoint in endpoints:
        if endpoint.name in seen:
            raise EndpointParseError(
                entry=endpoint.name,
                protocol=endpoint.protocol,
                detail="duplicate public port",
            )
        seen.add(endpoint.name)
    return endpoints


def build_user_data(registry_endpoint: str, vm_name: str, dns: str | None) -> str:
    user_data: dict[str, Any] = {
        "registry": {"endpoint": registry_endpoint},
        "server": {"name": vm_name},
    }
    if dns:
        user_data["dns"] = {"nameserver": dns}
    encoded = json.dumps(user_data, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(encoded).decode("ascii")


def build_deploy_script_parameter(
    custom_data: str, ssh_key: str | None, vm_user: str
) -> str:
    return json.dumps(
        {"custom_data": custom_data, "ssh_key": ssh_key or "", "vm_user": vm_user}
    )


def vm_name_for(uuid: str) -> str:
    return f"{VM_NAME_PREFIX}{uuid}"


def build_descriptor(
    *,
    uuid: str,
    image: str,
    cloud_opts: CloudOptions,
    network: NetworkConfig,
    resource_pool: ResourcePool,
    storage_account_name: str,
    registry_endpoint: str,
) -> DeploymentDescriptor:
    endpoints = build_endpoints(network.tcp_endpoints, network.udp_endpoints)
    vm_name = vm_name_for(uuid)
    custom_data = build_user_data(registry_endpoint, vm_name, network.dns)
    descriptor = DeploymentDescriptor(
        vm_name=vm_name,
        vm_user=cloud_opts.ssh_user,
        image=image,
        location=cloud_opts.location,
        domain_name=network.domain_name,
        virtual_network_name=network.virtual_network_name,
        ip=network.ip,
        subnet_name=network.subnet_name,
        vm_size=resource_pool.instance_type,
        password=cloud_opts.password,
        storage_account_name=storage_account_name,
        custom_data=custom_data,
        deploy_script_parameter=build_deploy_script_parameter(
            custom_data, cloud_opts.vm_authorized_keys, cloud_opts.ssh_user
        ),
        endpoints=endpoints,
    )
    logger.debug(
        "deployment descriptor built vm_name=%s domain_name=%s endpoints=%s",
        vm_name,
        network.domain_name,
        [endpoint.name for endpoint in endpoints],
    )
    return descriptor
