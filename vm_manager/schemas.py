from pydantic import BaseModel, ConfigDict, Field, field_validator


class CloudOptions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ssh_user: str = Field(min_length=1)
    location: str = Field(min_length=1)
    password: str = Field(min_length=1)
    vm_authorized_keys: str | None = None
    resource_group_name: str | None = None


class NetworkConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    domain_name: str = Field(min_length=1)
    virtual_network_name: str = Field(min_length=1)
    subnet_name: str = Field(min_length=1)
    ip: str = Field(min_length=1)
    dns: str | None = None
    tcp_endpoints: str = ""
    udp_endpoints: str = ""

    @field_validator("dns", mode="before")
    @classmethod
    def _first_nameserver(cls, value):
        if isinstance(value, (list, tuple)):
            return value[0] if value else None
        return value or None


class ResourcePool(BaseModel):
    model_config = ConfigDict(extra="ignore")

    instance_type: str = Field(min_length=1)


class CreateVMRequest(BaseModel):
    uuid: str = Field(min_length=1)
    image: str = Field(min_length=1)
    cloud_opts: CloudOptions
    network_config: NetworkConfig
    resource_pool: ResourcePool


class CreateVMResponse(BaseModel):
    instance_id: str


class DataDiskRead(BaseModel):
    name: str
    lun: int
    host_caching: str | None
    label: str | None


class VMRead(BaseModel):
    instance_id: str
    vm_name: str
    cloud_service_name: str
    deployment_name: str
    state: str
    status: str | None
    ip_address: str | None
    role_size: str | None
    data_disks: list[DataDiskRead]


class AttachDiskResponse(BaseModel):
    device_path: str


class DiskListResponse(BaseModel):
    disks: list[str]
