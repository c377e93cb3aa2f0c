import logging
import time
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

from pydantic import BaseModel

from vm_manager.clients.service_management import ServiceManagementClient
from vm_manager.collaborators import (
    ProviderApi,
    Registry,
    StaticRegistry,
    StaticStorageManager,
    StorageManager,
)
from vm_manager.config import Settings, get_settings
from vm_manager.deployment import build_descriptor
from vm_manager.disks import InstanceLocks, device_path, find_disk, lun_of, next_lun
from vm_manager.errors import (
    DiskNotAttached,
    InstanceNotFound,
    ProvisioningFailed,
    ProvisioningTimeout,
    VMManagerError,
)
from vm_manager.executor import ProvisioningExecutor
from vm_manager.identity import InstanceIdentity, decode, encode, read_instance_id
from vm_manager.metrics import metrics
from vm_manager.models import VMRecord
from vm_manager.schemas import CloudOptions, NetworkConfig, ResourcePool


logger = logging.getLogger(__name__)

DISK_HOST_CACHING = "ReadOnly"
DISK_LABEL = "bosh"

ModelT = TypeVar("ModelT", bound=BaseModel)


def _coerce(model: type[ModelT], value: ModelT | Mapping[str, Any]) -> ModelT:
    if isinstance(value, model):
        return value
    return model.model_validate(value)


class VMManager:
    """Lifecycle operations for VMs addressed by opaque instance ids.

    ``create`` goes through the deployment CLI; everything else is a direct
    call against the provider's control API. Attach and detach on the same
    instance are serialized so LUN assignment cannot race.
    """

    def __init__(
        self,
        provider: ProviderApi,
        executor: ProvisioningExecutor,
        registry: Registry,
        storage: StorageManager,
        settings: Settings | None = None,
        locks: InstanceLocks | None = None,
    ):
        self.provider = provider
        self.executor = executor
        self.registry = registry
        self.storage = storage
        self.settings = settings or get_settings()
        self.locks = locks or InstanceLocks()

    def create(
        self,
        uuid: str,
        image: str,
        cloud_opts: CloudOptions | Mapping[str, Any],
        network_config: NetworkConfig | Mapping[str, Any],
        resource_pool: ResourcePool | Mapping[str, Any],
    ) -> str:
        opts = _coerce(CloudOptions, cloud_opts)
        network = _coerce(NetworkConfig, network_config)
        pool = _coerce(ResourcePool, resource_pool)

        resource_group = opts.resource_group_name or self.settings.resource_group_name
        if not resource_group:
            raise VMManagerError(
                operation="create", detail="resource group name is not configured"
            )

        descriptor = build_descriptor(
            uuid=uuid,
            image=image,
            cloud_opts=opts,
            network=network,
            resource_pool=pool,
            storage_account_name=self.storage.get_storage_account_name(),
            registry_endpoint=self.registry.endpoint,
        )

        metrics.inc("vm_create_attempts_total")
        started = time.monotonic()
        try:
            result = self.executor.submit(
                resource_group,
                descriptor.vm_name,
                self.settings.deploy_template_path,
                descriptor.to_parameters(),
            )
        except ProvisioningFailed as exc:
            if isinstance(exc, ProvisioningTimeout):
                metrics.inc("vm_create_timeouts_total")
            metrics.inc("vm_create_failures_total")
            logger.error(
                "failed to create vm vm_name=%s: %s\n%s", descriptor.vm_name, exc, exc.log
            )
            raise
        finally:
            metrics.observe("vm_create", time.monotonic() - started)

        logger.debug("create vm vm_name=%s log:\n%s", descriptor.vm_name, result.log)
        if not result.succeeded:
            metrics.inc("vm_create_failures_total")
            logger.error(
                "failed to create vm vm_name=%s exit_code=%s log:\n%s",
                descriptor.vm_name,
                result.exit_code,
                result.log,
            )
            raise ProvisioningFailed(
                vm_name=descriptor.vm_name,
                detail="deployment command exited non-zero",
                log=result.log,
                exit_code=result.exit_code,
            )

        instance_id = encode(network.domain_name, descriptor.vm_name)
        logger.info(
            "vm created vm_name=%s domain_name=%s instance_id=%s",
            descriptor.vm_name,
            network.domain_name,
            instance_id,
        )
        return instance_id

    def find(self, instance_id: str) -> VMRecord | None:
        identity = decode(instance_id)
        return self.provider.get_virtual_machine(
            identity.vm_name, identity.deployment_group
        )

    def delete(self, instance_id: str) -> None:
        self._control("delete", instance_id, self.provider.delete_virtual_machine)

    def reboot(self, instance_id: str) -> None:
        self._control("reboot", instance_id, self.provider.restart_virtual_machine)

    def start(self, instance_id: str) -> None:
        self._control("start", instance_id, self.provider.start_virtual_machine)

    def shutdown(self, instance_id: str) -> None:
        self._control("shutdown", instance_id, self.provider.shutdown_virtual_machine)

    def current_instance_id(self, agent_lib_path: str | None = None) -> str:
        return read_instance_id(agent_lib_path or self.settings.agent_lib_path)

    def attach_disk(self, instance_id: str, disk_name: str) -> str:
        with self.locks.lock_for(instance_id):
            vm = self._require_vm(instance_id, "attach_disk")
            lun = next_lun(vm.data_disks)
            path = device_path(lun, instance_id)
            self.provider.add_data_disk(
                vm.vm_name,
                vm.cloud_service_name,
                {
                    "import": True,
                    "disk_name": disk_name,
                    "host_caching": DISK_HOST_CACHING,
                    "disk_label": DISK_LABEL,
                    "lun": lun,
                },
            )
        metrics.inc("disk_attach_total")
        logger.info(
            "disk attached instance_id=%s disk=%s lun=%s device=%s",
            instance_id,
            disk_name,
            lun,
            path,
        )
        return path

    def detach_disk(self, instance_id: str, disk_name: str) -> None:
        with self.locks.lock_for(instance_id):
            vm = self._require_vm(instance_id, "detach_disk")
            disk = find_disk(vm.data_disks, disk_name)
            if disk is None:
                raise DiskNotAttached(
                    instance_id=instance_id, disk_name=disk_name, operation="detach_disk"
                )
            lun = lun_of(disk, instance_id, "detach_disk")
            self.provider.http_delete(
                f"services/hostedservices/{vm.cloud_service_name}"
                f"/deployments/{vm.deployment_name}"
                f"/roles/{vm.vm_name}/DataDisks/{lun}"
            )
        metrics.inc("disk_detach_total")
        logger.info(
            "disk detached instance_id=%s disk=%s lun=%s", instance_id, disk_name, lun
        )

    def get_disks(self, instance_id: str) -> list[str]:
        vm = self._require_vm(instance_id, "get_disks")
        return [disk.name for disk in vm.data_disks]

    def get_volume_name(self, instance_id: str, disk_name: str) -> str:
        vm = self._require_vm(instance_id, "get_volume_name")
        disk = find_disk(vm.data_disks, disk_name)
        if disk is None:
            raise DiskNotAttached(
                instance_id=instance_id, disk_name=disk_name, operation="get_volume_name"
            )
        return device_path(lun_of(disk, instance_id, "get_volume_name"), instance_id)

    def _require_vm(self, instance_id: str, operation: str) -> VMRecord:
        vm = self.find(instance_id)
        if vm is None:
            raise InstanceNotFound(instance_id=instance_id, operation=operation)
        return vm

    def _control(
        self, operation: str, instance_id: str, call: Callable[[str, str], None]
    ) -> None:
        identity: InstanceIdentity = decode(instance_id)
        logger.info(
            "%s vm instance_id=%s vm_name=%s deployment_group=%s",
            operation,
            instance_id,
            identity.vm_name,
            identity.deployment_group,
        )
        call(identity.vm_name, identity.deployment_group)
        metrics.inc(f"vm_{operation}_total")


def build_manager(settings: Settings | None = None) -> VMManager:
    settings = settings or get_settings()
    return VMManager(
        provider=ServiceManagementClient.from_settings(settings),
        executor=ProvisioningExecutor(
            cli=settings.provisioning_cli,
            timeout_sec=settings.provisioning_timeout_sec,
            config_mode_command=settings.config_mode_command,
        ),
        registry=StaticRegistry(settings.registry_endpoint),
        storage=StaticStorageManager(settings.storage_account_name),
        settings=settings,
    )
