from typing import Any, Protocol

from vm_manager.errors import VMManagerError
from vm_manager.models import VMRecord


class Registry(Protocol):
    @property
    def endpoint(self) -> str: ...


class StorageManager(Protocol):
    def get_storage_account_name(self) -> str: ...


class ProviderApi(Protocol):
    def get_virtual_machine(
        self, vm_name: str, cloud_service: str
    ) -> VMRecord | None: ...

    def start_virtual_machine(self, vm_name: str, cloud_service: str) -> None: ...

    def shutdown_virtual_machine(self, vm_name: str, cloud_service: str) -> None: ...

    def restart_virtual_machine(self, vm_name: str, cloud_service: str) -> None: ...

    def delete_virtual_machine(self, vm_name: str, cloud_service: str) -> None: ...

    def add_data_disk(
        self, vm_name: str, cloud_service: str, options: dict[str, Any]
    ) -> None: ...

    def http_delete(self, path: str) -> None: ...


class StaticRegistry:
    def __init__(self, endpoint: str):
        self._endpoint = endpoint

    @property
    def endpoint(self) -> str:
        return self._endpoint


class StaticStorageManager:
    def __init__(self, storage_account_name: str):
        self.storage_account_name = storage_account_name

    def get_storage_account_name(self) -> str:
        if not self.storage_account_name:
            raise VMManagerError(
                operation="get_storage_account_name",
                detail="storage account name is not configured",
            )
        return self.storage_account_name
