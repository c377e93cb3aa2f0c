from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_TEMPLATE_PATH = str(
    Path(__file__).resolve().parent / "templates" / "deploy_vm.json"
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="VM_MANAGER_", env_file=".env", extra="ignore"
    )

    subscription_id: str = Field(default="")
    management_url: str = Field(default="https://management.core.windows.net")
    management_cert_path: str | None = Field(default=None)
    management_api_version: str = Field(default="2014-06-01")
    http_timeout_sec: float = Field(default=30.0, gt=0)
    operation_poll_interval_sec: float = Field(default=2.0, ge=0)
    operation_timeout_sec: float = Field(default=600.0, gt=0)

    retry_attempts: int = Field(default=1, ge=1)
    retry_sleep_sec: int = Field(default=0, ge=0)

    provisioning_cli: str = Field(default="azure")
    config_mode_command: list[str] = Field(
        default_factory=lambda: ["config", "mode", "arm"]
    )
    deploy_template_path: str = Field(default=DEFAULT_TEMPLATE_PATH)
    provisioning_timeout_sec: float | None = Field(default=1800.0, gt=0)
    resource_group_name: str | None = Field(default=None)

    registry_endpoint: str = Field(default="http://127.0.0.1:25777")
    storage_account_name: str = Field(default="")

    agent_lib_path: str = Field(default="/var/lib/waagent")
    log_level: str = Field(default="INFO")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
