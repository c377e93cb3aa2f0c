import logging

from fastapi import FastAPI

from vm_manager.api import router
from vm_manager.config import get_settings
from vm_manager.logging_config import configure_logging


logger = logging.getLogger(__name__)

app = FastAPI(title="Azure VM Manager")
app.include_router(router)


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    settings = get_settings()
    logger.info(
        "vm-manager startup complete management_url=%s provisioning_cli=%s template=%s timeout_sec=%s",
        settings.management_url,
        settings.provisioning_cli,
        settings.deploy_template_path,
        settings.provisioning_timeout_sec,
    )
