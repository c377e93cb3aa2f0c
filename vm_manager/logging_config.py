import logging
import sys

from vm_manager.config import get_settings


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_vm_manager", False):
            root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._vm_manager = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(resolved)
    logging.getLogger("httpx").setLevel(logging.WARNING)
