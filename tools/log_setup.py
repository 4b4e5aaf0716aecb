import copy
import os
from typing import Any

from loguru import logger

MASK = "***masked***"
SECRET_KEYS = {"client_id", "client_secret", "refresh_token", "connection_string", "api_key", "token"}
EMAIL_KEYS = {"sender_email", "email"}


def configure_logging(name: str) -> None:
    """Add the rotating file sink for one process (logs/<name>.log)."""
    log_dir = os.getenv("LOG_DIR", "logs")
    os.makedirs(log_dir, exist_ok=True)
    logger.add(
        os.path.join(log_dir, f"{name}.log"),
        rotation="1 day",
        retention="7 days",
        level=os.getenv("LOG_LEVEL", "INFO"),
    )


def mask_sensitive(data: Any) -> Any:
    """Copy of `data` safe to log: emails and secrets are masked."""
    masked = copy.deepcopy(data)
    _mask_in_place(masked)
    return masked


def _mask_in_place(node: Any) -> None:
    if isinstance(node, dict):
        for key, value in node.items():
            if key == "credentials":
                node[key] = MASK
            elif key in SECRET_KEYS and value:
                node[key] = MASK
            elif key in EMAIL_KEYS and isinstance(value, str) and value:
                node[key] = "***@***.com"
            else:
                _mask_in_place(value)
    elif isinstance(node, list):
        for item in node:
            _mask_in_place(item)
