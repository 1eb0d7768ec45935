import os
from dataclasses import dataclass
from typing import Optional

import yaml

CONFIG_ENV_KEY = "CONFIG_PATH"
DEFAULT_CONFIG_PATH = "config.yml"
DEFAULT_DATABASE_PATH = "invite_tracker.db"


@dataclass
class BotConfig:
    token: str
    log_level: str
    database_path: str
    dev_guild_id: Optional[int] = None


def load_config(path: str | None = None) -> BotConfig:
    config_path = path or os.environ.get(CONFIG_ENV_KEY, DEFAULT_CONFIG_PATH)
    with open(config_path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    token = str(data.get("token") or "").strip()
    if not token:
        raise ValueError("Config missing 'token'")

    log_level = str(data.get("log_level") or "INFO").upper()
    valid_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
    if log_level not in valid_levels:
        raise ValueError(
            f"Invalid log_level '{log_level}'. Must be one of {sorted(valid_levels)}"
        )

    database_path = str(data.get("database_path") or DEFAULT_DATABASE_PATH)

    dev_guild_id = data.get("dev_guild_id")
    if dev_guild_id is not None:
        try:
            dev_guild_id = int(dev_guild_id)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid dev_guild_id '{dev_guild_id}'") from None

    return BotConfig(
        token=token,
        log_level=log_level,
        database_path=database_path,
        dev_guild_id=dev_guild_id,
    )
