import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import load_dotenv

# ─── Configuration ───

CONFIG_FILE = Path(__file__).parent / "config-fox.yaml"
STATE_FILE = Path(__file__).parent / "config.json"

DEFAULT_GAME_PORT = 25565
DEFAULT_RESOURCE = "tetracubed"

# env var -> (yaml path, required)
ENV_KEYS = {
    "DISCORD_TOKEN": (("bot_token",), True),
    "API_BASE_URL": (("api", "base_url"), True),
    "API_USERNAME": (("api", "username"), True),
    "API_PASSWORD": (("api", "password"), True),
    "NOTIFICATION_CHANNEL_ID": (("notification_channel_id",), False),
    "ALLOWED_ROLE_ID": (("permissions", "allowed_role_id"), False),
    "ADMIN_USER_IDS": (("permissions", "admin_ids"), False),
    "SERVER_HOSTNAME": (("server_hostname",), False),
    "STATE_FILE": (("state_file",), False),
}


class ConfigurationError(Exception):
    """A required setting is missing. Raised before any connection is made."""

    def __init__(self, missing: list[str]):
        super().__init__(f"Missing required environment variables: {', '.join(missing)}")
        self.missing = missing


@dataclass(frozen=True)
class Settings:
    bot_token: str
    api_base_url: str
    api_username: str
    api_password: str = field(repr=False)
    notification_channel_id: Optional[str] = None
    allowed_role_id: Optional[str] = None
    admin_user_ids: tuple[str, ...] = ()
    server_hostname: Optional[str] = None
    state_file: Path = STATE_FILE
    resource: str = DEFAULT_RESOURCE
    game_port: int = DEFAULT_GAME_PORT


def get_config(filename: Optional[str] = None) -> dict[str, Any]:
    path = Path(filename or CONFIG_FILE)
    if not path.exists():
        return {}
    with open(path, encoding="utf-8") as file:
        return yaml.safe_load(file) or {}


def _lookup(config: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    node: Any = config
    for key in keys:
        if not isinstance(node, Mapping) or key not in node:
            return None
        node = node[key]
    return node


def _as_id_list(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = value
    return tuple(str(item).strip() for item in items if str(item).strip())


def load_settings(env: Optional[Mapping[str, str]] = None, filename: Optional[str] = None) -> Settings:
    """Collect settings from the environment, falling back to config-fox.yaml.

    Every missing required value is logged before ConfigurationError is raised.
    """
    if env is None:
        load_dotenv()
        env = os.environ
    config = get_config(filename)

    values: dict[str, Any] = {}
    missing = []
    for name, (yaml_path, required) in ENV_KEYS.items():
        value = env.get(name) or _lookup(config, yaml_path)
        if value in (None, "") and required:
            logging.error(f"Missing required environment variable: {name}")
            missing.append(name)
        values[name] = value
    if missing:
        raise ConfigurationError(missing)

    def _optional(name: str) -> Optional[str]:
        value = values[name]
        return str(value) if value not in (None, "") else None

    return Settings(
        bot_token=str(values["DISCORD_TOKEN"]),
        api_base_url=str(values["API_BASE_URL"]).rstrip("/"),
        api_username=str(values["API_USERNAME"]),
        api_password=str(values["API_PASSWORD"]),
        notification_channel_id=_optional("NOTIFICATION_CHANNEL_ID"),
        allowed_role_id=_optional("ALLOWED_ROLE_ID"),
        admin_user_ids=_as_id_list(values["ADMIN_USER_IDS"]),
        server_hostname=_optional("SERVER_HOSTNAME"),
        state_file=Path(values["STATE_FILE"]) if values["STATE_FILE"] else STATE_FILE,
        resource=str(config.get("resource") or DEFAULT_RESOURCE),
        game_port=int(config.get("game_port") or DEFAULT_GAME_PORT),
    )


# ═══════════════════════════════════════════════════
#  NOTIFICATION CHANNEL PERSISTENCE
# ═══════════════════════════════════════════════════

class NotificationStore:
    """The one runtime setting that survives a restart: where notifications go."""

    def __init__(self, path: Path, default_channel_id: Optional[str] = None):
        self.path = Path(path)
        self.data: dict[str, Any] = {"notificationChannelId": default_channel_id}

    @classmethod
    def load(cls, path: Path, default_channel_id: Optional[str] = None) -> "NotificationStore":
        store = cls(path, default_channel_id)
        try:
            if store.path.exists():
                with open(store.path, "r") as f:
                    store.data.update(json.load(f))
        except (OSError, ValueError, TypeError) as e:
            logging.error(f"Error loading config file: {e}")
        return store

    @property
    def channel_id(self) -> Optional[str]:
        value = self.data.get("notificationChannelId")
        return str(value) if value else None

    def set_channel(self, channel_id: int | str) -> None:
        # Only adopt the new channel once it is on disk.
        data = dict(self.data, notificationChannelId=str(channel_id))
        self.save(data)
        self.data = data

    def save(self, data: Optional[dict[str, Any]] = None) -> None:
        try:
            with open(self.path, "w") as f:
                json.dump(self.data if data is None else data, f, indent=2)
        except OSError as e:
            logging.error(f"Error saving config file: {e}")
            raise
