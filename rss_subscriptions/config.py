"""XML configuration: database, HTTP, quota and logging settings plus an env file."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional
from xml.etree import ElementTree as ET

from .discovery import DEFAULT_TIMEOUT, DEFAULT_USER_AGENT
from .subscriptions import MAX_RSS_SUBSCRIPTIONS

logger = logging.getLogger(__name__)

DATABASE_URL_ENV = "RSS_SUBSCRIPTIONS_DATABASE_URL"


@dataclass
class DatabaseConfig:
    connection_string: Optional[str] = None


@dataclass
class HttpConfig:
    timeout: float = DEFAULT_TIMEOUT
    user_agent: str = DEFAULT_USER_AGENT


@dataclass
class SubscriptionsConfig:
    max_active_rss: int = MAX_RSS_SUBSCRIPTIONS


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class AppConfig:
    env_file: Optional[str] = None
    environment: str = "local"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    subscriptions: SubscriptionsConfig = field(default_factory=SubscriptionsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def resolve_connection_string(self) -> Optional[str]:
        """Config file value first, then the environment."""
        return self.database.connection_string or os.environ.get(DATABASE_URL_ENV)


def _resolve_path(base_path: Path, target_path: str) -> str:
    """Expand ``~`` and anchor relative env/log paths at the config file's directory."""
    target = Path(target_path.strip()).expanduser()
    if not target.is_absolute():
        target = base_path.parent / target
    return str(target.resolve())


def parse_env_config(path: str) -> Dict[str, str]:
    """Read ``<variable name="...">value</variable>`` entries from an env file.

    The env file keeps secrets such as the database URL out of the main
    config. Entries without a name or a value are skipped.
    """
    if not path:
        return {}

    logger.info("Loading environment configuration from %s", path)
    try:
        root = ET.parse(path).getroot()
    except ET.ParseError as exc:
        raise ValueError(f"Env file {path} is not valid XML: {exc}") from exc

    env_vars: Dict[str, str] = {}
    for var in root.findall("variable"):
        name = (var.attrib.get("name") or "").strip()
        value = (var.text or "").strip()
        if not name or not value:
            logger.warning("Skipping incomplete env variable %r in %s", name, path)
            continue
        env_vars[name] = value
    return env_vars


def parse_app_config(path: str) -> AppConfig:
    """Parse the main application configuration XML."""
    config_path = Path(path).resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    logger.info("Loading application configuration from %s", config_path)
    try:
        root = ET.parse(config_path).getroot()
    except ET.ParseError as exc:
        raise ValueError(f"Config file is not valid XML: {exc}") from exc

    config = AppConfig()

    env_node = root.find("env")
    if env_node is not None and env_node.text:
        config.env_file = _resolve_path(config_path, env_node.text.strip())

    config.environment = root.findtext("environment", "local").strip() or "local"

    db_node = root.find("database")
    if db_node is not None:
        connection_string = db_node.findtext("connection-string")
        if connection_string:
            config.database.connection_string = connection_string.strip()

    http_node = root.find("http")
    if http_node is not None:
        timeout = http_node.findtext("timeout")
        if timeout:
            config.http.timeout = float(timeout)
        user_agent = http_node.findtext("user-agent")
        if user_agent:
            config.http.user_agent = user_agent.strip()

    subs_node = root.find("subscriptions")
    if subs_node is not None:
        max_active = subs_node.findtext("max-active-rss")
        if max_active:
            config.subscriptions.max_active_rss = int(max_active)
            if config.subscriptions.max_active_rss < 0:
                raise ValueError("max-active-rss must not be negative.")

    log_node = root.find("logging")
    if log_node is not None:
        config.logging.level = log_node.findtext("level", "INFO")
        log_file = log_node.findtext("file")
        if log_file:
            config.logging.file = _resolve_path(config_path, log_file)

    return config
