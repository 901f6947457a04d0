"""
Bridge configuration and logging setup.
"""
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from src.core.errors import ConfigurationError


@dataclass
class BridgeConfig:
    homeserver_url: str
    domain: str
    sender_localpart: str
    as_token: str
    hs_token: str
    puppet_prefix: str = ""
    database_url: str = "sqlite:///wechaty_bridge.db"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    # Bounded prefix of message bodies written to logs
    log_preview_length: int = 100

    def __post_init__(self):
        if not self.puppet_prefix:
            self.puppet_prefix = self.sender_localpart

    @classmethod
    def from_env(cls, env_file: Optional[str] = ".env") -> "BridgeConfig":
        """Load configuration from environment variables"""
        if env_file:
            load_dotenv(env_file)
        try:
            config = cls(
                homeserver_url=os.getenv("MATRIX_HOMESERVER_URL", "http://localhost:8008"),
                domain=os.getenv("MATRIX_DOMAIN", "localhost"),
                sender_localpart=os.getenv("APPSERVICE_SENDER_LOCALPART", "wechaty"),
                as_token=os.getenv("APPSERVICE_AS_TOKEN", ""),
                hs_token=os.getenv("APPSERVICE_HS_TOKEN", ""),
                puppet_prefix=os.getenv("PUPPET_LOCALPART_PREFIX", ""),
                database_url=os.getenv("DATABASE_URL", "sqlite:///wechaty_bridge.db"),
                log_level=os.getenv("LOG_LEVEL", "INFO"),
                api_host=os.getenv("BRIDGE_API_HOST", "0.0.0.0"),
                api_port=int(os.getenv("BRIDGE_API_PORT", "8090")),
            )
        except ValueError as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")
        config.validate()
        return config

    def validate(self) -> None:
        if not self.as_token:
            raise ConfigurationError("APPSERVICE_AS_TOKEN is required")
        if not self.hs_token:
            raise ConfigurationError("APPSERVICE_HS_TOKEN is required")
        if not re.fullmatch(r"[a-z0-9._=\-/]+", self.sender_localpart):
            raise ConfigurationError(f"Invalid sender localpart: {self.sender_localpart}")
        if not hasattr(logging, self.log_level.upper()):
            raise ConfigurationError(f"Invalid log level: {self.log_level}")

    @property
    def bot_user_id(self) -> str:
        return f"@{self.sender_localpart}:{self.domain}"

    @property
    def puppet_namespace_regex(self) -> str:
        """Regex of the appservice user namespace that puppets live in"""
        return rf"@{re.escape(self.puppet_prefix)}_.*:{re.escape(self.domain)}"


class JSONFormatter(logging.Formatter):
    _reserved = {
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "getMessage", "taskName",
    }

    def format(self, record):
        log_entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in self._reserved:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(config: BridgeConfig) -> logging.Logger:
    """Setup structured JSON logging for the bridge loggers"""
    level = getattr(logging, config.log_level.upper())
    logger = logging.getLogger("wechaty_bridge")
    logger.setLevel(level)

    # Remove existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)

    return logger


def preview(text: Optional[str], length: int = 100) -> str:
    """Bounded prefix of a message body for log lines"""
    if not text:
        return ""
    return text if len(text) <= length else text[:length] + "..."
