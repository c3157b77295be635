"""
Sync Client Configuration

Environment-driven settings for a sync session. Values are read after
python-dotenv has loaded a local .env file; a malformed numeric value is
logged and replaced by its default rather than failing the session.
"""

import os
import logging
from dataclasses import dataclass, asdict
from typing import Dict, Any, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:8000/api"


@dataclass
class SyncClientConfig:
    """Settings for the request client, change channel and local cache."""
    api_url: str = DEFAULT_API_URL
    socket_url: str = "http://localhost:8000"
    request_timeout: float = 20.0
    max_reconnect_attempts: int = 5
    reconnect_backoff: float = 1.0
    notification_limit: int = 50
    state_db_url: str = "sqlite:///taskflow_state.db"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None, dotenv: bool = True) -> "SyncClientConfig":
        """
        Build the configuration from environment variables.

        Args:
            env: Mapping to read instead of os.environ
            dotenv: Load a .env file first (ignored when env is given)
        """
        if env is None:
            if dotenv:
                load_dotenv()
            env = os.environ

        api_url = (env.get("TASKFLOW_API_URL") or DEFAULT_API_URL).rstrip('/')
        socket_url = env.get("TASKFLOW_SOCKET_URL") or _socket_url_for(api_url)

        return cls(
            api_url=api_url,
            socket_url=socket_url,
            request_timeout=_number(env, "TASKFLOW_REQUEST_TIMEOUT", float, cls.request_timeout),
            max_reconnect_attempts=_number(env, "TASKFLOW_MAX_RECONNECT_ATTEMPTS", int, cls.max_reconnect_attempts),
            reconnect_backoff=_number(env, "TASKFLOW_RECONNECT_BACKOFF", float, cls.reconnect_backoff),
            notification_limit=_number(env, "TASKFLOW_NOTIFICATION_LIMIT", int, cls.notification_limit),
            state_db_url=env.get("TASKFLOW_STATE_DB_URL") or cls.state_db_url,
            log_level=(env.get("TASKFLOW_LOG_LEVEL") or cls.log_level).upper(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _socket_url_for(api_url: str) -> str:
    # The Socket.IO server lives at the API host root
    if api_url.endswith('/api'):
        return api_url[:-len('/api')]
    return api_url


def _number(env, name: str, cast, default):
    raw = env.get(name)
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"Invalid {name} value: {raw}, using {default}")
        return default
    if value < 0:
        logger.warning(f"Negative {name} value: {raw}, using {default}")
        return default
    return value


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
