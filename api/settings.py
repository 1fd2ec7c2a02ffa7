"""
Runtime settings for the FL dashboard backend.

Settings are read from environment variables:

- ``FL_API_URL``: base URL of the external federated-learning service
- ``FL_DASHBOARD_*``: timeouts, polling cadence and retry budgets

Anything not set falls back to the defaults below, which mirror the values
the browser dashboard has always used (10 s between rounds, 3 attempts,
30 minute sessions renewed 5 minutes early).
"""

import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Mapping, Optional

from .shared.logger import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "FL_DASHBOARD_"

# field name -> environment variable (without prefix unless absolute)
_ENV_OVERRIDES = {
    "fl_api_url": "FL_API_URL",
    "proxy_timeout": ENV_PREFIX + "PROXY_TIMEOUT",
    "long_request_timeout": ENV_PREFIX + "LONG_TIMEOUT",
    "initialize_timeout": ENV_PREFIX + "INITIALIZE_TIMEOUT",
    "session_lifetime": ENV_PREFIX + "SESSION_LIFETIME",
    "session_renew_margin": ENV_PREFIX + "SESSION_RENEW_MARGIN",
    "round_interval": ENV_PREFIX + "ROUND_INTERVAL",
    "poll_interval": ENV_PREFIX + "POLL_INTERVAL",
    "max_round_failures": ENV_PREFIX + "MAX_ROUND_FAILURES",
    "reconcile_attempts": ENV_PREFIX + "RECONCILE_ATTEMPTS",
    "reconcile_delay": ENV_PREFIX + "RECONCILE_DELAY",
    "max_total_data_size": ENV_PREFIX + "MAX_TOTAL_DATA",
    "log_level": ENV_PREFIX + "LOG_LEVEL",
}


@dataclass
class DashboardSettings:
    """Settings shared by the proxy routes and the training orchestrator."""

    fl_api_url: str = "http://127.0.0.1:8001"

    # Proxy / HTTP client timeouts (seconds)
    proxy_timeout: float = 30.0
    long_request_timeout: float = 60.0
    initialize_timeout: float = 30.0

    # Session lifecycle (seconds)
    session_lifetime: float = 1800.0
    session_renew_margin: float = 300.0

    # Scheduling
    round_interval: float = 10.0
    poll_interval: float = 5.0
    max_round_failures: int = 3
    reconcile_attempts: int = 3
    reconcile_delay: float = 2.0
    default_total_rounds: int = 10

    # Client setup limits
    max_clients: int = 5
    max_total_data_size: int = 6000
    high_load_data_size: int = 4000

    log_level: str = "INFO"

    def __post_init__(self):
        self.fl_api_url = self.fl_api_url.rstrip("/")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DashboardSettings":
        """Build settings from environment variables.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``)

        Returns:
            DashboardSettings with overrides applied. Values that fail to
            parse are ignored with a warning.
        """
        environ = os.environ if environ is None else environ
        defaults = cls()
        values: Dict[str, Any] = {}

        for f in fields(cls):
            env_name = _ENV_OVERRIDES.get(f.name)
            if not env_name or env_name not in environ:
                continue

            raw = environ[env_name]
            default = getattr(defaults, f.name)
            try:
                if isinstance(default, bool):
                    values[f.name] = raw.strip().lower() in ("1", "true", "yes", "on")
                elif isinstance(default, int):
                    values[f.name] = int(raw)
                elif isinstance(default, float):
                    values[f.name] = float(raw)
                else:
                    values[f.name] = raw
            except ValueError:
                logger.warning(
                    "Ignoring invalid value %r for %s (keeping %r)", raw, env_name, default
                )

        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
