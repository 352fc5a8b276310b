"""
Analytics client.

The single point through which tools report usage. It keeps a durable
session id, works out its own public IP, and forwards usage events to the
analytics API. Tracking never raises into the calling tool: when the
server cannot be reached the client goes quiet for the rest of the
process instead of retrying.
"""

import logging
import queue
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tracking.ip_resolver import (
    CLIENT_IP_SERVICES,
    fetch_public_ip,
    is_detected_ip,
)

from .session_store import DEFAULT_SESSION_FILE, SessionStore

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "http://localhost:3001/api"
DEFAULT_USER_AGENT = f"ztooly-analytics-client python-httpx/{httpx.__version__}"

# Sentinel IP values (callers treat both as "not detected")
IP_UNDETECTED = "undetected"
IP_ERROR = "error"

HEALTH_TIMEOUT = 2.0
DIRECT_IP_TIMEOUT = 4.0
SERVER_TIMEOUT = 5.0


class ClientState(str, Enum):
    """Lifecycle of the client within one process."""

    UNINITIALIZED = "uninitialized"
    PROBING = "probing"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    DISABLED = "disabled"


class ClientSettings(BaseSettings):
    """
    Configuration for the analytics client.

    Read from API_BASE_URL (or VITE_API_URL), ANALYTICS_ENABLED (or
    VITE_ANALYTICS_ENABLED), ANALYTICS_DEV, ANALYTICS_SESSION_FILE and
    ANALYTICS_USER_AGENT. Analytics stay off unless the enable flag is
    exactly "true".
    """

    model_config = SettingsConfigDict(
        populate_by_name=True,
        env_ignore_empty=True,
        extra="ignore",
    )

    api_base_url: str = Field(
        default=DEFAULT_API_BASE_URL,
        validation_alias=AliasChoices("API_BASE_URL", "VITE_API_URL"),
    )
    analytics_enabled: bool = Field(
        default=False,
        validation_alias=AliasChoices("ANALYTICS_ENABLED", "VITE_ANALYTICS_ENABLED"),
    )
    development: bool = Field(default=False, validation_alias="ANALYTICS_DEV")
    session_file: Path = Field(
        default=DEFAULT_SESSION_FILE, validation_alias="ANALYTICS_SESSION_FILE"
    )
    user_agent: str = Field(
        default=DEFAULT_USER_AGENT, validation_alias="ANALYTICS_USER_AGENT"
    )

    @field_validator("analytics_enabled", mode="before")
    @classmethod
    def exact_true(cls, v):
        if isinstance(v, bool):
            return v
        return v == "true"

    def is_configured(self) -> bool:
        """Analytics need an explicit opt-in and an absolute server URL."""
        return self.analytics_enabled and "://" in self.api_base_url


class AnalyticsClient:
    """
    Usage reporting client with a one-way circuit breaker.

    Construction checks the server's health endpoint. A failed check, or a
    network error on any later call, leaves the client UNAVAILABLE, after
    which calls are no-ops until recheck() succeeds or the process ends.
    """

    _instance: Optional["AnalyticsClient"] = None
    _instance_lock = threading.Lock()

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        http_client: Optional[httpx.Client] = None,
        session_store: Optional[SessionStore] = None,
    ):
        self.settings = settings or ClientSettings()
        self.api_base_url = self.settings.api_base_url.rstrip("/")

        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client()
        self._session_store = session_store or SessionStore(self.settings.session_file)
        self._session_id = self._session_store.get_or_create()

        self._ip_address: Optional[str] = None
        self._state = ClientState.UNINITIALIZED
        self._has_logged_unavailable = False

        # Background worker for fire-and-forget calls
        self._queue: queue.Queue = queue.Queue()
        self._worker_thread: Optional[threading.Thread] = None
        self._worker_lock = threading.Lock()
        self._running = False

        if not self.settings.is_configured():
            self._state = ClientState.DISABLED
            logger.debug(
                "Analytics disabled - set ANALYTICS_ENABLED=true and configure "
                "API_BASE_URL to enable"
            )
            return

        if self._check_server_availability():
            self._submit(self._fetch_user_ip_address)

    # -------------------------------------------------------------------------
    # Singleton access
    # -------------------------------------------------------------------------

    @classmethod
    def get_instance(cls, **kwargs: Any) -> "AnalyticsClient":
        """Get the process-wide client, creating it on first use."""
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls(**kwargs)
            return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and forget the process-wide client (useful for testing)."""
        with cls._instance_lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ClientState:
        return self._state

    def is_available(self) -> bool:
        return self._state is ClientState.AVAILABLE

    def get_session_id(self) -> str:
        return self._session_id

    def get_current_ip_address(self) -> Optional[str]:
        return self._ip_address

    def _log_failure(self, message: str) -> None:
        """Failures are only worth a warning while developing."""
        level = logging.WARNING if self.settings.development else logging.DEBUG
        logger.log(level, message)

    def _mark_unavailable(self, error: Exception) -> None:
        if self._state is ClientState.DISABLED:
            return
        self._state = ClientState.UNAVAILABLE
        if not self._has_logged_unavailable:
            self._has_logged_unavailable = True
            logger.info(
                f"Analytics server unavailable at {self.api_base_url}, "
                f"switching to offline mode: {error}"
            )

    def _check_server_availability(self) -> bool:
        """Check the health endpoint and move to AVAILABLE or UNAVAILABLE."""
        self._state = ClientState.PROBING
        try:
            response = self._http.get(
                f"{self.api_base_url}/health",
                timeout=HEALTH_TIMEOUT,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            self._mark_unavailable(e)
            return False

        if response.is_success:
            self._state = ClientState.AVAILABLE
            self._has_logged_unavailable = False
            return True

        self._mark_unavailable(RuntimeError(f"health check returned {response.status_code}"))
        return False

    def recheck(self) -> bool:
        """
        Re-check server availability on demand.

        Returns:
            True if the server is reachable again
        """
        if self._state is ClientState.DISABLED:
            return False
        if self._check_server_availability():
            self._submit(self._fetch_user_ip_address)
            return True
        return False

    # -------------------------------------------------------------------------
    # Public IP
    # -------------------------------------------------------------------------

    def refresh_ip_address(self) -> Optional[str]:
        """Run the IP resolution chain again and return the result."""
        if self._state is ClientState.DISABLED:
            return self._ip_address
        logger.debug("Refreshing IP address...")
        return self._fetch_user_ip_address()

    def _fetch_user_ip_address(self) -> str:
        try:
            ip = self._resolve_public_ip()
        except Exception as e:
            self._log_failure(f"IP detection failed: {e}")
            ip = IP_ERROR
        self._ip_address = ip
        return ip

    def _resolve_public_ip(self) -> str:
        """
        Work out our public IP.

        Order: the server's public-ip proxy, the external echo services
        directly, then the server's client-info endpoint. The server is
        skipped entirely while it is unavailable.
        """
        if self.is_available():
            ip = self._ip_from_server("public-ip")
            if ip:
                logger.debug(f"IP detected via server proxy: {ip}")
                return ip

        result = fetch_public_ip(
            self._http,
            CLIENT_IP_SERVICES,
            timeout=DIRECT_IP_TIMEOUT,
            headers={"Accept": "application/json"},
            log_failures=self.settings.development,
        )
        if result:
            logger.debug(f"IP detected via {result.source}: {result.ip}")
            return result.ip

        if self.is_available():
            ip = self._ip_from_server("client-info")
            if ip:
                logger.debug(f"IP detected via client-info endpoint: {ip}")
                return ip

        self._log_failure("Could not detect public IP address from any source")
        return IP_UNDETECTED

    def _ip_from_server(self, path: str) -> Optional[str]:
        try:
            response = self._http.get(
                f"{self.api_base_url}/{path}",
                timeout=SERVER_TIMEOUT,
                headers={"Accept": "application/json"},
            )
            if not response.is_success:
                return None
            data = response.json()
        except httpx.TransportError as e:
            self._mark_unavailable(e)
            return None
        except (httpx.HTTPError, ValueError) as e:
            self._log_failure(f"Server {path} lookup failed: {e}")
            return None

        ip = data.get("ip") if isinstance(data, dict) else None
        return ip if is_detected_ip(ip) else None

    # -------------------------------------------------------------------------
    # Tracking
    # -------------------------------------------------------------------------

    def track_tool_usage(self, tool_id: str, tool_name: str) -> bool:
        """
        Report one tool usage event.

        Never raises. Does nothing while the client is disabled or the
        server is unavailable.

        Returns:
            True if the server accepted the event
        """
        if not self.is_available():
            return False

        try:
            if self._ip_address in (None, IP_UNDETECTED, IP_ERROR):
                logger.debug("IP address not available, attempting to fetch...")
                self._fetch_user_ip_address()
                if not self.is_available():
                    return False

            payload = {
                "toolId": tool_id,
                "toolName": tool_name,
                "userSession": self._session_id,
                "userAgent": self.settings.user_agent,
            }
            if self._ip_address not in (None, IP_UNDETECTED, IP_ERROR):
                payload["clientIp"] = self._ip_address

            logger.debug(
                f"Tracking tool usage: {tool_id} | IP: {self._ip_address} | "
                f"Session: {self._session_id[:8]}..."
            )
            response = self._http.post(
                f"{self.api_base_url}/track-usage",
                json=payload,
                timeout=SERVER_TIMEOUT,
            )
            if response.is_success:
                return True

            self._log_failure(f"Failed to track tool usage: HTTP {response.status_code}")
            return False

        except httpx.TransportError as e:
            self._mark_unavailable(e)
            return False
        except Exception as e:
            self._log_failure(f"Failed to track tool usage: {e}")
            return False

    def dispatch(self, tool_id: str, tool_name: str) -> None:
        """Queue a tracking call on the background worker and return at once."""
        if not self.is_available():
            return
        self._submit(self.track_tool_usage, tool_id, tool_name)

    # -------------------------------------------------------------------------
    # Read helpers
    # -------------------------------------------------------------------------

    def _get_json(self, path: str, params: Optional[dict] = None) -> Any:
        """GET a server endpoint; None on any failure."""
        if not self.is_available():
            return None
        try:
            response = self._http.get(
                f"{self.api_base_url}/{path}", params=params, timeout=SERVER_TIMEOUT
            )
            response.raise_for_status()
            return response.json()
        except httpx.TransportError as e:
            self._mark_unavailable(e)
        except (httpx.HTTPError, ValueError) as e:
            self._log_failure(f"Failed to fetch {path}: {e}")
        return None

    def get_popular_tools(self, limit: int = 10) -> list[dict]:
        data = self._get_json("popular-tools", {"limit": limit})
        return data if isinstance(data, list) else []

    def get_daily_stats(self, days: int = 30) -> list[dict]:
        data = self._get_json("daily-stats", {"days": days})
        return data if isinstance(data, list) else []

    def get_tool_usage_count(self, tool_id: str) -> int:
        data = self._get_json(f"tool-usage/{tool_id}")
        if isinstance(data, dict) and isinstance(data.get("count"), int):
            return data["count"]
        return 0

    def get_detailed_client_info(self) -> Optional[dict]:
        data = self._get_json("client-info")
        return data if isinstance(data, dict) else None

    def get_public_ip_info(self) -> Optional[dict]:
        data = self._get_json("public-ip")
        return data if isinstance(data, dict) else None

    # -------------------------------------------------------------------------
    # Background worker
    # -------------------------------------------------------------------------

    def _submit(self, fn: Callable[..., Any], *args: Any) -> None:
        self._ensure_worker()
        self._queue.put((fn, args))

    def _ensure_worker(self) -> None:
        with self._worker_lock:
            if self._running:
                return
            self._running = True
            self._worker_thread = threading.Thread(
                target=self._worker, name="analytics-client", daemon=True
            )
            self._worker_thread.start()

    def _worker(self) -> None:
        """Run queued calls one at a time."""
        while True:
            item = self._queue.get()
            try:
                if item is None:  # Poison pill
                    break
                fn, args = item
                fn(*args)
            except Exception as e:
                logger.error(f"Error in analytics worker: {e}")
            finally:
                self._queue.task_done()

    def wait(self) -> None:
        """Block until every queued call has run."""
        if self._running:
            self._queue.join()

    def close(self) -> None:
        """Stop the worker and release the HTTP client."""
        with self._worker_lock:
            if self._running:
                self._running = False
                self._queue.put(None)
                if self._worker_thread:
                    self._worker_thread.join(timeout=5)
                self._worker_thread = None
        if self._owns_http_client:
            self._http.close()
