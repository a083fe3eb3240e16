"""
Controller configuration for the static IP controller.

This module defines the configuration dataclass for the controller manager,
providing a centralized place for all configurable parameters.

The CLI updates the global config instance from its flags before the
manager starts.

Usage:
    from staticip.config import config

    config.MAX_CONCURRENCY = 4
    config.LOG_LEVEL = LogLevel.DEBUG
"""

from dataclasses import dataclass

from staticip.models.enums import LogLevel, StoreBackend


# =============================================================================
# Configuration Dataclass
# =============================================================================


@dataclass
class ControllerConfig:
    """
    Controller manager configuration.

    Attributes:
        NAMESPACE: Namespace of watched owners ("" watches all namespaces).
        SYNC_PERIOD_SECONDS: Interval of forced re-reconciliation of every owner.
        METRICS_ADDR: "[host]:port" the health/metrics endpoint binds to.
        MAX_CONCURRENCY: Worker count per controller.
        DB_FILE: Path to the SQLite database backing the resource store.
        LOG_LEVEL: Logging verbosity level.
    """

    # -------------------------------------------------------------------------
    # Watch Configuration
    # -------------------------------------------------------------------------

    NAMESPACE: str = ""
    SYNC_PERIOD_SECONDS: float = 600.0

    # -------------------------------------------------------------------------
    # Manager Configuration
    # -------------------------------------------------------------------------

    METRICS_ADDR: str = ":8080"
    MAX_CONCURRENCY: int = 2

    ENABLE_LEADER_ELECTION: bool = False
    LEADER_ELECTION_ID: str = "controller-leader-election-static-ip"
    LEASE_DURATION_SECONDS: float = 15.0
    LEASE_RENEW_SECONDS: float = 5.0

    # -------------------------------------------------------------------------
    # Resource Store Configuration
    # -------------------------------------------------------------------------

    STORE_BACKEND: StoreBackend = StoreBackend.SQLITE
    DB_FILE: str = "/var/lib/staticip/staticip.db"

    # Deadline applied to every store call and allocation
    CALL_TIMEOUT_SECONDS: float = 10.0

    # Immediate re-read-and-retry attempts on optimistic concurrency conflicts
    CONFLICT_RETRIES: int = 5

    # -------------------------------------------------------------------------
    # Requeue / Backoff Configuration
    # -------------------------------------------------------------------------

    BACKOFF_BASE_SECONDS: float = 0.5
    BACKOFF_MAX_SECONDS: float = 300.0

    # Consecutive transient failures after which the owner gets a
    # RetriesExhausted condition (retrying continues at the backoff ceiling)
    TRANSIENT_FAILURE_THRESHOLD: int = 10

    # -------------------------------------------------------------------------
    # Logging Configuration
    # -------------------------------------------------------------------------

    LOG_LEVEL: LogLevel = LogLevel.INFO
    LOG_FILE: str = ""

    # =========================================================================
    # Helper Methods
    # =========================================================================

    def get_metrics_bind(self) -> tuple[str, int]:
        """
        Split METRICS_ADDR into host and port.

        Returns:
            (host, port); an empty host means all interfaces. Brackets
            around an IPv6 host are stripped.

        Raises:
            ValueError: If the port is missing or not a number.
        """
        host, _, port = self.METRICS_ADDR.rpartition(":")
        if not port.isdigit():
            raise ValueError(f"invalid metrics address '{self.METRICS_ADDR}'")
        host = host.strip("[]")
        return host or "0.0.0.0", int(port)

    def get_backoff(self, failures: int) -> float:
        """
        Exponential backoff delay for the given number of consecutive failures.

        Returns:
            BACKOFF_BASE_SECONDS * 2**(failures-1), capped at BACKOFF_MAX_SECONDS.
        """
        if failures <= 0:
            return 0.0
        # Cap the exponent so the float never overflows
        exponent = min(failures - 1, 64)
        return min(self.BACKOFF_BASE_SECONDS * (2**exponent), self.BACKOFF_MAX_SECONDS)


# =============================================================================
# Global Instance
# =============================================================================

# Global config instance - modify before manager startup
config = ControllerConfig()
