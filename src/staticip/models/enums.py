"""
Enumeration types for the static IP controller.

This module defines the enumeration types used throughout the controller for
claim lifecycle tracking, reconciliation outcomes, status conditions and
configuration options.
"""

from enum import Enum


# =============================================================================
# Resource Kinds
# =============================================================================


class ResourceKind(str, Enum):
    """Kinds of objects held by the resource store."""

    MACHINE = "Machine"
    CLUSTER = "Cluster"
    POOL = "IPPool"
    CLAIM = "IPClaim"
    LEASE = "Lease"


# =============================================================================
# Claim-Related Enums
# =============================================================================


class ClaimPhase(str, Enum):
    """
    Claim fulfillment lifecycle.

    State transitions:
        UNFULFILLED -> FULFILLED (exactly once, by the fulfillment engine)
    A fulfilled claim is only ever removed by deleting it.
    """

    UNFULFILLED = "unfulfilled"
    FULFILLED = "fulfilled"


class EndpointMode(str, Enum):
    """
    How a cluster's control-plane endpoint gets its address.

    - STATIC: allocate the virtual IP from the pool
    - DYNAMIC: endpoint is assigned elsewhere, the controller skips it
    """

    STATIC = "static"
    DYNAMIC = "dynamic"


# =============================================================================
# Reconciliation Enums
# =============================================================================


class ReconcileState(str, Enum):
    """
    Per-owner reconciliation state.

    State transitions:
        START -> SKIP (owner is DHCP / endpoint dynamic)
        START -> NEEDS_ALLOCATION -> PENDING | DONE | ERROR
    """

    START = "start"
    SKIP = "skip"
    NEEDS_ALLOCATION = "needs_allocation"
    PENDING = "pending"
    DONE = "done"
    ERROR = "error"


class OutcomeKind(str, Enum):
    """
    Aggregate result of one configurer pass over an owner.

    - ALL_CONFIGURED: every static slot holds its written configuration
    - PARTIALLY_PENDING: at least one claim is not fulfilled yet
    - FAILED: a fulfilled claim carried unusable data
    """

    ALL_CONFIGURED = "all_configured"
    PARTIALLY_PENDING = "partially_pending"
    FAILED = "failed"


class ConditionType(str, Enum):
    """Status condition types written onto owners and claims."""

    IP_ALLOCATED = "IPAddressAllocated"
    POOL_EXHAUSTED = "PoolExhausted"
    VALIDATION_FAILED = "ValidationFailed"
    RETRIES_EXHAUSTED = "RetriesExhausted"


class ConditionReason(str, Enum):
    """Machine-readable reasons attached to conditions."""

    FULFILLED = "Fulfilled"
    WAITING = "WaitingForAllocation"
    POOL_EXHAUSTED = "PoolExhausted"
    POOL_NOT_FOUND = "PoolNotFound"
    INVALID_ADDRESS = "InvalidAddress"
    INVALID_POOL = "InvalidPool"
    NO_POOL = "NoPoolSelected"
    OWNER_MISMATCH = "ClaimOwnerMismatch"
    STORE_UNAVAILABLE = "StoreUnavailable"


class EventType(str, Enum):
    """Watch event types emitted by the resource store."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


# =============================================================================
# Configuration Enums
# =============================================================================


class StoreBackend(str, Enum):
    """Resource store implementations selectable at startup."""

    SQLITE = "sqlite"
    MEMORY = "memory"


class LogLevel(str, Enum):
    """
    Logging verbosity levels.

    Levels (from most to least verbose):
        - FULL: Complete trace with detailed stack information
        - DEBUG: Debug messages and above
        - INFO: Informational messages and above
        - WARNING: Only warnings and errors
    """

    FULL = "full"
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
