"""
Address management for the static IP controller.

Provides:
- Claim identity derivation
- Address pool bookkeeping (lowest-free allocation)

The fulfillment engine lives in staticip.ipam.engine (it depends on the
resource store, which itself raises the exceptions defined here).
"""

from staticip.ipam.exceptions import (
    AlreadyExists,
    Conflict,
    IPAMError,
    NotFound,
    PoolExhausted,
    TransientError,
    ValidationError,
)
from staticip.ipam.naming import (
    CLAIM_FINALIZER,
    RELEASE_FINALIZER,
    LABEL_CLUSTER_NAME,
    LABEL_OWNER_KIND,
    LABEL_OWNER_NAME,
    device_claim_name,
    endpoint_claim_name,
    owner_labels,
)
from staticip.ipam.pool import AddressPool

__all__ = [
    # Pool
    "AddressPool",
    # Exceptions
    "IPAMError",
    "NotFound",
    "AlreadyExists",
    "Conflict",
    "PoolExhausted",
    "ValidationError",
    "TransientError",
    # Naming
    "CLAIM_FINALIZER",
    "RELEASE_FINALIZER",
    "LABEL_CLUSTER_NAME",
    "LABEL_OWNER_KIND",
    "LABEL_OWNER_NAME",
    "device_claim_name",
    "endpoint_claim_name",
    "owner_labels",
]
