"""Claim naming conventions and labels."""

# Finalizer keeping an owner alive until its claims are released
CLAIM_FINALIZER = "staticip.io/ip-claim-protection"

# Finalizer keeping a claim alive until its address is back in the pool
RELEASE_FINALIZER = "staticip.io/address-release"

# Labels (for tracking)
LABEL_OWNER_KIND = "staticip.io/owner-kind"
LABEL_OWNER_NAME = "staticip.io/owner-name"
LABEL_CLUSTER_NAME = "cluster.x-k8s.io/cluster-name"


def device_claim_name(owner_name: str, device_index: int) -> str:
    """Claim name for a machine device: "{owner}-{index}" (zero-based)."""
    if device_index < 0:
        raise ValueError("device_index must be non-negative")
    return f"{owner_name}-{device_index}"


def endpoint_claim_name(owner_name: str) -> str:
    """Claim name for a cluster control-plane endpoint."""
    return owner_name


def owner_labels(owner_kind: str, owner_name: str) -> dict[str, str]:
    """Labels stamped on every claim so its owner can list them for cleanup."""
    return {LABEL_OWNER_KIND: owner_kind, LABEL_OWNER_NAME: owner_name}
