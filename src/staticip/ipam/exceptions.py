"""IPAM and resource store exception classes."""


class IPAMError(Exception):
    """Base exception for allocation and store operations."""

    pass


class NotFound(IPAMError):
    """Target object is absent."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} not found")


class AlreadyExists(IPAMError):
    """Create of an object whose key is already taken."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} already exists")


class Conflict(IPAMError):
    """Optimistic concurrency write collision."""

    def __init__(self, kind: str, key: str, expected: int, actual: int):
        self.kind = kind
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{kind} {key} changed since read "
            f"(expected version {expected}, stored {actual})"
        )


class PoolExhausted(IPAMError):
    """No free address left in the pool."""

    def __init__(self, pool: str, claim: str):
        self.pool = pool
        self.claim = claim
        super().__init__(f"pool {pool} has no free address for claim {claim}")


class ValidationError(IPAMError):
    """Fulfilled or configured data is missing required fields."""

    def __init__(self, message: str, reason: str = "InvalidAddress"):
        self.reason = reason
        super().__init__(message)


class TransientError(IPAMError):
    """Store unreachable or a call exceeded its deadline."""

    pass
