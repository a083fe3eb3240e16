"""
Address pool allocation logic.

AddressPool wraps an IPPool resource and implements the pure bookkeeping
part of allocation: which addresses are allocatable, which are taken, and
which one a new claim gets. It never talks to the store; the fulfillment
engine persists the mutated IPPool.

Allocation order:
    The range and explicit entries are merged into disjoint ascending
    intervals. Addresses are walked lazily in that order and the first one
    not present in status.allocations is handed out. The result depends
    only on pool state, so a re-run after a crash picks the same address.
    Capacity comes from interval bounds, never from walking addresses, so
    an IPv6 /64 costs the same as a /30.
"""

import bisect
import ipaddress
from collections.abc import Iterator

from staticip.ipam.exceptions import PoolExhausted, ValidationError
from staticip.models.enums import ConditionReason
from staticip.models.resources import FulfilledAddress, IPPool
from staticip.utils.logger import get_logger

logger = get_logger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

# (ip version, first, last) with integer bounds, inclusive
Interval = tuple[int, int, int]


def _invalid(pool_name: str, detail: str) -> ValidationError:
    return ValidationError(f"pool {pool_name}: {detail}", ConditionReason.INVALID_POOL)


def _parse_ip(value: str, pool_name: str) -> IPAddress:
    try:
        return ipaddress.ip_address(value.strip())
    except ValueError:
        raise _invalid(pool_name, f"invalid address '{value}'") from None


def _merge_intervals(intervals: list[Interval]) -> list[Interval]:
    """Sort intervals and join the ones that overlap or touch."""
    merged: list[Interval] = []
    for version, first, last in sorted(intervals):
        if merged:
            prev_version, prev_first, prev_last = merged[-1]
            if prev_version == version and first <= prev_last + 1:
                merged[-1] = (version, prev_first, max(prev_last, last))
                continue
        merged.append((version, first, last))
    return merged


class AddressPool:
    """
    Allocation view over an IPPool resource.

    Mutations (allocate/release) are applied to the wrapped resource's
    status.allocations; callers persist `self.pool` afterwards.
    """

    def __init__(self, pool: IPPool):
        self.pool = pool
        self.name = pool.name

        spec = pool.spec
        self._gateway = _parse_ip(spec.gateway, self.name) if spec.gateway else None

        intervals = self._parse_explicit(spec.addresses)
        address_range = self._parse_range(spec.start, spec.end)
        if address_range is not None:
            intervals.append(address_range)
        self._intervals = _merge_intervals(intervals)
        self._starts = [(version, first) for version, first, _ in self._intervals]

    # =========================================================================
    # Parsing
    # =========================================================================

    def _parse_bounds(self, start: str, end: str, entry: str) -> Interval:
        first = _parse_ip(start, self.name)
        last = _parse_ip(end, self.name)
        if first.version != last.version:
            raise _invalid(self.name, f"range '{entry}' mixes IPv4 and IPv6")
        if int(first) > int(last):
            raise _invalid(self.name, f"range start {start} > end {end}")
        return first.version, int(first), int(last)

    def _parse_range(self, start: str, end: str) -> Interval | None:
        if not start and not end:
            return None
        if not start or not end:
            raise _invalid(self.name, "range needs both start and end")
        return self._parse_bounds(start, end, f"{start}-{end}")

    def _parse_explicit(self, entries: list[str]) -> list[Interval]:
        """Parse explicit entries ("a.b.c.d" or "a.b.c.d-a.b.c.e") as intervals."""
        intervals = []
        for entry in entries:
            first_str, sep, last_str = entry.partition("-")
            if not sep:
                addr = _parse_ip(entry, self.name)
                intervals.append((addr.version, int(addr), int(addr)))
            else:
                intervals.append(self._parse_bounds(first_str, last_str, entry))
        return intervals

    # =========================================================================
    # Address Enumeration
    # =========================================================================

    def iter_addresses(self) -> Iterator[IPAddress]:
        """Yield every allocatable address once, ascending, gateway excluded."""
        for version, first, last in self._intervals:
            cls = ipaddress.IPv4Address if version == 4 else ipaddress.IPv6Address
            for value in range(first, last + 1):
                addr = cls(value)
                if addr != self._gateway:
                    yield addr

    def _in_intervals(self, addr: IPAddress) -> bool:
        key = (addr.version, int(addr))
        index = bisect.bisect_right(self._starts, key) - 1
        if index < 0:
            return False
        version, _, last = self._intervals[index]
        return version == addr.version and int(addr) <= last

    def capacity(self) -> int:
        """Number of allocatable addresses."""
        total = sum(last - first + 1 for _, first, last in self._intervals)
        if self._gateway is not None and self._in_intervals(self._gateway):
            total -= 1
        return total

    def contains(self, address: str) -> bool:
        addr = ipaddress.ip_address(address)
        return addr != self._gateway and self._in_intervals(addr)

    # =========================================================================
    # Allocation State
    # =========================================================================

    @property
    def allocations(self) -> dict[str, str]:
        """address -> claim name (the live map of the wrapped resource)."""
        return self.pool.status.allocations

    def address_of(self, claim_name: str) -> str | None:
        """Address currently held by a claim, if any (lowest if several)."""
        held = [a for a, c in self.allocations.items() if c == claim_name]
        if not held:
            return None
        return min(held, key=lambda a: int(ipaddress.ip_address(a)))

    def free_count(self, capacity: int | None = None) -> int:
        if capacity is None:
            capacity = self.capacity()
        taken = sum(1 for a in self.allocations if self.contains(a))
        return capacity - taken
    def snapshot(self, address: str) -> FulfilledAddress:
        """Copy pool-wide network metadata for an address."""
        spec = self.pool.spec
        return FulfilledAddress(
            address=address,
            gateway=spec.gateway,
            prefix=spec.prefix,
            dns_servers=tuple(spec.dns_servers),
            search_domains=tuple(spec.search_domains),
        )

    # =========================================================================
    # Allocate / Release
    # =========================================================================

    def allocate(self, claim_name: str) -> FulfilledAddress:
        """
        Allocate the lowest free address to a claim.

        A claim that already holds an address gets the same one back.

        Raises:
            PoolExhausted: Every allocatable address is taken. The pool is
                left unchanged.
        """
        existing = self.address_of(claim_name)
        if existing is not None:
            logger.debug(f"Claim {claim_name} already holds {existing} in {self.name}")
            return self.snapshot(existing)

        if self.free_count() <= 0:
            raise PoolExhausted(self.name, claim_name)

        taken = self.allocations
        for addr in self.iter_addresses():
            address = str(addr)
            if address not in taken:
                taken[address] = claim_name
                return self.snapshot(address)

        raise PoolExhausted(self.name, claim_name)

    def release(self, claim_name: str) -> list[str]:
        """
        Return every address held by a claim to the pool.

        Returns:
            Released addresses; empty if the claim held nothing.
        """
        released = [a for a, c in self.allocations.items() if c == claim_name]
        for address in released:
            del self.allocations[address]
        return released

    def get_stats(self) -> dict:
        """Capacity bookkeeping for status output."""
        capacity = self.capacity()
        free = self.free_count(capacity)
        return {
            "pool": self.name,
            "capacity": capacity,
            "allocated": capacity - free,
            "free": free,
            "gateway": self.pool.spec.gateway,
            "prefix": self.pool.spec.prefix,
        }
