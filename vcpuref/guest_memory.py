"""A simple model of guest physical memory made of one or more regions."""

from __future__ import annotations

import bisect
from collections.abc import Iterable, Iterator
from dataclasses import dataclass


class GuestMemoryError(Exception):
    """Raised when an access touches an address outside guest memory."""

    def __init__(self, address: int) -> None:
        self.address = address
        super().__init__(f"InvalidGuestAddress(0x{address:x})")


@dataclass
class _Region:
    start: int
    data: bytearray

    @property
    def end(self) -> int:
        return self.start + len(self.data)


class GuestMemory:
    """Guest memory backed by zero-initialised regions.

    ``ranges`` is an iterable of ``(start_address, size)`` pairs. Regions must
    have a positive size and must not overlap.
    """

    def __init__(self, ranges: Iterable[tuple[int, int]]) -> None:
        regions = []
        for start, size in ranges:
            if start < 0:
                raise ValueError(f"region start must not be negative: {start}")
            if size <= 0:
                raise ValueError(f"region size must be positive: {size}")
            regions.append(_Region(start, bytearray(size)))
        regions.sort(key=lambda region: region.start)
        for previous, current in zip(regions, regions[1:]):
            if current.start < previous.end:
                raise ValueError(
                    f"regions overlap at 0x{current.start:x}"
                )
        self._regions = regions
        self._starts = [region.start for region in regions]

    def _find(self, addr: int) -> _Region | None:
        position = bisect.bisect_right(self._starts, addr) - 1
        if position < 0:
            return None
        region = self._regions[position]
        return region if addr < region.end else None

    def _spans(self, addr: int, length: int) -> list[tuple[_Region, int, int]]:
        """Split an access into per-region pieces, failing if any byte is missing."""
        if length < 0:
            raise ValueError(f"length must not be negative: {length}")
        pieces = []
        pos = addr
        remaining = length
        while remaining:
            region = self._find(pos)
            if region is None:
                raise GuestMemoryError(pos)
            count = min(remaining, region.end - pos)
            pieces.append((region, pos - region.start, count))
            pos += count
            remaining -= count
        return pieces

    def address_in_range(self, addr: int) -> bool:
        """Return whether ``addr`` lies inside one of the regions."""
        return self._find(addr) is not None

    def checked_offset(self, addr: int, offset: int) -> int | None:
        """Return ``addr + offset`` if that address is valid, otherwise ``None``."""
        target = addr + offset
        return target if self.address_in_range(target) else None

    def write(self, data: bytes, addr: int) -> None:
        """Write ``data`` starting at ``addr``; nothing is written on failure."""
        payload = memoryview(bytes(data))
        consumed = 0
        for region, offset, count in self._spans(addr, len(payload)):
            region.data[offset:offset + count] = payload[consumed:consumed + count]
            consumed += count

    def read(self, addr: int, length: int) -> bytes:
        """Read ``length`` bytes starting at ``addr``."""
        return b"".join(
            bytes(region.data[offset:offset + count])
            for region, offset, count in self._spans(addr, length)
        )

    def fill(self, addr: int, length: int, value: int = 0) -> None:
        """Set ``length`` bytes starting at ``addr`` to ``value``."""
        if not 0 <= value <= 0xFF:
            raise ValueError(f"fill value must fit in a byte: {value}")
        for region, offset, count in self._spans(addr, length):
            region.data[offset:offset + count] = bytes([value]) * count

    def __iter__(self) -> Iterator[tuple[int, int]]:
        """Iterate over ``(start, size)`` of each region in address order."""
        return ((region.start, len(region.data)) for region in self._regions)