"""Building a Global Descriptor Table (GDT) and writing it to guest memory."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from .guest_memory import GuestMemory, GuestMemoryError

BOOT_GDT_OFFSET = 0x500
"""Guest address at which the GDT is written."""
BOOT_IDT_OFFSET = 0x520
"""Guest address at which the IDT value is written."""
MAX_GDT_SIZE = 1 << 13
"""Maximum number of GDT entries allowed by the architecture."""

DESCRIPTOR_SIZE = 8


class GdtError(Exception):
    """Base class for errors raised while building the GDT."""


class TooManyEntriesError(GdtError):
    """Raised when pushing into a GDT that already holds ``MAX_GDT_SIZE`` entries."""

    def __init__(self) -> None:
        super().__init__(f"the GDT cannot hold more than {MAX_GDT_SIZE} entries")


@dataclass(frozen=True)
class KvmSegment:
    """Segment register contents as understood by the hypervisor."""

    base: int
    limit: int
    selector: int
    type_: int
    present: int
    dpl: int
    db: int
    s: int
    l: int  # noqa: E741
    g: int
    avl: int
    unusable: int


@dataclass(frozen=True)
class SegmentDescriptor:
    """A 64-bit segment descriptor (one GDT entry)."""

    value: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.value < 1 << 64:
            raise ValueError(f"segment descriptor must fit in 64 bits: {self.value}")

    @classmethod
    def from_parts(cls, flags: int, base: int, limit: int) -> SegmentDescriptor:
        """Build a descriptor from 16-bit flags, a 32-bit base and a 20-bit limit."""
        flags &= 0xFFFF
        base &= 0xFFFF_FFFF
        limit &= 0xFFFF_FFFF
        return cls(
            ((base & 0xFF00_0000) << (56 - 24))
            | ((flags & 0x0000_F0FF) << 40)
            | ((limit & 0x000F_0000) << (48 - 16))
            | ((base & 0x00FF_FFFF) << 16)
            | (limit & 0x0000_FFFF)
        )

    @property
    def base(self) -> int:
        v = self.value
        return (
            ((v & 0xFF00_0000_0000_0000) >> 32)
            | ((v & 0x0000_00FF_0000_0000) >> 16)
            | ((v & 0x0000_0000_FFFF_0000) >> 16)
        )

    @property
    def limit(self) -> int:
        v = self.value
        return ((v & 0x000F_0000_0000_0000) >> 32) | (v & 0x0000_0000_0000_FFFF)

    @property
    def g(self) -> int:
        return (self.value >> 55) & 1

    @property
    def db(self) -> int:
        return (self.value >> 54) & 1

    @property
    def l(self) -> int:  # noqa: E743
        return (self.value >> 53) & 1

    @property
    def avl(self) -> int:
        return (self.value >> 52) & 1

    @property
    def p(self) -> int:
        return (self.value >> 47) & 1

    @property
    def dpl(self) -> int:
        return (self.value >> 45) & 0b11

    @property
    def s(self) -> int:
        return (self.value >> 44) & 1

    @property
    def segment_type(self) -> int:
        return (self.value >> 40) & 0xF

    def to_bytes(self) -> bytes:
        """Return the little-endian in-memory layout of the descriptor."""
        return self.value.to_bytes(DESCRIPTOR_SIZE, "little")

    def to_kvm_segment(self, table_index: int) -> KvmSegment:
        """Build the segment for this descriptor found at ``table_index``."""
        present = self.p
        return KvmSegment(
            base=self.base,
            limit=self.limit,
            selector=(table_index * 8) & 0xFFFF,
            type_=self.segment_type,
            present=present,
            dpl=self.dpl,
            db=self.db,
            s=self.s,
            l=self.l,
            g=self.g,
            avl=self.avl,
            unusable=1 if present == 0 else 0,
        )


class Gdt:
    """A Global Descriptor Table holding at most ``MAX_GDT_SIZE`` entries."""

    def __init__(self, entries: Iterable[SegmentDescriptor] | None = None) -> None:
        self._entries: list[SegmentDescriptor] = []
        for entry in entries or ():
            self.try_push(entry)

    @classmethod
    def default(cls) -> Gdt:
        """The boot GDT: null, code, data and TSS descriptors."""
        return cls(
            [
                SegmentDescriptor.from_parts(0, 0, 0),
                SegmentDescriptor.from_parts(0xA09B, 0, 0xFFFFF),
                SegmentDescriptor.from_parts(0xC093, 0, 0xFFFFF),
                SegmentDescriptor.from_parts(0x808B, 0, 0xFFFFF),
            ]
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[SegmentDescriptor]:
        return iter(self._entries)

    def try_push(self, entry: SegmentDescriptor) -> None:
        """Append ``entry``; raise ``TooManyEntriesError`` when the table is full."""
        if len(self._entries) >= MAX_GDT_SIZE:
            raise TooManyEntriesError()
        self._entries.append(entry)

    def create_kvm_segment_for(self, index: int) -> KvmSegment | None:
        """Return the segment for the entry at ``index``, or ``None`` if absent."""
        if not 0 <= index < len(self._entries):
            return None
        return self._entries[index].to_kvm_segment(index)

    def write_to_mem(self, mem: GuestMemory) -> None:
        """Write the table into guest memory at ``BOOT_GDT_OFFSET``."""
        for index, entry in enumerate(self._entries):
            addr = mem.checked_offset(BOOT_GDT_OFFSET, index * DESCRIPTOR_SIZE)
            if addr is None:
                raise GuestMemoryError(BOOT_GDT_OFFSET)
            mem.write(entry.to_bytes(), addr)


def write_idt_value(val: int, guest_mem: GuestMemory) -> None:
    """Write the 64-bit ``val`` into guest memory at ``BOOT_IDT_OFFSET``."""
    guest_mem.write(val.to_bytes(8, "little"), BOOT_IDT_OFFSET)