"""Reading and writing Local APIC registers in a saved LAPIC state."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum

LAPIC_REGS_SIZE = 1024
"""Size in bytes of the register page of a LAPIC state."""

APIC_LVT0_REG_OFFSET = 0x350
"""Register offset of the APIC Local Vector Table entry for LINT0."""
APIC_LVT1_REG_OFFSET = 0x360
"""Register offset of the APIC Local Vector Table entry for LINT1."""

_REG_SIZE = 4
_DELIVERY_MODE_MASK = 0x700
_DELIVERY_MODE_SHIFT = 8


class DeliveryMode(IntEnum):
    """The type of interrupt delivered to the processor."""

    FIXED = 0b000
    SMI = 0b010
    NMI = 0b100
    INIT = 0b101
    EXT_INT = 0b111


class InvalidRegisterOffsetError(ValueError):
    """Raised when a 4-byte register does not fit at the given offset."""

    def __init__(self, offset: int) -> None:
        self.offset = offset
        super().__init__("The register offset is invalid.")


@dataclass
class LapicState:
    """The register page of a Local APIC, 1024 bytes."""

    regs: bytearray = field(default_factory=lambda: bytearray(LAPIC_REGS_SIZE))

    def __post_init__(self) -> None:
        self.regs = bytearray(self.regs)
        if len(self.regs) != LAPIC_REGS_SIZE:
            raise ValueError(
                f"LAPIC register page must be {LAPIC_REGS_SIZE} bytes, "
                f"got {len(self.regs)}"
            )


def _register_slice(klapic: LapicState, reg_offset: int) -> slice:
    if reg_offset < 0 or reg_offset + _REG_SIZE > len(klapic.regs):
        raise InvalidRegisterOffsetError(reg_offset)
    return slice(reg_offset, reg_offset + _REG_SIZE)


def get_klapic_reg(klapic: LapicState, reg_offset: int) -> int:
    """Return the signed 32-bit register value stored at ``reg_offset``."""
    window = _register_slice(klapic, reg_offset)
    return int.from_bytes(klapic.regs[window], "little", signed=True)


def set_klapic_reg(klapic: LapicState, reg_offset: int, value: int) -> None:
    """Store the signed 32-bit ``value`` in the register at ``reg_offset``."""
    window = _register_slice(klapic, reg_offset)
    try:
        encoded = value.to_bytes(_REG_SIZE, "little", signed=True)
    except OverflowError:
        raise ValueError(f"register value must fit in a signed 32-bit integer: {value}") from None
    klapic.regs[window] = encoded


def _with_delivery_mode(reg: int, mode: int) -> int:
    return (reg & ~_DELIVERY_MODE_MASK) | (mode << _DELIVERY_MODE_SHIFT)


def set_klapic_delivery_mode(
    klapic: LapicState, reg_offset: int, mode: DeliveryMode
) -> None:
    """Set the delivery mode bits of the LVT register at ``reg_offset``."""
    mode = DeliveryMode(mode)
    reg_value = get_klapic_reg(klapic, reg_offset)
    set_klapic_reg(klapic, reg_offset, _with_delivery_mode(reg_value, int(mode)))