"""Saving and restoring the registers of an emulated ARM GIC device."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from errno import EINVAL

# Device attribute groups of the virtual GIC.
KVM_DEV_ARM_VGIC_GRP_ADDR = 0
KVM_DEV_ARM_VGIC_GRP_DIST_REGS = 1
KVM_DEV_ARM_VGIC_GRP_CPU_REGS = 2
KVM_DEV_ARM_VGIC_GRP_NR_IRQS = 3
KVM_DEV_ARM_VGIC_GRP_CTRL = 4
KVM_DEV_ARM_VGIC_GRP_REDIST_REGS = 5
KVM_DEV_ARM_VGIC_GRP_CPU_SYSREGS = 6

# Attributes of the control group.
KVM_DEV_ARM_VGIC_CTRL_INIT = 0
KVM_DEV_ARM_VGIC_SAVE_PENDING_TABLES = 3

KVM_DEV_ARM_VGIC_V3_MPIDR_MASK = 0xFFFF_FFFF_0000_0000
"""Bits of a register attribute that select the vCPU by its affinity."""

_SYSREG_OP0_SHIFT, _SYSREG_OP0_MASK = 14, 0xC000
_SYSREG_OP1_SHIFT, _SYSREG_OP1_MASK = 11, 0x3800
_SYSREG_CRN_SHIFT, _SYSREG_CRN_MASK = 7, 0x0780
_SYSREG_CRM_SHIFT, _SYSREG_CRM_MASK = 3, 0x0078
_SYSREG_OP2_SHIFT, _SYSREG_OP2_MASK = 0, 0x0007

# The number of interrupts handled by the distributor registers that are saved.
_IRQ_MAX = 128
# First usable interrupt; the SGI and PPI part of shared registers is RAZ/WI.
_IRQ_BASE = 32

_U32 = 4
_U64 = 8

_ICC_CTLR_EL1_PRIBITS_SHIFT = 8
_ICC_CTLR_EL1_PRIBITS_MASK = 7 << _ICC_CTLR_EL1_PRIBITS_SHIFT


class GicError(Exception):
    """Base class for errors raised while operating on the GIC."""


class KvmError(GicError):
    """A device operation failed with ``errno``."""

    def __init__(self, errno: int) -> None:
        self.errno = errno
        super().__init__(
            f"Error calling into KVM ioctl: {os.strerror(errno)} (errno {errno})"
        )


class CreateDeviceError(GicError):
    """The GIC device could not be created."""

    def __init__(self, errno: int) -> None:
        self.errno = errno
        super().__init__(
            f"Error creating the GIC device: {os.strerror(errno)} (errno {errno})"
        )


class SetAttrError(GicError):
    """Setting the attribute called ``name`` on the GIC device failed."""

    def __init__(self, name: str, errno: int) -> None:
        self.name = name
        self.errno = errno
        super().__init__(
            f"Error setting an attribute ({name}) for the GIC device: "
            f"{os.strerror(errno)} (errno {errno})"
        )


class InconsistentVcpuCountError(GicError):
    """The GIC state and the vCPU list describe a different number of vCPUs."""

    def __init__(self) -> None:
        super().__init__("Inconsisted vCPU count between the GIC and vCPU states")


class InvalidGicSysRegStateError(GicError):
    """The saved GIC system registers do not match the device."""

    def __init__(self) -> None:
        super().__init__("Invalid state of the GIC system registers")


AttrValidator = Callable[[int, int, int], None]
"""Called as ``validate(group, attr, value)``; raises ``KvmError`` to reject."""


class DeviceFd:
    """An emulated device whose attributes are addressed by ``(group, attr)``.

    Attributes that were never set read as zero. ``validate``, when given, is
    consulted before every write and may reject it by raising ``KvmError``.
    """

    def __init__(
        self, device_type: int = 0, validate: AttrValidator | None = None
    ) -> None:
        self.device_type = device_type
        self._validate = validate
        self._attrs: dict[tuple[int, int], int] = {}

    @staticmethod
    def _check_size(size: int) -> None:
        if size < 0:
            raise ValueError(f"attribute size must not be negative: {size}")

    def set_device_attr(self, group: int, attr: int, value: int, size: int) -> None:
        """Store ``value``, which must fit in ``size`` bytes, in the attribute."""
        self._check_size(size)
        if not 0 <= value < 1 << (8 * size):
            raise KvmError(EINVAL)
        if self._validate is not None:
            self._validate(group, attr, value)
        self._attrs[(group, attr)] = value

    def get_device_attr(self, group: int, attr: int, size: int) -> int:
        """Return the attribute's value truncated to ``size`` bytes."""
        self._check_size(size)
        return self._attrs.get((group, attr), 0) & ((1 << (8 * size)) - 1)


@dataclass(frozen=True)
class GicRegState:
    """The saved contents of one register, as a sequence of chunks."""

    chunks: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "chunks", tuple(self.chunks))


@dataclass
class GicSysRegsState:
    """The saved GIC system registers of one vCPU.

    ``ap_icc_regs`` holds ``None`` for each active priority register that the
    device does not implement.
    """

    main_icc_regs: list[GicRegState] = field(default_factory=list)
    ap_icc_regs: list[GicRegState | None] = field(default_factory=list)


@dataclass(frozen=True)
class SimpleReg:
    """A register of ``size`` bytes mapped at ``offset``."""

    offset: int
    size: int

    def range(self) -> range:
        """Return the byte addresses the register occupies."""
        return range(self.offset, self.offset + self.size)


@dataclass(frozen=True)
class SharedIrqReg:
    """A distributor register that dedicates ``bits_per_irq`` bits to each IRQ."""

    offset: int
    bits_per_irq: int

    def range(self) -> range:
        """Return the byte addresses covering the shared peripheral interrupts."""
        start = self.offset + _IRQ_BASE * self.bits_per_irq // 8
        size_in_bits = self.bits_per_irq * (_IRQ_MAX - _IRQ_BASE)
        size_in_bytes = -(-size_in_bits // 8)
        return range(start, start + size_in_bytes)


MmioReg = SimpleReg | SharedIrqReg


def gic_sys_reg(op0: int, op1: int, crn: int, crm: int, op2: int) -> SimpleReg:
    """Return the 8-byte system register with the given encoding."""
    offset = (
        ((op0 << _SYSREG_OP0_SHIFT) & _SYSREG_OP0_MASK)
        | ((op1 << _SYSREG_OP1_SHIFT) & _SYSREG_OP1_MASK)
        | ((crn << _SYSREG_CRN_SHIFT) & _SYSREG_CRN_MASK)
        | ((crm << _SYSREG_CRM_SHIFT) & _SYSREG_CRM_MASK)
        | ((op2 << _SYSREG_OP2_SHIFT) & _SYSREG_OP2_MASK)
    )
    return SimpleReg(offset, 8)


def convert_to_kvm_mpidrs(mpidrs: Iterable[int]) -> list[int]:
    """Move the four affinity levels of each MPIDR_EL1 value into bits 63..32.

    Aff0..Aff2 come from bits 23..0 and Aff3 from bits 39..32; the bits in
    between are dropped.
    """
    converted = []
    for mpidr in mpidrs:
        cpu_affid = ((mpidr & 0xFF_0000_0000) >> 8) | (mpidr & 0xFF_FFFF)
        converted.append(cpu_affid << 32)
    return converted


def save_pending_tables(fd: DeviceFd) -> None:
    """Ask the device to flush the redistributor pending tables to guest RAM."""
    fd.set_device_attr(
        KVM_DEV_ARM_VGIC_GRP_CTRL, KVM_DEV_ARM_VGIC_SAVE_PENDING_TABLES, 0, 0
    )


def _attr(offset: int, mpidr: int, mpidr_mask: int) -> int:
    return (mpidr & mpidr_mask) | offset


def _get_reg_data(
    fd: DeviceFd, reg: MmioReg, group: int, chunk_size: int, mpidr: int, mpidr_mask: int
) -> GicRegState:
    span = reg.range()
    return GicRegState(
        tuple(
            fd.get_device_attr(group, _attr(offset, mpidr, mpidr_mask), chunk_size)
            for offset in range(span.start, span.stop, chunk_size)
        )
    )


def _set_reg_data(
    fd: DeviceFd,
    reg: MmioReg,
    group: int,
    state: GicRegState,
    chunk_size: int,
    mpidr: int,
    mpidr_mask: int,
) -> None:
    span = reg.range()
    for offset, value in zip(range(span.start, span.stop, chunk_size), state.chunks):
        fd.set_device_attr(group, _attr(offset, mpidr, mpidr_mask), value, chunk_size)


def _get_regs_data(
    fd: DeviceFd,
    regs: Iterable[MmioReg],
    group: int,
    chunk_size: int,
    mpidr: int,
    mpidr_mask: int,
) -> list[GicRegState]:
    return [
        _get_reg_data(fd, reg, group, chunk_size, mpidr, mpidr_mask) for reg in regs
    ]


def _set_regs_data(
    fd: DeviceFd,
    regs: Iterable[MmioReg],
    group: int,
    states: Sequence[GicRegState],
    chunk_size: int,
    mpidr: int,
    mpidr_mask: int,
) -> None:
    for reg, state in zip(regs, states):
        _set_reg_data(fd, reg, group, state, chunk_size, mpidr, mpidr_mask)


# Distributor registers; offsets are relative to the distributor base.
GICD_CTLR = SimpleReg(0x0000, 4)
GICD_STATUSR = SimpleReg(0x0010, 4)
GICD_IGROUPR = SharedIrqReg(0x0080, 1)
GICD_ISENABLER = SharedIrqReg(0x0100, 1)
GICD_ICENABLER = SharedIrqReg(0x0180, 1)
GICD_ISPENDR = SharedIrqReg(0x0200, 1)
GICD_ICPENDR = SharedIrqReg(0x0280, 1)
GICD_ISACTIVER = SharedIrqReg(0x0300, 1)
GICD_ICACTIVER = SharedIrqReg(0x0380, 1)
GICD_IPRIORITYR = SharedIrqReg(0x0400, 8)
GICD_ICFGR = SharedIrqReg(0x0C00, 2)
GICD_IROUTER = SharedIrqReg(0x6000, 64)

DIST_REGS: tuple[MmioReg, ...] = (
    GICD_CTLR,
    GICD_STATUSR,
    GICD_ICENABLER,
    GICD_ISENABLER,
    GICD_IGROUPR,
    GICD_IROUTER,
    GICD_ICFGR,
    GICD_ICPENDR,
    GICD_ISPENDR,
    GICD_ICACTIVER,
    GICD_ISACTIVER,
    GICD_IPRIORITYR,
)


def dist_regs(fd: DeviceFd) -> list[GicRegState]:
    """Read the distributor registers."""
    return _get_regs_data(fd, DIST_REGS, KVM_DEV_ARM_VGIC_GRP_DIST_REGS, _U32, 0, 0)


def set_dist_regs(fd: DeviceFd, dist: Sequence[GicRegState]) -> None:
    """Write the distributor registers."""
    _set_regs_data(fd, DIST_REGS, KVM_DEV_ARM_VGIC_GRP_DIST_REGS, dist, _U32, 0, 0)


# Redistributor registers (PPI frame, then SGI frame).
GICR_CTLR = SimpleReg(0x0000, 4)
GICR_STATUSR = SimpleReg(0x0010, 4)
GICR_WAKER = SimpleReg(0x0014, 4)
GICR_PROPBASER = SimpleReg(0x0070, 8)
GICR_PENDBASER = SimpleReg(0x0078, 8)

GICR_SGI_OFFSET = 0x0001_0000
GICR_IGROUPR0 = SimpleReg(GICR_SGI_OFFSET + 0x0080, 4)
GICR_ISENABLER0 = SimpleReg(GICR_SGI_OFFSET + 0x0100, 4)
GICR_ICENABLER0 = SimpleReg(GICR_SGI_OFFSET + 0x0180, 4)
GICR_ISPENDR0 = SimpleReg(GICR_SGI_OFFSET + 0x0200, 4)
GICR_ICPENDR0 = SimpleReg(GICR_SGI_OFFSET + 0x0280, 4)
GICR_ISACTIVER0 = SimpleReg(GICR_SGI_OFFSET + 0x0300, 4)
GICR_ICACTIVER0 = SimpleReg(GICR_SGI_OFFSET + 0x0380, 4)
GICR_IPRIORITYR0 = SimpleReg(GICR_SGI_OFFSET + 0x0400, 32)
GICR_ICFGR0 = SimpleReg(GICR_SGI_OFFSET + 0x0C00, 8)

REDIST_REGS: tuple[SimpleReg, ...] = (
    GICR_CTLR,
    GICR_STATUSR,
    GICR_WAKER,
    GICR_PROPBASER,
    GICR_PENDBASER,
    GICR_IGROUPR0,
    GICR_ICENABLER0,
    GICR_ISENABLER0,
    GICR_ICFGR0,
    GICR_ICPENDR0,
    GICR_ISPENDR0,
    GICR_ICACTIVER0,
    GICR_ISACTIVER0,
    GICR_IPRIORITYR0,
)


def redist_regs(fd: DeviceFd, mpidr: int) -> list[GicRegState]:
    """Read the redistributor registers of the vCPU with KVM affinity ``mpidr``."""
    return _get_regs_data(
        fd,
        REDIST_REGS,
        KVM_DEV_ARM_VGIC_GRP_REDIST_REGS,
        _U32,
        mpidr,
        KVM_DEV_ARM_VGIC_V3_MPIDR_MASK,
    )


def set_redist_regs(fd: DeviceFd, redist: Sequence[GicRegState], mpidr: int) -> None:
    """Write the redistributor registers of the vCPU with KVM affinity ``mpidr``."""
    _set_regs_data(
        fd,
        REDIST_REGS,
        KVM_DEV_ARM_VGIC_GRP_REDIST_REGS,
        redist,
        _U32,
        mpidr,
        KVM_DEV_ARM_VGIC_V3_MPIDR_MASK,
    )


# CPU interface system registers.
SYS_ICC_SRE_EL1 = gic_sys_reg(3, 0, 12, 12, 5)
SYS_ICC_CTLR_EL1 = gic_sys_reg(3, 0, 12, 12, 4)
SYS_ICC_IGRPEN0_EL1 = gic_sys_reg(3, 0, 12, 12, 6)
SYS_ICC_IGRPEN1_EL1 = gic_sys_reg(3, 0, 12, 12, 7)
SYS_ICC_PMR_EL1 = gic_sys_reg(3, 0, 4, 6, 0)
SYS_ICC_BPR0_EL1 = gic_sys_reg(3, 0, 12, 8, 3)
SYS_ICC_BPR1_EL1 = gic_sys_reg(3, 0, 12, 12, 3)

MAIN_ICC_REGS: tuple[SimpleReg, ...] = (
    SYS_ICC_SRE_EL1,
    SYS_ICC_CTLR_EL1,
    SYS_ICC_IGRPEN0_EL1,
    SYS_ICC_IGRPEN1_EL1,
    SYS_ICC_PMR_EL1,
    SYS_ICC_BPR0_EL1,
    SYS_ICC_BPR1_EL1,
)


def _sys_icc_ap0rn_el1(n: int) -> SimpleReg:
    return gic_sys_reg(3, 0, 12, 8, 4 | n)


def _sys_icc_ap1rn_el1(n: int) -> SimpleReg:
    return gic_sys_reg(3, 0, 12, 9, n)


SYS_ICC_AP0R0_EL1 = _sys_icc_ap0rn_el1(0)
SYS_ICC_AP0R1_EL1 = _sys_icc_ap0rn_el1(1)
SYS_ICC_AP0R2_EL1 = _sys_icc_ap0rn_el1(2)
SYS_ICC_AP0R3_EL1 = _sys_icc_ap0rn_el1(3)
SYS_ICC_AP1R0_EL1 = _sys_icc_ap1rn_el1(0)
SYS_ICC_AP1R1_EL1 = _sys_icc_ap1rn_el1(1)
SYS_ICC_AP1R2_EL1 = _sys_icc_ap1rn_el1(2)
SYS_ICC_AP1R3_EL1 = _sys_icc_ap1rn_el1(3)

AP_ICC_REGS: tuple[SimpleReg, ...] = (
    SYS_ICC_AP0R0_EL1,
    SYS_ICC_AP0R1_EL1,
    SYS_ICC_AP0R2_EL1,
    SYS_ICC_AP0R3_EL1,
    SYS_ICC_AP1R0_EL1,
    SYS_ICC_AP1R1_EL1,
    SYS_ICC_AP1R2_EL1,
    SYS_ICC_AP1R3_EL1,
)

# Implemented only with at least 6 bits of priority.
_AP_REGS_NEED_6_BITS = frozenset({SYS_ICC_AP0R1_EL1, SYS_ICC_AP1R1_EL1})
# Implemented only with exactly 7 bits of priority.
_AP_REGS_NEED_7_BITS = frozenset(
    {SYS_ICC_AP0R2_EL1, SYS_ICC_AP0R3_EL1, SYS_ICC_AP1R2_EL1, SYS_ICC_AP1R3_EL1}
)


def _num_priority_bits(fd: DeviceFd, mpidr: int) -> int:
    reg_val = _get_reg_data(
        fd,
        SYS_ICC_CTLR_EL1,
        KVM_DEV_ARM_VGIC_GRP_CPU_SYSREGS,
        _U64,
        mpidr,
        KVM_DEV_ARM_VGIC_V3_MPIDR_MASK,
    ).chunks[0]
    return ((reg_val & _ICC_CTLR_EL1_PRIBITS_MASK) >> _ICC_CTLR_EL1_PRIBITS_SHIFT) + 1


def _is_ap_reg_available(reg: SimpleReg, num_priority_bits: int) -> bool:
    if reg in _AP_REGS_NEED_6_BITS and num_priority_bits < 6:
        return False
    if reg in _AP_REGS_NEED_7_BITS and num_priority_bits != 7:
        return False
    return True


def icc_regs(fd: DeviceFd, mpidr: int) -> GicSysRegsState:
    """Read the GIC system registers of the vCPU with KVM affinity ``mpidr``."""
    main = _get_regs_data(
        fd,
        MAIN_ICC_REGS,
        KVM_DEV_ARM_VGIC_GRP_CPU_SYSREGS,
        _U64,
        mpidr,
        KVM_DEV_ARM_VGIC_V3_MPIDR_MASK,
    )
    num_priority_bits = _num_priority_bits(fd, mpidr)
    ap: list[GicRegState | None] = [
        _get_reg_data(
            fd,
            reg,
            KVM_DEV_ARM_VGIC_GRP_CPU_SYSREGS,
            _U64,
            mpidr,
            KVM_DEV_ARM_VGIC_V3_MPIDR_MASK,
        )
        if _is_ap_reg_available(reg, num_priority_bits)
        else None
        for reg in AP_ICC_REGS
    ]
    return GicSysRegsState(main_icc_regs=main, ap_icc_regs=ap)


def set_icc_regs(fd: DeviceFd, state: GicSysRegsState, mpidr: int) -> None:
    """Write the GIC system registers of the vCPU with KVM affinity ``mpidr``.

    Raises ``InvalidGicSysRegStateError`` when the saved active priority
    registers do not match those the device implements.
    """
    _set_regs_data(
        fd,
        MAIN_ICC_REGS,
        KVM_DEV_ARM_VGIC_GRP_CPU_SYSREGS,
        state.main_icc_regs,
        _U64,
        mpidr,
        KVM_DEV_ARM_VGIC_V3_MPIDR_MASK,
    )
    num_priority_bits = _num_priority_bits(fd, mpidr)
    for reg, reg_data in zip(AP_ICC_REGS, state.ap_icc_regs):
        if _is_ap_reg_available(reg, num_priority_bits) != (reg_data is not None):
            raise InvalidGicSysRegStateError()
        if reg_data is not None:
            _set_reg_data(
                fd,
                reg,
                KVM_DEV_ARM_VGIC_GRP_CPU_SYSREGS,
                reg_data,
                _U64,
                mpidr,
                KVM_DEV_ARM_VGIC_V3_MPIDR_MASK,
            )