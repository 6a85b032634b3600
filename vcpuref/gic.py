"""Creating, configuring, saving and restoring an emulated ARM GIC device."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import IntEnum
from errno import EINVAL, ENODEV

from .gic_regs import (
    KVM_DEV_ARM_VGIC_CTRL_INIT,
    KVM_DEV_ARM_VGIC_GRP_ADDR,
    KVM_DEV_ARM_VGIC_GRP_CTRL,
    KVM_DEV_ARM_VGIC_GRP_NR_IRQS,
    CreateDeviceError,
    DeviceFd,
    GicRegState,
    GicSysRegsState,
    InconsistentVcpuCountError,
    KvmError,
    SetAttrError,
    convert_to_kvm_mpidrs,
    dist_regs,
    icc_regs,
    redist_regs,
    save_pending_tables,
    set_dist_regs,
    set_icc_regs,
    set_redist_regs,
)

MIN_NR_IRQS = 64
"""The minimum number of interrupts supported by the GIC."""
MAX_NR_IRQS = 1024
"""The maximum number of interrupts supported by the GIC."""

_U8_MAX = 0xFF
_U32_MAX = 0xFFFF_FFFF

AARCH64_AXI_BASE = 0x4000_0000
AARCH64_GIC_DIST_SIZE = 0x1_0000
AARCH64_GIC_CPUI_SIZE = 0x2_0000
AARCH64_GIC_DIST_BASE = AARCH64_AXI_BASE - AARCH64_GIC_DIST_SIZE
AARCH64_GIC_CPUI_BASE = AARCH64_GIC_DIST_BASE - AARCH64_GIC_CPUI_SIZE
AARCH64_GIC_REDIST_SIZE = 0x2_0000

# Address types within the address attribute group.
KVM_VGIC_V2_ADDR_TYPE_DIST = 0
KVM_VGIC_V2_ADDR_TYPE_CPU = 1
KVM_VGIC_V3_ADDR_TYPE_DIST = 2
KVM_VGIC_V3_ADDR_TYPE_REDIST = 3

_ADDR_SIZE = 8
_NR_IRQS_SIZE = 4


class GicVersion(IntEnum):
    """The version of the GIC device, valued by its device type."""

    V2 = 5
    V3 = 7


@dataclass(frozen=True)
class GicConfig:
    """Configuration of the GIC device.

    ``num_irqs`` must be a multiple of 32 in ``[MIN_NR_IRQS, MAX_NR_IRQS]`` for
    the device to accept it. ``num_cpus`` is not used by a GICv2. Without a
    ``version`` a GICv3 is tried first, then a GICv2.
    """

    num_irqs: int = MIN_NR_IRQS
    num_cpus: int = 0
    version: GicVersion | None = None

    def __post_init__(self) -> None:
        if not 0 <= self.num_irqs <= _U32_MAX:
            raise ValueError(f"num_irqs must fit in 32 bits: {self.num_irqs}")
        if not 0 <= self.num_cpus <= _U8_MAX:
            raise ValueError(f"num_cpus must fit in a byte: {self.num_cpus}")
        if self.version is not None:
            object.__setattr__(self, "version", GicVersion(self.version))


@dataclass
class GicVcpuState:
    """The saved GIC registers belonging to one vCPU."""

    redist: list[GicRegState] = field(default_factory=list)
    icc: GicSysRegsState = field(default_factory=GicSysRegsState)


@dataclass
class GicState:
    """The saved state of the whole GIC."""

    dist: list[GicRegState] = field(default_factory=list)
    gic_vcpu_states: list[GicVcpuState] = field(default_factory=list)


_ALLOWED_ADDR_TYPES = {
    GicVersion.V2: frozenset({KVM_VGIC_V2_ADDR_TYPE_DIST, KVM_VGIC_V2_ADDR_TYPE_CPU}),
    GicVersion.V3: frozenset({KVM_VGIC_V3_ADDR_TYPE_DIST, KVM_VGIC_V3_ADDR_TYPE_REDIST}),
}


def _vgic_validator(version: GicVersion):
    allowed_addr_types = _ALLOWED_ADDR_TYPES[version]

    def validate(group: int, attr: int, value: int) -> None:
        if group == KVM_DEV_ARM_VGIC_GRP_NR_IRQS:
            if not (MIN_NR_IRQS <= value <= MAX_NR_IRQS and value % 32 == 0):
                raise KvmError(EINVAL)
        elif group == KVM_DEV_ARM_VGIC_GRP_ADDR and attr not in allowed_addr_types:
            raise KvmError(EINVAL)

    return validate


class VmFd:
    """An emulated virtual machine able to create the listed GIC versions."""

    def __init__(
        self, supported_versions: Iterable[GicVersion] = (GicVersion.V2, GicVersion.V3)
    ) -> None:
        self.supported_versions = frozenset(GicVersion(v) for v in supported_versions)
        self.devices: list[DeviceFd] = []

    def create_device(self, device_type: int) -> DeviceFd:
        """Create a device of ``device_type``; raise ``KvmError`` if unsupported."""
        try:
            version = GicVersion(device_type)
        except ValueError:
            raise KvmError(ENODEV) from None
        if version not in self.supported_versions:
            raise KvmError(ENODEV)
        device = DeviceFd(int(version), validate=_vgic_validator(version))
        self.devices.append(device)
        return device


class Gic:
    """A created and configured GIC device."""

    def __init__(self, config: GicConfig, vm_fd: VmFd) -> None:
        if config.version is not None:
            version = config.version
            device_fd = self._create_device(vm_fd, version)
        else:
            try:
                version = GicVersion.V3
                device_fd = self._create_device(vm_fd, version)
            except CreateDeviceError:
                version = GicVersion.V2
                device_fd = self._create_device(vm_fd, version)

        self._version = version
        self._device_fd = device_fd
        self.num_irqs = config.num_irqs
        self.num_cpus = config.num_cpus
        self._configure_device()

    @staticmethod
    def _create_device(vm_fd: VmFd, version: GicVersion) -> DeviceFd:
        try:
            return vm_fd.create_device(int(version))
        except KvmError as error:
            raise CreateDeviceError(error.errno) from None

    def _set_attr(self, name: str, group: int, attr: int, value: int, size: int) -> None:
        try:
            self._device_fd.set_device_attr(group, attr, value, size)
        except KvmError as error:
            raise SetAttrError(name, error.errno) from None

    def _configure_device(self) -> None:
        if self._version is GicVersion.V2:
            self._set_attr(
                "dist",
                KVM_DEV_ARM_VGIC_GRP_ADDR,
                KVM_VGIC_V2_ADDR_TYPE_DIST,
                AARCH64_GIC_DIST_BASE,
                _ADDR_SIZE,
            )
            self._set_attr(
                "cpu",
                KVM_DEV_ARM_VGIC_GRP_ADDR,
                KVM_VGIC_V2_ADDR_TYPE_CPU,
                AARCH64_GIC_CPUI_BASE,
                _ADDR_SIZE,
            )
        else:
            redist_addr = AARCH64_GIC_DIST_BASE - AARCH64_GIC_REDIST_SIZE * self.num_cpus
            self._set_attr(
                "redist",
                KVM_DEV_ARM_VGIC_GRP_ADDR,
                KVM_VGIC_V3_ADDR_TYPE_REDIST,
                redist_addr,
                _ADDR_SIZE,
            )
            self._set_attr(
                "dist",
                KVM_DEV_ARM_VGIC_GRP_ADDR,
                KVM_VGIC_V3_ADDR_TYPE_DIST,
                AARCH64_GIC_DIST_BASE,
                _ADDR_SIZE,
            )
        self._set_attr(
            "irq", KVM_DEV_ARM_VGIC_GRP_NR_IRQS, 0, self.num_irqs, _NR_IRQS_SIZE
        )
        self._set_attr(
            "finalize", KVM_DEV_ARM_VGIC_GRP_CTRL, KVM_DEV_ARM_VGIC_CTRL_INIT, 0, 0
        )

    @property
    def device_fd(self) -> DeviceFd:
        """The device backing this GIC."""
        return self._device_fd

    @property
    def version(self) -> GicVersion:
        """The version of this GIC."""
        return self._version

    def save_state(self, vcpu_mpidrs: Iterable[int]) -> GicState:
        """Save the GIC state for the vCPUs with the given MPIDR_EL1 values."""
        fd = self._device_fd
        kvm_mpidrs = convert_to_kvm_mpidrs(vcpu_mpidrs)
        save_pending_tables(fd)
        vcpu_states = [
            GicVcpuState(redist=redist_regs(fd, mpidr), icc=icc_regs(fd, mpidr))
            for mpidr in kvm_mpidrs
        ]
        return GicState(dist=dist_regs(fd), gic_vcpu_states=vcpu_states)

    def restore_state(self, state: GicState, vcpu_mpidrs: Iterable[int]) -> None:
        """Restore ``state`` for the vCPUs with the given MPIDR_EL1 values."""
        mpidrs = list(vcpu_mpidrs)
        if len(mpidrs) != len(state.gic_vcpu_states):
            raise InconsistentVcpuCountError()
        kvm_mpidrs = convert_to_kvm_mpidrs(mpidrs)
        fd = self._device_fd
        set_dist_regs(fd, state.dist)
        for mpidr, vcpu_state in zip(kvm_mpidrs, state.gic_vcpu_states):
            set_redist_regs(fd, vcpu_state.redist, mpidr)
            set_icc_regs(fd, vcpu_state.icc, mpidr)