"""Boot MSR entries and the filter for MSRs that are saved with a vCPU."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

MSR_IA32_TSC = 0x0000_0010
MSR_IA32_FEATURE_CONTROL = 0x0000_003A
MSR_IA32_SYSENTER_CS = 0x0000_0174
MSR_IA32_SYSENTER_ESP = 0x0000_0175
MSR_IA32_SYSENTER_EIP = 0x0000_0176
MSR_IA32_MCG_CTL = 0x0000_017B
MSR_IA32_MISC_ENABLE = 0x0000_01A0
MSR_IA32_MISC_ENABLE_FAST_STRING = 0x0000_0001
MSR_STAR = 0xC000_0081
MSR_LSTAR = 0xC000_0082
MSR_CSTAR = 0xC000_0083
MSR_SYSCALL_MASK = 0xC000_0084
MSR_KERNEL_GS_BASE = 0xC000_0102

_APIC_BASE_MSR = 0x800
_APIC_MSR_INDEXES = 0x400


@dataclass(frozen=True)
class MsrEntry:
    """A model specific register and the value it holds."""

    index: int
    data: int = 0


@dataclass(frozen=True)
class MsrRange:
    """``nmsrs`` consecutive MSRs starting at ``base``."""

    base: int
    nmsrs: int = 1

    def __contains__(self, msr: int) -> bool:
        return self.base <= msr < self.base + self.nmsrs


def create_boot_msr_entries() -> list[MsrEntry]:
    """Return the MSR entries needed for booting Linux on x86_64."""
    zeroed = [
        MSR_IA32_SYSENTER_CS,
        MSR_IA32_SYSENTER_ESP,
        MSR_IA32_SYSENTER_EIP,
        MSR_STAR,
        MSR_CSTAR,
        MSR_KERNEL_GS_BASE,
        MSR_SYSCALL_MASK,
        MSR_LSTAR,
        MSR_IA32_TSC,
    ]
    entries = [MsrEntry(index) for index in zeroed]
    entries.append(MsrEntry(MSR_IA32_MISC_ENABLE, MSR_IA32_MISC_ENABLE_FAST_STRING))
    return entries


# MSRs that can be serialized, in ascending order of address.
_ALLOWED_MSR_RANGES: tuple[MsrRange, ...] = (
    MsrRange(0x0000_0000),  # IA32_P5_MC_ADDR
    MsrRange(0x0000_0001),  # IA32_P5_MC_TYPE
    MsrRange(MSR_IA32_TSC),
    MsrRange(0x0000_0017),  # IA32_PLATFORM_ID
    MsrRange(0x0000_001B),  # IA32_APICBASE
    MsrRange(0x0000_002A),  # IA32_EBL_CR_POWERON
    MsrRange(0x0000_002C),  # EBC_FREQUENCY_ID
    MsrRange(0x0000_0034),  # SMI_COUNT
    MsrRange(MSR_IA32_FEATURE_CONTROL),
    MsrRange(0x0000_003B),  # IA32_TSC_ADJUST
    MsrRange(0x0000_0048),  # IA32_SPEC_CTRL
    MsrRange(0x0000_0049),  # IA32_PRED_CMD
    MsrRange(0x0000_0079),  # IA32_UCODE_WRITE
    MsrRange(0x0000_008B),  # IA32_UCODE_REV
    MsrRange(0x0000_009E),  # IA32_SMBASE
    MsrRange(0x0000_00CD),  # FSB_FREQ
    MsrRange(0x0000_00CE),  # PLATFORM_INFO
    MsrRange(0x0000_00E2),  # PKG_CST_CONFIG_CONTROL
    MsrRange(0x0000_00E7),  # IA32_MPERF
    MsrRange(0x0000_00E8),  # IA32_APERF
    MsrRange(0x0000_00FE),  # MTRRcap
    MsrRange(0x0000_011E),  # IA32_BBL_CR_CTL3
    MsrRange(MSR_IA32_SYSENTER_CS),
    MsrRange(MSR_IA32_SYSENTER_ESP),
    MsrRange(MSR_IA32_SYSENTER_EIP),
    MsrRange(0x0000_0179),  # IA32_MCG_CAP
    MsrRange(0x0000_017A),  # IA32_MCG_STATUS
    MsrRange(MSR_IA32_MCG_CTL),
    MsrRange(0x0000_0198),  # IA32_PERF_STATUS
    MsrRange(MSR_IA32_MISC_ENABLE),
    MsrRange(0x0000_01A4),  # MISC_FEATURE_CONTROL
    MsrRange(0x0000_01AA),  # MISC_PWR_MGMT
    MsrRange(0x0000_01AD),  # TURBO_RATIO_LIMIT
    MsrRange(0x0000_01AE),  # TURBO_RATIO_LIMIT1
    MsrRange(0x0000_01D9),  # IA32_DEBUGCTLMSR
    MsrRange(0x0000_01DB),  # IA32_LASTBRANCHFROMIP
    MsrRange(0x0000_01DC),  # IA32_LASTBRANCHTOIP
    MsrRange(0x0000_01DD),  # IA32_LASTINTFROMIP
    MsrRange(0x0000_01DE),  # IA32_LASTINTTOIP
    MsrRange(0x0000_01FC),  # IA32_POWER_CTL
    MsrRange(0x0000_0200, 0x100),  # IA32_MTRR_PHYSBASE0 onwards
    MsrRange(0x0000_03FC, 3),  # CORE_C3/C6/C7_RESIDENCY
    MsrRange(0x0000_0400, 0x80),  # IA32_MC0_CTL onwards
    MsrRange(0x0000_0606),  # RAPL_POWER_UNIT
    MsrRange(0x0000_060A, 3),  # PKGC3/C6/C7_IRTL
    MsrRange(0x0000_0610),  # PKG_POWER_LIMIT
    MsrRange(0x0000_0611),  # PKG_ENERGY_STATUS
    MsrRange(0x0000_0613),  # PKG_PERF_STATUS
    MsrRange(0x0000_0614),  # PKG_POWER_INFO
    MsrRange(0x0000_0618),  # DRAM_POWER_LIMIT
    MsrRange(0x0000_0619),  # DRAM_ENERGY_STATUS
    MsrRange(0x0000_061B),  # DRAM_PERF_STATUS
    MsrRange(0x0000_061C),  # DRAM_POWER_INFO
    MsrRange(0x0000_0648),  # CONFIG_TDP_NOMINAL
    MsrRange(0x0000_0649),  # CONFIG_TDP_LEVEL_1
    MsrRange(0x0000_064A),  # CONFIG_TDP_LEVEL_2
    MsrRange(0x0000_064B),  # CONFIG_TDP_CONTROL
    MsrRange(0x0000_064C),  # TURBO_ACTIVATION_RATIO
    MsrRange(0x0000_06E0),  # IA32_TSCDEADLINE
    MsrRange(_APIC_BASE_MSR, _APIC_MSR_INDEXES),
    MsrRange(0x0000_0D90),  # IA32_BNDCFGS
    MsrRange(0x4B56_4D00),  # KVM_WALL_CLOCK_NEW
    MsrRange(0x4B56_4D01),  # KVM_SYSTEM_TIME_NEW
    MsrRange(0x4B56_4D02),  # KVM_ASYNC_PF_EN
    MsrRange(0x4B56_4D03),  # KVM_STEAL_TIME
    MsrRange(0x4B56_4D04),  # KVM_PV_EOI_EN
    MsrRange(0xC000_0080),  # EFER
    MsrRange(MSR_STAR),
    MsrRange(MSR_LSTAR),
    MsrRange(MSR_CSTAR),
    MsrRange(MSR_SYSCALL_MASK),
    MsrRange(0xC000_0100),  # FS_BASE
    MsrRange(0xC000_0101),  # GS_BASE
    MsrRange(MSR_KERNEL_GS_BASE),
    MsrRange(0xC000_0103),  # TSC_AUX
)

# Not exported by Linux, so never serialized.
_DENIED_MSRS = frozenset({MSR_IA32_FEATURE_CONTROL, MSR_IA32_MCG_CTL})


def msr_should_serialize(index: int) -> bool:
    """Return whether the MSR ``index`` is saved with the vCPU state."""
    if index in _DENIED_MSRS:
        return False
    return any(index in msr_range for msr_range in _ALLOWED_MSR_RANGES)


def supported_guest_msrs(msr_index_list: Iterable[int]) -> list[MsrEntry]:
    """Return zeroed entries for the serializable MSRs among ``msr_index_list``.

    The order of the given indices is kept.
    """
    return [MsrEntry(index) for index in msr_index_list if msr_should_serialize(index)]