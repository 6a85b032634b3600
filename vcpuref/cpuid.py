"""Adjusting CPUID entries so that they can be handed to a vCPU."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace

_EBX_CLFLUSH_CACHELINE = 8
_EBX_CLFLUSH_SIZE_SHIFT = 8
_EBX_CPU_COUNT_SHIFT = 16
_EBX_CPUID_SHIFT = 24
_ECX_EPB_SHIFT = 3
_ECX_TSC_DEADLINE_TIMER_SHIFT = 24
_ECX_HYPERVISOR_SHIFT = 31
_EDX_HTT_SHIFT = 28

_MASK32 = 0xFFFF_FFFF


@dataclass(frozen=True)
class CpuidEntry:
    """One CPUID leaf: the function and index it answers and its registers."""

    function: int
    index: int = 0
    flags: int = 0
    eax: int = 0
    ebx: int = 0
    ecx: int = 0
    edx: int = 0


def _filter_entry(
    entry: CpuidEntry, vcpu_id: int, cpu_count: int, tsc_deadline_supported: bool
) -> CpuidEntry:
    if entry.function == 0x01:
        ecx = entry.ecx
        edx = entry.edx
        if entry.index == 0:
            ecx |= 1 << _ECX_HYPERVISOR_SHIFT
        if tsc_deadline_supported:
            ecx |= 1 << _ECX_TSC_DEADLINE_TIMER_SHIFT
        ebx = (vcpu_id << _EBX_CPUID_SHIFT) | (
            _EBX_CLFLUSH_CACHELINE << _EBX_CLFLUSH_SIZE_SHIFT
        )
        if cpu_count > 1:
            ebx |= cpu_count << _EBX_CPU_COUNT_SHIFT
            edx |= 1 << _EDX_HTT_SHIFT
        return replace(entry, ebx=ebx & _MASK32, ecx=ecx & _MASK32, edx=edx & _MASK32)
    if entry.function == 0x06:
        # No frequency selection in the hypervisor.
        return replace(entry, ecx=entry.ecx & ~(1 << _ECX_EPB_SHIFT) & _MASK32)
    if entry.function == 0x0B:
        return replace(entry, edx=vcpu_id)
    return entry


def filter_cpuid(
    entries: Iterable[CpuidEntry],
    vcpu_id: int,
    cpu_count: int,
    tsc_deadline_supported: bool,
) -> list[CpuidEntry]:
    """Return the entries adjusted for running as vCPU ``vcpu_id`` of ``cpu_count``.

    ``tsc_deadline_supported`` tells whether the host offers the TSC deadline
    timer. No entries are added or removed.
    """
    for name, value in (("vcpu_id", vcpu_id), ("cpu_count", cpu_count)):
        if not 0 <= value <= 0xFF:
            raise ValueError(f"{name} must fit in a byte: {value}")
    return [
        _filter_entry(entry, vcpu_id, cpu_count, tsc_deadline_supported)
        for entry in entries
    ]