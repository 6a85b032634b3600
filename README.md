# vcpuref

Helpers for setting up a virtual machine and its vCPUs for booting. The
package builds the in-memory structures and register values that a virtual
machine monitor needs before the first instruction runs:

- `vcpuref.guest_memory`: byte-addressable guest memory made of one or more
  zero-initialised regions (`GuestMemory`). An access outside every region
  raises `GuestMemoryError`.
- `vcpuref.gdt`: segment descriptors and the Global Descriptor Table
  (`SegmentDescriptor`, `Gdt`, `KvmSegment`), and `write_idt_value`.
- `vcpuref.cpuid`: `filter_cpuid` adjusts CPUID entries (`CpuidEntry`) for one
  vCPU.
- `vcpuref.msrs`: the boot MSR entries (`create_boot_msr_entries`) and the
  allow-list that decides which MSRs are saved with a vCPU
  (`msr_should_serialize`, `supported_guest_msrs`).
- `vcpuref.lapic`: reading and writing Local APIC registers in a `LapicState`
  and setting the LVT delivery mode.
- `vcpuref.gic_regs` and `vcpuref.gic`: the aarch64 interrupt controller.
  This covers register layouts, device creation and configuration (`Gic`,
  `GicConfig`, `GicVersion`) and saving and restoring its state (`GicState`).

## Install

```
pip install vcpuref
```

To run the tests:

```
pip install "vcpuref[test]"
pytest
```

## Example: GDT in guest memory

```python
from vcpuref.guest_memory import GuestMemory
from vcpuref.gdt import Gdt, write_idt_value

mem = GuestMemory([(0, 1024 << 20)])

gdt = Gdt.default()          # null, code, data and TSS descriptors
gdt.write_to_mem(mem)        # written at BOOT_GDT_OFFSET (0x500)
write_idt_value(0, mem)      # written at BOOT_IDT_OFFSET (0x520)

code_segment = gdt.create_kvm_segment_for(1)
print(hex(code_segment.selector), code_segment.l)   # 0x8 1
print(gdt.create_kvm_segment_for(10))                # None
```

A `Gdt` holds at most `MAX_GDT_SIZE` (8192) entries, and `try_push` raises
`TooManyEntriesError` beyond that.

## Example: CPUID

```python
from vcpuref.cpuid import CpuidEntry, filter_cpuid

entries = [CpuidEntry(function=0x01), CpuidEntry(function=0x0B)]
filtered = filter_cpuid(entries, vcpu_id=0, cpu_count=2, tsc_deadline_supported=True)
```

Leaf 0x01 gets the hypervisor bit, the TSC deadline bit when it is supported,
the vCPU id and CLFLUSH size in EBX, and the CPU count and HTT bit when there is
more than one CPU. Leaf 0x06 loses the energy performance bias bit. Leaf 0x0B
gets the vCPU id in EDX. The entries are returned as a new list, and none are
added or removed.

## Example: Local APIC delivery mode

```python
from vcpuref.lapic import (
    APIC_LVT0_REG_OFFSET,
    APIC_LVT1_REG_OFFSET,
    DeliveryMode,
    LapicState,
    get_klapic_reg,
    set_klapic_delivery_mode,
)

lapic = LapicState()
set_klapic_delivery_mode(lapic, APIC_LVT0_REG_OFFSET, DeliveryMode.EXT_INT)
set_klapic_delivery_mode(lapic, APIC_LVT1_REG_OFFSET, DeliveryMode.NMI)
print(hex(get_klapic_reg(lapic, APIC_LVT0_REG_OFFSET)))   # 0x700
```

Each register is a signed 32-bit little-endian value. An offset where four
bytes do not fit in the 1024-byte page raises `InvalidRegisterOffsetError`.

## Example: MSRs

```python
from vcpuref.msrs import create_boot_msr_entries, msr_should_serialize, supported_guest_msrs

for entry in create_boot_msr_entries():
    print(hex(entry.index), entry.data)

print(msr_should_serialize(0x10))    # True: the TSC is saved
print(msr_should_serialize(0x3A))    # False: IA32_FEATURE_CONTROL is never saved
print(supported_guest_msrs([0x10, 0x3A, 0xC0000080]))
```

## Example: aarch64 GIC

```python
from vcpuref.gic import Gic, GicConfig, GicVersion, VmFd

vm = VmFd()                                  # can create GICv2 and GICv3 devices
gic = Gic(GicConfig(num_cpus=1), vm)         # tries GICv3 first, then GICv2
assert gic.version is GicVersion.V3

state = gic.save_state([0])                  # MPIDR_EL1 values of the vCPUs
gic.restore_state(state, [0])
```

`VmFd` and `DeviceFd` are in-memory devices. A `DeviceFd` keeps attributes
keyed by `(group, attr)`, and the devices that `VmFd` creates reject what a
virtual GIC would. An interrupt count that is not a multiple of 32 in
`[MIN_NR_IRQS, MAX_NR_IRQS]` makes `Gic` raise `SetAttrError` with name
`"irq"` and errno 22. Restoring a state for a different number of vCPUs raises
`InconsistentVcpuCountError`.

## Errors

Failures raise exceptions:

- `GuestMemoryError` for addresses outside guest memory.
- `TooManyEntriesError` (a `GdtError`) when a GDT is full.
- `InvalidRegisterOffsetError` for LAPIC offsets that do not fit.
- The `GicError` family (`KvmError`, `CreateDeviceError`, `SetAttrError`,
  `InconsistentVcpuCountError`, `InvalidGicSysRegStateError`) for the
  interrupt controller.

## What this package does not do

- It does not talk to a real hypervisor. The GIC works against the in-memory
  `VmFd` and `DeviceFd`.
- CPUID filtering takes whether the TSC deadline timer is supported as an
  argument.
- `supported_guest_msrs` takes the MSR index list as an argument, and does not
  read it from the host.
- It does not build a Multi Processor (MP) table.