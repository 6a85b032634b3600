"""Set up a virtual machine and its vCPUs for booting: guest memory, GDT, CPUID, MSRs, LAPIC and GIC."""

__version__ = "0.1.0"

__all__ = ["cpuid", "gdt", "gic", "gic_regs", "guest_memory", "lapic", "msrs"]