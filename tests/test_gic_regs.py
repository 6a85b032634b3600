import itertools
from errno import EINVAL

import pytest
from hypothesis import given
from hypothesis import strategies as st

from vcpuref.gic_regs import (
    AP_ICC_REGS,
    DIST_REGS,
    KVM_DEV_ARM_VGIC_GRP_CPU_SYSREGS,
    KVM_DEV_ARM_VGIC_GRP_CTRL,
    KVM_DEV_ARM_VGIC_GRP_DIST_REGS,
    KVM_DEV_ARM_VGIC_SAVE_PENDING_TABLES,
    KVM_DEV_ARM_VGIC_V3_MPIDR_MASK,
    MAIN_ICC_REGS,
    REDIST_REGS,
    SYS_ICC_CTLR_EL1,
    SYS_ICC_SRE_EL1,
    DeviceFd,
    GicError,
    GicRegState,
    GicSysRegsState,
    InvalidGicSysRegStateError,
    KvmError,
    SetAttrError,
    SharedIrqReg,
    SimpleReg,
    convert_to_kvm_mpidrs,
    dist_regs,
    gic_sys_reg,
    icc_regs,
    redist_regs,
    save_pending_tables,
    set_dist_regs,
    set_icc_regs,
    set_redist_regs,
)


def _filled(states, start=1):
    counter = itertools.count(start)
    return [GicRegState([next(counter) for _ in state.chunks]) for state in states]


def _set_priority_bits(fd, mpidr, bits):
    attr = (mpidr & KVM_DEV_ARM_VGIC_V3_MPIDR_MASK) | SYS_ICC_CTLR_EL1.offset
    fd.set_device_attr(KVM_DEV_ARM_VGIC_GRP_CPU_SYSREGS, attr, (bits - 1) << 8, 8)


def test_simple_reg_range():
    assert SimpleReg(0x0010, 4).range() == range(0x0010, 0x0014)


def test_shared_irq_reg_range_skips_private_interrupts():
    assert SharedIrqReg(0x0C00, 2).range() == range(0xC08, 0xC20)


def test_gic_sys_reg_encoding():
    assert gic_sys_reg(3, 0, 12, 12, 5) == SimpleReg(0xC665, 8)
    assert SYS_ICC_SRE_EL1 == gic_sys_reg(3, 0, 12, 12, 5)


def test_gic_sys_reg_masks_out_of_range_fields():
    assert gic_sys_reg(4, 0, 0, 0, 0) == gic_sys_reg(0, 0, 0, 0, 0)
    assert gic_sys_reg(3, 8, 12, 12, 5) == gic_sys_reg(3, 0, 12, 12, 5)


def test_convert_to_kvm_mpidrs_simple():
    assert convert_to_kvm_mpidrs([1]) == [1 << 32]
    assert convert_to_kvm_mpidrs([]) == []


def test_convert_to_kvm_mpidrs_drops_other_bits():
    assert convert_to_kvm_mpidrs([0xFF00_0000]) == [0]
    assert convert_to_kvm_mpidrs([0xFF_0000_0000_0000]) == [0]


@given(st.lists(st.integers(min_value=0, max_value=(1 << 64) - 1)))
def test_convert_to_kvm_mpidrs_fits_upper_half(mpidrs):
    converted = convert_to_kvm_mpidrs(mpidrs)
    assert len(converted) == len(mpidrs)
    for value in converted:
        assert value & 0xFFFF_FFFF == 0
        assert value < 1 << 64


@given(st.integers(min_value=0, max_value=(1 << 32) - 1))
def test_device_attr_round_trip(value):
    fd = DeviceFd()
    fd.set_device_attr(KVM_DEV_ARM_VGIC_GRP_DIST_REGS, 0x10, value, 4)
    assert fd.get_device_attr(KVM_DEV_ARM_VGIC_GRP_DIST_REGS, 0x10, 4) == value


def test_device_attr_unset_reads_zero():
    fd = DeviceFd()
    assert fd.get_device_attr(KVM_DEV_ARM_VGIC_GRP_DIST_REGS, 0x100, 4) == 0


def test_device_attr_rejects_value_too_large():
    fd = DeviceFd()
    with pytest.raises(KvmError) as info:
        fd.set_device_attr(KVM_DEV_ARM_VGIC_GRP_DIST_REGS, 0, 1 << 32, 4)
    assert info.value.errno == EINVAL


def test_device_validator_can_reject():
    def reject(group, attr, value):
        raise KvmError(EINVAL)

    fd = DeviceFd(validate=reject)
    with pytest.raises(KvmError):
        fd.set_device_attr(KVM_DEV_ARM_VGIC_GRP_DIST_REGS, 0, 1, 4)
    assert fd.get_device_attr(KVM_DEV_ARM_VGIC_GRP_DIST_REGS, 0, 4) == 0


def test_save_pending_tables_sets_control_attribute():
    calls = []
    fd = DeviceFd(validate=lambda group, attr, value: calls.append((group, attr, value)))
    save_pending_tables(fd)
    assert calls == [
        (KVM_DEV_ARM_VGIC_GRP_CTRL, KVM_DEV_ARM_VGIC_SAVE_PENDING_TABLES, 0)
    ]


def test_save_pending_tables_propagates_failure():
    def reject(group, attr, value):
        raise KvmError(EINVAL)

    with pytest.raises(GicError):
        save_pending_tables(DeviceFd(validate=reject))


def test_dist_regs_fresh_device_is_zero():
    state = dist_regs(DeviceFd())
    assert len(state) == len(DIST_REGS)
    for reg, reg_state in zip(DIST_REGS, state):
        assert len(reg_state.chunks) * 4 == len(reg.range())
        assert all(chunk == 0 for chunk in reg_state.chunks)


def test_dist_regs_round_trip():
    state = _filled(dist_regs(DeviceFd()))
    fd = DeviceFd()
    set_dist_regs(fd, state)
    assert dist_regs(fd) == state


def test_set_dist_regs_rejects_oversized_chunk():
    with pytest.raises(KvmError):
        set_dist_regs(DeviceFd(), [GicRegState([1 << 32])])


def test_redist_regs_round_trip_and_isolation():
    first, second = convert_to_kvm_mpidrs([0, 1])
    fd = DeviceFd()
    state = _filled(redist_regs(fd, first))
    set_redist_regs(fd, state, first)
    assert redist_regs(fd, first) == state
    assert all(
        chunk == 0 for reg in redist_regs(fd, second) for chunk in reg.chunks
    )
    assert sum(len(reg.chunks) for reg in state) * 4 == sum(
        len(reg.range()) for reg in REDIST_REGS
    )


@pytest.mark.parametrize(
    "bits, expected",
    [
        (1, [True, False, False, False, True, False, False, False]),
        (6, [True, True, False, False, True, True, False, False]),
        (7, [True] * 8),
    ],
)
def test_icc_regs_available_ap_registers(bits, expected):
    (mpidr,) = convert_to_kvm_mpidrs([0])
    fd = DeviceFd()
    if bits > 1:
        _set_priority_bits(fd, mpidr, bits)
    state = icc_regs(fd, mpidr)
    assert len(state.main_icc_regs) == len(MAIN_ICC_REGS)
    assert [reg is not None for reg in state.ap_icc_regs] == expected


def test_icc_regs_round_trip():
    (mpidr,) = convert_to_kvm_mpidrs([2])
    source = DeviceFd()
    _set_priority_bits(source, mpidr, 7)
    saved = icc_regs(source, mpidr)
    ctlr_index = MAIN_ICC_REGS.index(SYS_ICC_CTLR_EL1)
    main = _filled(saved.main_icc_regs)
    main[ctlr_index] = saved.main_icc_regs[ctlr_index]
    ap = _filled([reg for reg in saved.ap_icc_regs if reg is not None], start=100)
    state = GicSysRegsState(main_icc_regs=main, ap_icc_regs=list(ap))

    target = DeviceFd()
    set_icc_regs(target, state, mpidr)
    assert icc_regs(target, mpidr) == state
    assert len(state.ap_icc_regs) == len(AP_ICC_REGS)


def test_set_icc_regs_rejects_unavailable_ap_registers():
    (mpidr,) = convert_to_kvm_mpidrs([0])
    fresh = icc_regs(DeviceFd(), mpidr)
    state = GicSysRegsState(
        main_icc_regs=fresh.main_icc_regs,
        ap_icc_regs=[GicRegState([0]) for _ in AP_ICC_REGS],
    )
    with pytest.raises(InvalidGicSysRegStateError):
        set_icc_regs(DeviceFd(), state, mpidr)


def test_set_icc_regs_rejects_missing_ap_registers():
    (mpidr,) = convert_to_kvm_mpidrs([0])
    fd = DeviceFd()
    _set_priority_bits(fd, mpidr, 7)
    saved = icc_regs(fd, mpidr)
    state = GicSysRegsState(
        main_icc_regs=saved.main_icc_regs,
        ap_icc_regs=[None] * len(AP_ICC_REGS),
    )
    with pytest.raises(InvalidGicSysRegStateError):
        set_icc_regs(DeviceFd(), state, mpidr)


def test_set_attr_error_holds_details():
    error = SetAttrError("irq", EINVAL)
    assert isinstance(error, GicError)
    assert (error.name, error.errno) == ("irq", EINVAL)
    assert "irq" in str(error)