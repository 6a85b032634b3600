from hypothesis import given
from hypothesis import strategies as st

from vcpuref.msrs import (
    MSR_IA32_MISC_ENABLE,
    MSR_IA32_TSC,
    MsrEntry,
    MsrRange,
    create_boot_msr_entries,
    msr_should_serialize,
    supported_guest_msrs,
)


def test_create_boot_msrs():
    entries = create_boot_msr_entries()
    assert [entry.index for entry in entries] == [
        0x174,
        0x175,
        0x176,
        0xC0000081,
        0xC0000083,
        0xC0000102,
        0xC0000084,
        0xC0000082,
        MSR_IA32_TSC,
        MSR_IA32_MISC_ENABLE,
    ]
    assert entries[-1] == MsrEntry(0x1A0, 1)
    assert all(entry.data == 0 for entry in entries[:-1])


def test_boot_msrs_are_serializable():
    assert all(msr_should_serialize(entry.index) for entry in create_boot_msr_entries())


def test_msr_range_contains():
    msr_range = MsrRange(0x200, 0x100)
    assert 0x200 in msr_range
    assert 0x2FF in msr_range
    assert 0x300 not in msr_range
    assert 0x1FF not in msr_range
    assert 5 in MsrRange(5)
    assert 6 not in MsrRange(5)


def test_denied_msrs():
    assert msr_should_serialize(0x3A) is False
    assert msr_should_serialize(0x17B) is False


def test_allowed_and_rejected_msrs():
    assert msr_should_serialize(0x0) is True
    assert msr_should_serialize(0x10) is True
    assert msr_should_serialize(0x2FF) is True
    assert msr_should_serialize(0x3FE) is True
    assert msr_should_serialize(0x3FF) is False
    assert msr_should_serialize(0x47F) is True
    assert msr_should_serialize(0x480) is False
    assert msr_should_serialize(0x800) is True
    assert msr_should_serialize(0xBFF) is True
    assert msr_should_serialize(0xC00) is False
    assert msr_should_serialize(0x4B564D04) is True
    assert msr_should_serialize(0x4B564D05) is False
    assert msr_should_serialize(0xC0000103) is True
    assert msr_should_serialize(0xC0000104) is False


def test_supported_guest_msrs_filters_and_keeps_order():
    indices = [0xC0000080, 0x3A, 0x10, 0xC00, 0x800, 0x17B]
    assert supported_guest_msrs(indices) == [
        MsrEntry(0xC0000080),
        MsrEntry(0x10),
        MsrEntry(0x800),
    ]


def test_supported_guest_msrs_empty():
    assert supported_guest_msrs([]) == []


@given(st.lists(st.integers(min_value=0, max_value=0xFFFF_FFFF)))
def test_supported_guest_msrs_invariants(indices):
    result = supported_guest_msrs(indices)
    assert [entry.index for entry in result] == [
        index for index in indices if msr_should_serialize(index)
    ]
    assert all(entry.data == 0 for entry in result)
    assert len(result) <= len(indices)