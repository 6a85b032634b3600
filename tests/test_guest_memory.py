import pytest
from hypothesis import given, strategies as st

from vcpuref.guest_memory import GuestMemory, GuestMemoryError


def test_write_read_round_trip():
    mem = GuestMemory([(0, 4096)])
    mem.write(b"hello", 100)
    assert mem.read(100, 5) == b"hello"


def test_memory_starts_zeroed():
    mem = GuestMemory([(0x1000, 64)])
    assert mem.read(0x1000, 64) == bytes(64)


@given(
    offset=st.integers(min_value=0, max_value=200),
    data=st.binary(min_size=0, max_size=56),
)
def test_round_trip_property(offset, data):
    mem = GuestMemory([(0, 256)])
    mem.write(data, offset)
    assert mem.read(offset, len(data)) == data


def test_address_in_range_boundaries():
    mem = GuestMemory([(0x100, 0x10)])
    assert mem.address_in_range(0x100)
    assert mem.address_in_range(0x10F)
    assert not mem.address_in_range(0x110)
    assert not mem.address_in_range(0xFF)


def test_checked_offset():
    mem = GuestMemory([(0, 0x20)])
    assert mem.checked_offset(0x10, 0x0F) == 0x1F
    assert mem.checked_offset(0x10, 0x10) is None


def test_write_out_of_range_raises_and_writes_nothing():
    mem = GuestMemory([(0, 16)])
    with pytest.raises(GuestMemoryError) as info:
        mem.write(b"\x01" * 8, 12)
    assert info.value.address == 16
    assert "InvalidGuestAddress" in str(info.value)
    assert mem.read(0, 16) == bytes(16)


def test_read_out_of_range_raises():
    mem = GuestMemory([(0, 16)])
    with pytest.raises(GuestMemoryError):
        mem.read(20, 1)


def test_access_spans_adjacent_regions():
    mem = GuestMemory([(0, 8), (8, 8)])
    mem.write(b"abcdefgh", 4)
    assert mem.read(4, 8) == b"abcdefgh"
    assert mem.read(8, 4) == b"efgh"


def test_gap_between_regions_is_rejected():
    mem = GuestMemory([(0, 8), (16, 8)])
    with pytest.raises(GuestMemoryError):
        mem.write(b"x" * 10, 4)


def test_fill_sets_bytes():
    mem = GuestMemory([(0, 32)])
    mem.fill(4, 8, 0xAA)
    assert mem.read(4, 8) == b"\xaa" * 8
    assert mem.read(0, 4) == bytes(4)
    mem.fill(4, 8, 0)
    assert mem.read(0, 32) == bytes(32)


def test_fill_rejects_large_value():
    mem = GuestMemory([(0, 32)])
    with pytest.raises(ValueError):
        mem.fill(0, 4, 256)


def test_overlapping_regions_rejected():
    with pytest.raises(ValueError):
        GuestMemory([(0, 16), (8, 16)])


def test_empty_region_rejected():
    with pytest.raises(ValueError):
        GuestMemory([(0, 0)])


def test_iteration_lists_regions_in_order():
    mem = GuestMemory([(0x2000, 16), (0, 32)])
    assert list(mem) == [(0, 32), (0x2000, 16)]