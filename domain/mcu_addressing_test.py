# coding: utf-8
import pytest

from domain.mcu_addressing import MCULogicalAddress, MCULogicalAddressRange, MCULocatedLogicalDataChunk

def test_word_address():
    assert MCULogicalAddress(0).to_word_address() == 0
    assert MCULogicalAddress(0x100).to_word_address() == 0x80
    assert MCULogicalAddress(0x1ffff).to_word_address() == 0xffff
    with pytest.raises(ValueError):
        MCULogicalAddress(0x20000).to_word_address()

def test_hex_segment_range():
    address_range = MCULogicalAddressRange.create_from_hex_segment((0x10, 0x13))
    assert address_range.start_address == 0x10
    assert address_range.end_address == 0x13
    assert address_range.get_size() == 3
    assert str(address_range) == 'MCULogicalAddressRange[0x000010,0x000013['

def test_located_chunk():
    chunk = MCULocatedLogicalDataChunk(0x10, b'\x01\x02\x03')
    assert isinstance(chunk.start_address, MCULogicalAddress)
    assert chunk.size == 3
    assert chunk.get_content() == b'\x01\x02\x03'

def test_empty_range_is_rejected():
    with pytest.raises(ValueError):
        MCULogicalAddressRange(0x100, 0x100)
    with pytest.raises(TypeError):
        MCULocatedLogicalDataChunk('0x10', b'\x00')
