#!/usr/bin/env python3
# coding: utf-8
"""@file Byte addresses, address ranges and located data chunks in the AVR flash address space
"""
from typing import Tuple

AVR_WORD_SIZE = 2
MAX_WORD_ADDRESS = 0xffff

class MCULogicalAddress(int):
    """@brief A byte address in flash

    STK500 commands count in 16-bit words, use to_word_address() to get the value to send over the wire
    """

    def to_word_address(self) -> int:
        """@brief Convert this byte address into the 16-bit word address used by the STK500 LOAD_ADDRESS command
        @return The word address (byte address halved)
        """
        word_address = int(self) // AVR_WORD_SIZE
        if word_address > MAX_WORD_ADDRESS:
            raise ValueError(f'Address 0x{int(self):06x} is outside of the 128kB range reachable with a 16-bit word address')
        return word_address


class MCULogicalAddressRange:
    """@brief Half-open range of byte addresses [start_address, end_address[
    """
    def __init__(self, start_address: MCULogicalAddress, end_address: MCULogicalAddress):
        if start_address >= end_address:
            raise ValueError(f'Empty or reversed address range 0x{start_address:06x}-0x{end_address:06x}')
        self.start_address = start_address
        self.end_address = end_address

    def __str__(self):
        return f'MCULogicalAddressRange[0x{self.start_address:06x},0x{self.end_address:06x}['

    def __repr__(self):
        return str(self)

    def get_size(self) -> int:
        return self.end_address - self.start_address

    @staticmethod
    def create_from_hex_segment(segment: Tuple[int, int]):
        """@brief Build a range from a (start, end) tuple, end excluded, as returned by IntelHex.segments()"""
        (segment_start_addr, segment_end_addr) = segment
        return MCULogicalAddressRange(start_address=MCULogicalAddress(segment_start_addr), end_address=MCULogicalAddress(segment_end_addr))


class MCULocatedLogicalDataChunk:
    """@brief Bytes destined to (or read from) a given flash location
    """
    def __init__(self, start_address, content: bytes):
        """@brief Constructor
        @param start_address The flash address of the first byte of @p content (an int or MCULogicalAddress)
        @param content The data
        """
        if not isinstance(start_address, int):
            raise TypeError('Unsupported argument type ' + str(type(start_address)))
        self.start_address = MCULogicalAddress(start_address)
        self.size = len(content)
        self.content = content

    def get_content(self) -> bytes:
        return self.content

    def __str__(self):
        return f'MCULocatedLogicalDataChunk({self.size} bytes @ 0x{self.start_address:06x})'

    def __repr__(self):
        return str(self)
