# coding: utf-8
"""@brief Module declaring the interface to which must comply all concrete implementations of hex-formatted file parsers
"""
import abc
from typing import List

from domain.mcu_addressing import MCULocatedLogicalDataChunk, MCULogicalAddress, MCULogicalAddressRange

class HexFileParser(metaclass=abc.ABCMeta):
    """@brief Interface to which must comply all concrete implementations of hex-formatted file parsers

    The firmware image is seen as a flat byte array starting at address 0, gaps being filled with erased flash content (0xff)
    """

    @abc.abstractmethod
    def __init__(self):
        """@brief Construct a hex file parser object
        """
        raise NotImplementedError

    @abc.abstractmethod
    def is_valid(self) -> bool:
        """@brief Check that the hex file was parsed successfully (structure and record checksums)"""
        raise NotImplementedError

    @abc.abstractmethod
    def get_segments(self) -> List[MCULogicalAddressRange]:
        """@brief Get a list of distinct segments contained in the hex file"""
        raise NotImplementedError

    @abc.abstractmethod
    def get_total_data_size(self) -> int:
        """@brief Get the number of bytes in the image, from address 0 to the highest address contained in the hex file (included)"""
        raise NotImplementedError

    @abc.abstractmethod
    def get_chunk(self, position: MCULogicalAddress, max_length: int) -> bytes:
        """@brief Get at most @p max_length bytes of the image, starting at @p position

        @return The bytes read from the image, an empty buffer means that @p position is past the end of the image"""
        raise NotImplementedError

    @abc.abstractmethod
    def get_data_chunk_for_range(self, address_range: MCULogicalAddressRange) -> MCULocatedLogicalDataChunk:
        """@brief Get data contained in the hex file representation, for a given address range

        @return The data read from the hex file"""
        raise NotImplementedError

    @abc.abstractmethod
    def put_data_chunk(self, content: MCULocatedLogicalDataChunk):
        """@brief Insert the provided content into the hex file representation

        @param content A data chunk with its logical location in flash
        """
        raise NotImplementedError

    @abc.abstractmethod
    def read_hex_from(self, file):
        """@brief Read the current firmware representation from a file

        @param file A file-like object or a filename
        """
        raise NotImplementedError

    @classmethod
    def __subclasshook__(cls, subclass):
        if cls is not HexFileParser:
            return NotImplemented
        return all(callable(getattr(subclass, method, None)) for method in ("is_valid",
                                                                           "get_segments",
                                                                           "get_total_data_size",
                                                                           "get_chunk",
                                                                           "get_data_chunk_for_range",
                                                                           "put_data_chunk",
                                                                           "read_hex_from")) or NotImplemented
