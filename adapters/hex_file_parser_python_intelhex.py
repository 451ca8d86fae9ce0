# coding: utf-8
"""@brief Module implementing the hex file parser on top of python intelhex
"""
from intelhex import IntelHex, IntelHexError

from domain.ext_adapters_interface.hex_file_parser_interface import HexFileParser
from domain.ext_adapters_interface.hex_file_parser_interface import MCULocatedLogicalDataChunk, MCULogicalAddress, MCULogicalAddressRange
from domain.ext_adapters_interface.hex_file_parser_interface import List

class PythonIntelHexFileParser(HexFileParser):
    """@brief Concrete implementation of HexFileParser using python intelhex

    Record checksums and file structure are checked by intelhex while loading
    """

    def __init__(self):
        """@brief Construct a hex file parser object
        """
        self.intel_hex = IntelHex()
        self.load_error = None

    def is_valid(self) -> bool:
        return self.load_error is None and len(self.intel_hex) > 0

    def get_segments(self) -> List[MCULogicalAddressRange]:
        return [MCULogicalAddressRange.create_from_hex_segment(s) for s in self.intel_hex.segments()]

    def get_total_data_size(self) -> int:
        if len(self.intel_hex) == 0:
            return 0
        return self.intel_hex.maxaddr() + 1

    def get_chunk(self, position: MCULogicalAddress, max_length: int) -> bytes:
        end_address = min(position + max_length, self.get_total_data_size())
        if position >= end_address:
            return b''
        return self.get_data_chunk_for_range(MCULogicalAddressRange(start_address=position, end_address=end_address)).get_content()

    def get_data_chunk_for_range(self, address_range: MCULogicalAddressRange) -> MCULocatedLogicalDataChunk:
        data_chunk = self.intel_hex.tobinstr(start=address_range.start_address, end=address_range.end_address-1) # IntelHex.tobinstr()'s end address is included, while MCUAddressRange.end_address is excluded, this is why we rewind 1 byte for the end address
        return MCULocatedLogicalDataChunk(start_address=address_range.start_address, content=bytes(data_chunk))

    def put_data_chunk(self, content: MCULocatedLogicalDataChunk):
        self.intel_hex.puts(content.start_address, bytes(content.get_content()))

    def read_hex_from(self, file):
        self.load_error = None
        try:
            self.intel_hex.loadhex(file)
        except (IntelHexError, OSError) as e:
            self.load_error = e
            raise
