# coding: utf-8
"""@brief Module implementing a fake byte transport and an emulated Optiboot bootloader, for unit test purposes
"""
import threading
from typing import Callable, Dict, List, Tuple

from domain.ext_adapters_interface.transport_interface import ByteTransport, TransportError
from domain.mcu_addressing import MCULocatedLogicalDataChunk
import domain.stk500.stk500_constants as stk

class FakeTransport(ByteTransport):
    """@brief In-memory byte transport

    Bytes written are recorded and forwarded to an optional response handler, whose returned bytes are made available
    for reading. Once end of stream is signaled and all received bytes were read, the transport reports one readable byte
    and read() returns an empty buffer (like a socket closed by the peer).
    """
    def __init__(self, response_handler: Callable[[bytes], bytes] = None):
        """@brief Constructor
        @param response_handler A function to which we will forward all written buffers, and that will return the bytes the emulated remote device sends back
        """
        if response_handler is not None and not callable(response_handler):
            raise TypeError("Provided response_handler argument is not callable")
        self.response_handler = response_handler
        self._lock = threading.Lock()
        self._rx = bytearray()
        self._end_of_stream = False
        self.written: List[bytes] = []
        self.fail_writes = False
        self.fail_reads = False

    def feed(self, data: bytes):
        """@brief Make @p data available for reading, as if received from the remote device"""
        with self._lock:
            self._rx.extend(data)

    def signal_end_of_stream(self):
        with self._lock:
            self._end_of_stream = True

    def get_written_bytes(self) -> bytes:
        with self._lock:
            return b''.join(self.written)

    def write(self, data: bytes) -> None:
        with self._lock:
            if self.fail_writes:
                raise TransportError('Emulated write failure')
            self.written.append(bytes(data))
        if self.response_handler is not None:
            response = self.response_handler(bytes(data))
            if response:
                self.feed(response)

    def read(self, size: int) -> bytes:
        with self._lock:
            if self.fail_reads:
                raise TransportError('Emulated read failure')
            data = bytes(self._rx[:size])
            del self._rx[:size]
            return data

    def bytes_available(self) -> int:
        with self._lock:
            if self.fail_reads:
                raise TransportError('Emulated link loss')
            if self._rx:
                return len(self._rx)
            return 1 if self._end_of_stream else 0


class EmulatedOptiboot:
    """@brief Emulation of an Optiboot bootloader and its flash storage, in memory

    An instance is to be used as the response handler of a FakeTransport. Faults can be injected:
    dropped responses and failed commands (per opcode), STK_NODEVICE on ENTER_PROGMODE, and corrupted page reads.
    """
    ARGUMENTS_SIZE = {
        stk.STK_GET_SYNC: 0,
        stk.STK_GET_SIGN_ON: 0,
        stk.STK_ENTER_PROGMODE: 0,
        stk.STK_LEAVE_PROGMODE: 0,
        stk.STK_CHIP_ERASE: 0,
        stk.STK_UNIVERSAL: 4,
        stk.STK_LOAD_ADDRESS: 2,
        stk.STK_READ_PAGE: 3,
    }

    def __init__(self, flash_size: int = 0x8000):
        self.flash_size = flash_size
        self.flash = bytearray([0xff] * flash_size)
        self.address = 0
        self.in_progmode = False
        self.no_device = False
        self.soft_resets = 0
        self.corrupt_page_reads = 0
        self.received_opcodes: List[int] = []
        self.written_pages: List[Tuple[int, int]] = []
        self._dropped_responses: Dict[int, int] = {}
        self._failed_commands: Dict[int, int] = {}
        self._pending = bytearray()

    def drop_response(self, opcode: int, times: int = 1):
        """@brief Execute the next @p times commands with @p opcode but do not answer them"""
        self._dropped_responses[opcode] = self._dropped_responses.get(opcode, 0) + times

    def fail_command(self, opcode: int, times: int = 1):
        """@brief Answer STK_INSYNC, STK_FAILED to the next @p times commands with @p opcode, without executing them"""
        self._failed_commands[opcode] = self._failed_commands.get(opcode, 0) + times

    def count_received(self, opcode: int) -> int:
        return self.received_opcodes.count(opcode)

    def read_data_at(self, address: int, size: int) -> bytes:
        return bytes(self.flash[address:address + size])

    def write_data_at(self, chunk: MCULocatedLogicalDataChunk):
        if chunk.start_address + chunk.size > self.flash_size:
            raise IndexError(f'Outside of flash space: {chunk}/{self.flash_size:06x}')
        self.flash[chunk.start_address:chunk.start_address + chunk.size] = chunk.get_content()

    def __call__(self, data: bytes) -> bytes:
        self._pending.extend(data)
        response = bytearray()
        while self._pending:
            if self._pending.startswith(stk.SOFT_RESET_PATTERN):
                del self._pending[:len(stk.SOFT_RESET_PATTERN)]
                self.soft_resets += 1
                self.in_progmode = False
                continue
            frame_size = self._get_frame_size()
            if frame_size is None:
                break   # Wait for the rest of the frame
            frame = bytes(self._pending[:frame_size])
            del self._pending[:frame_size]
            response += self._execute(frame)
        return bytes(response)

    def _get_frame_size(self):
        opcode = self._pending[0]
        if opcode == stk.STK_PROG_PAGE:
            if len(self._pending) < 4:
                return None
            frame_size = 1 + 3 + ((self._pending[1] << 8) | self._pending[2]) + 1
        elif opcode in self.ARGUMENTS_SIZE:
            frame_size = 1 + self.ARGUMENTS_SIZE[opcode] + 1
        else:
            return 1    # Garbage, skipped silently
        return frame_size if len(self._pending) >= frame_size else None

    def _execute(self, frame: bytes) -> bytes:
        opcode = frame[0]
        if opcode not in self.ARGUMENTS_SIZE and opcode != stk.STK_PROG_PAGE:
            return b''
        self.received_opcodes.append(opcode)
        if frame[-1] != stk.CRC_EOP:
            return bytes([stk.STK_NOSYNC])
        if self._failed_commands.get(opcode, 0) > 0:
            self._failed_commands[opcode] -= 1
            return bytes([stk.STK_INSYNC, stk.STK_FAILED])
        response = self._process(opcode, frame[1:-1])
        if self._dropped_responses.get(opcode, 0) > 0:
            self._dropped_responses[opcode] -= 1
            return b''
        return response

    def _process(self, opcode: int, arguments: bytes) -> bytes:
        ok = bytes([stk.STK_INSYNC, stk.STK_OK])
        if opcode == stk.STK_ENTER_PROGMODE:
            if self.no_device:
                return bytes([stk.STK_INSYNC, stk.STK_NODEVICE])
            self.in_progmode = True
        elif opcode == stk.STK_LEAVE_PROGMODE:
            self.in_progmode = False
        elif opcode == stk.STK_UNIVERSAL:
            if arguments == stk.CHIP_ERASE_INSTRUCTION:
                self.flash[:] = bytes([0xff] * self.flash_size)
            return bytes([stk.STK_INSYNC, 0x00, stk.STK_OK])
        elif opcode == stk.STK_LOAD_ADDRESS:
            self.address = (arguments[0] | (arguments[1] << 8)) * 2
        elif opcode == stk.STK_PROG_PAGE:
            length = (arguments[0] << 8) | arguments[1]
            if arguments[2] != stk.MEMTYPE_FLASH:
                return bytes([stk.STK_INSYNC, stk.STK_FAILED])
            self.write_data_at(MCULocatedLogicalDataChunk(self.address, arguments[3:3 + length]))
            self.written_pages.append((self.address, length))
        elif opcode == stk.STK_READ_PAGE:
            length = (arguments[0] << 8) | arguments[1]
            data = bytearray(self.read_data_at(self.address, length))
            if self.corrupt_page_reads > 0 and data:
                self.corrupt_page_reads -= 1
                data[0] ^= 0xff
            return bytes([stk.STK_INSYNC]) + bytes(data) + bytes([stk.STK_OK])
        return ok
