#!/usr/bin/env python3
# coding: utf-8
"""@brief STK500v1 (Optiboot) programming session over a transport without interruptible reads
"""

import abc
import struct
from collections import namedtuple
from logging import getLogger
import time
from typing import Optional

from domain.common import hexlify_buffer
from domain.ext_adapters_interface.hex_file_parser_interface import HexFileParser
from domain.ext_adapters_interface.transport_interface import ByteTransport, TransportError
from domain.mcu_addressing import MCULogicalAddress
from domain.stk500.async_reader import AsyncReader, Deadline, ReaderState, ReadTimeoutError
from domain.stk500.async_reader import RESULT_END_OF_STREAM, TIMEOUT_BYTE_RECEIVED
import domain.stk500.stk500_constants as stk

logger = getLogger(__name__)

class FramingError(Exception):
    pass

class ProtocolFatalError(Exception):
    pass

class NoDeviceError(ProtocolFatalError):
    pass

class UnsupportedMemoryError(ProtocolFatalError):
    pass

WritingStats = namedtuple('WritingStats', ['min_ms', 'max_ms', 'average_ms', 'count'])


class STK500Command(metaclass=abc.ABCMeta):
    """@brief Interface to which must comply all concrete implementations of STK500 command encoders"""
    COMMAND_ID = None
    COMMAND_NAME = '(unknown)'
    RICH_RESPONSE = False   # Set for commands whose status byte may be something else than STK_OK

    def get_arguments_payload(self) -> bytes:
        """@brief Get the arguments for this command
        @return The arguments formatted as a byte buffer (without opcode and end marker)
        """
        return b''

    def get_reply_timeout(self) -> stk.TimeoutValues:
        """@brief Get the timeout category to apply when waiting for the reply to this command"""
        return stk.TimeoutValues.DEFAULT

    def get_as_buffer(self) -> bytes:
        """@brief Represent this command as a binary buffer
        @return The byte buffer to send to the remote target (opcode + arguments + end marker)
        """
        return struct.pack('B', self.COMMAND_ID) + self.get_arguments_payload() + struct.pack('B', stk.CRC_EOP)

    def __str__(self) -> str:
        return self.COMMAND_NAME


class CommandGetSync(STK500Command):
    COMMAND_ID = stk.STK_GET_SYNC
    COMMAND_NAME = 'GET_SYNC'

    def get_reply_timeout(self) -> stk.TimeoutValues:
        return stk.TimeoutValues.CONNECT


class CommandEnterProgMode(STK500Command):
    COMMAND_ID = stk.STK_ENTER_PROGMODE
    COMMAND_NAME = 'ENTER_PROGMODE'
    RICH_RESPONSE = True

    def get_reply_timeout(self) -> stk.TimeoutValues:
        return stk.TimeoutValues.CONNECT


class CommandLeaveProgMode(STK500Command):
    COMMAND_ID = stk.STK_LEAVE_PROGMODE
    COMMAND_NAME = 'LEAVE_PROGMODE'


class CommandUniversal(STK500Command):
    """@brief Raw 4-byte AVR serial programming instruction, forwarded by the bootloader"""
    COMMAND_ID = stk.STK_UNIVERSAL
    COMMAND_NAME = 'UNIVERSAL'

    def __init__(self, instruction: bytes):
        if len(instruction) != 4:
            raise ValueError(f'Universal command expects a 4 bytes instruction, got {len(instruction)}')
        self.instruction = bytes(instruction)

    def get_arguments_payload(self) -> bytes:
        return self.instruction

    def get_reply_timeout(self) -> stk.TimeoutValues:
        return stk.TimeoutValues.READ

    def __str__(self) -> str:
        return super().__str__() + '(' + hexlify_buffer(self.instruction) + ')'


class CommandLoadAddress(STK500Command):
    COMMAND_ID = stk.STK_LOAD_ADDRESS
    COMMAND_NAME = 'LOAD_ADDRESS'

    def __init__(self, address):
        """@brief Constructor
        @param address The byte address to load (it will be sent as a word address)
        """
        self.address = MCULogicalAddress(address)

    def get_arguments_payload(self) -> bytes:
        return struct.pack('<H', self.address.to_word_address())  # Optiboot reads the low byte first

    def __str__(self) -> str:
        return super().__str__() + f'(0x{self.address:06x})'


class _PageCommand(STK500Command):
    def __init__(self, length: int, memtype: int):
        if memtype != stk.MEMTYPE_FLASH:
            raise UnsupportedMemoryError(f'Only flash pages are supported (memory type {chr(memtype)!r} requested)')
        if length <= 0 or length > 0xffff:
            raise ValueError(f'Invalid page length {length}')
        self.length = length
        self.memtype = memtype

    def get_page_header(self) -> bytes:
        return struct.pack('>HB', self.length, self.memtype)

    def __str__(self) -> str:
        return super().__str__() + f'({self.length} bytes)'


class CommandProgramPage(_PageCommand):
    COMMAND_ID = stk.STK_PROG_PAGE
    COMMAND_NAME = 'PROG_PAGE'

    def __init__(self, data: bytes, memtype: int = stk.MEMTYPE_FLASH):
        super().__init__(length=len(data), memtype=memtype)
        self.data = bytes(data)

    def get_arguments_payload(self) -> bytes:
        return self.get_page_header() + self.data

    def get_reply_timeout(self) -> stk.TimeoutValues:
        return stk.TimeoutValues.WRITE


class CommandReadPage(_PageCommand):
    COMMAND_ID = stk.STK_READ_PAGE
    COMMAND_NAME = 'READ_PAGE'

    def __init__(self, length: int, memtype: int = stk.MEMTYPE_FLASH):
        super().__init__(length=length, memtype=memtype)

    def get_arguments_payload(self) -> bytes:
        return self.get_page_header()

    def get_reply_timeout(self) -> stk.TimeoutValues:
        return stk.TimeoutValues.READ


def decode_enter_progmode_status(status: int) -> bool:
    if status == stk.STK_NODEVICE:
        raise NoDeviceError('Target answered STK_NODEVICE to ENTER_PROGMODE')
    if status == stk.STK_OK:
        return True
    logger.info(f'ENTER_PROGMODE answered INSYNC followed by 0x{status:02x}')
    return False

RICH_STATUS_DECODERS = {
    stk.STK_ENTER_PROGMODE: decode_enter_progmode_status,
}


class STK500ProtocolSession:
    """@brief Drives an Optiboot target through a full programming sequence

    Sequence: reset and sync, enter programming mode, chip erase, page writes, optional read-back verification, leave
    programming mode. Read timeouts trigger a resynchronisation that keeps the connection open.
    """
    MAX_SYNC_STACK = 3
    RECOVERY_ROUNDS = 5
    SPAM_SYNC_COUNT = 500
    SPAM_SYNC_INTERVAL = 0.005
    POST_FORGET_DELAY = 0.005
    RESET_RETRIES = 3
    ENTER_PROGMODE_ATTEMPTS = 5
    LEAVE_PROGMODE_ATTEMPTS = 3
    LOAD_ADDRESS_ATTEMPTS = 4
    MAX_UPLOAD_RETRIES = 10
    READER_STATE_TIMEOUT = 2.0
    SHUTDOWN_TIMEOUT = 10.0

    def __init__(self, transport: ByteTransport, firmware: HexFileParser, timeouts: stk.TimeoutTable = None, reset_settle_delay: float = 0.5, progress_updater=None):
        """@brief Constructor
        @param transport The byte transport connected to the target
        @param firmware The firmware image to program
        @param timeouts The deadlines to apply for each timeout category
        @param reset_settle_delay The time to wait (in s) after a soft reset, for the bootloader to start
        @param progress_updater An optional object whose update() method will receive each new progress percentage
        """
        self.transport = transport
        self.firmware = firmware
        self.timeouts = timeouts if timeouts is not None else stk.TimeoutTable()
        self.reset_settle_delay = reset_settle_delay
        self.progress_updater = progress_updater
        self.reader: Optional[AsyncReader] = None
        self._state = stk.ProtocolState.INITIALIZING
        self._progress = 0.0
        self._reported_progress = None
        self._statistics = []
        self._reset_session_flags()

    def _reset_session_flags(self):
        self._sync_stack = 0
        self._upload_retries = 0
        self._timeout_occurred = False
        self._recovery_successful = False
        self._partial_recovery = False
        self.timeout_recoveries = 0
        self._verify_after_write = False

    def __enter__(self):
        return self

    def __exit__(self, type, value, traceback):
        self._shutdown_reader_completely()

    @property
    def timeout_occurred(self) -> bool:
        return self._timeout_occurred

    @property
    def recovery_successful(self) -> bool:
        return self._recovery_successful

    def get_protocol_state(self) -> stk.ProtocolState:
        return self._state

    def _set_state(self, state: stk.ProtocolState):
        if state is not self._state:
            logger.info(f'Protocol state {self._state.name} -> {state.name}')
            self._state = state

    def _error_state_for_phase(self) -> stk.ProtocolState:
        if self._state.is_error():
            return self._state
        if self._state is stk.ProtocolState.WRITING:
            return stk.ProtocolState.ERROR_WRITE
        if self._state is stk.ProtocolState.READING:
            return stk.ProtocolState.ERROR_READ
        return stk.ProtocolState.ERROR_CONNECT

    def get_progress(self) -> int:
        """@brief Get the programming progress, in percent
        @note When verification is enabled, writing goes from 0 to 50% and verification from 50 to 100%
        """
        return int(self._progress + 0.5)  # Half-up rounding, the progress is never negative

    def _set_progress(self, value: float):
        if value > 100:
            logger.warning(f'Progress value too high ({value})')
            value = 100
        elif value < 0:
            logger.warning(f'Progress value too low ({value})')
            value = 0
        self._progress = value
        percent = self.get_progress()
        if percent != self._reported_progress:
            self._reported_progress = percent
            logger.debug(f'Progress: {percent}%')
            if self.progress_updater is not None:
                self.progress_updater.update(percent)

    def get_writing_stats(self) -> WritingStats:
        """@brief Get page write durations statistics for the last write pass"""
        if not self._statistics:
            return WritingStats(0, 0, 0, 0)
        return WritingStats(min_ms=min(self._statistics),
                            max_ms=max(self._statistics),
                            average_ms=sum(self._statistics) / len(self._statistics),
                            count=len(self._statistics))

    def log_writing_stats(self):
        stats = self.get_writing_stats()
        logger.info(f'Page writes: {stats.count} pages, min {stats.min_ms:.1f}ms, max {stats.max_ms:.1f}ms, average {stats.average_ms:.1f}ms')

    # Reader lifecycle

    def _stop_reader(self, timeout: float) -> bool:
        deadline = Deadline(timeout)
        while True:
            self.reader.stop()
            if self.reader.wait_for_state(ReaderState.STOPPED, min(0.05, deadline.remaining())):
                return True
            if deadline.expired():
                logger.error(f'Reader did not stop within {timeout}s (state {self.reader.get_state().name})')
                return False

    def restart_reader(self) -> bool:
        """@brief Fully stop the reader, then start it again and discard any stale input"""
        logger.info('Restarting reader')
        if not self._stop_reader(self.READER_STATE_TIMEOUT):
            return False
        self.reader.start()
        if not self.reader.wait_for_state(ReaderState.WAITING, self.READER_STATE_TIMEOUT):
            logger.error('Reader did not restart')
            return False
        self.reader.forget()
        return True

    def _ensure_reader_ready(self):
        """@brief Bring back a reader left timed out or failed by a previous exchange into WAITING"""
        if self.reader.get_state() in (ReaderState.TIMEOUT_OCCURRED, ReaderState.FAIL, ReaderState.STOPPED):
            self.restart_reader()

    def _shutdown_reader_completely(self):
        reader = self.reader
        if reader is None:
            return
        if self._stop_reader(self.SHUTDOWN_TIMEOUT) and reader.request_complete_stop():
            if not reader.join(self.SHUTDOWN_TIMEOUT):
                logger.error('Reader worker did not terminate')
        else:
            logger.error('Could not shut down the reader worker, leaving it behind')
        self.reader = None

    # Command/response primitives

    def _send(self, command: STK500Command) -> bool:
        self._ensure_reader_ready()
        buffer = command.get_as_buffer()
        logger.debug(f'Sending {command}: {hexlify_buffer(buffer)}')
        try:
            self.transport.write(buffer)
        except TransportError as e:
            logger.warning(f'Could not send {command}: {e}')
            return False
        return True

    def _read_byte(self, timeout_class: stk.TimeoutValues) -> int:
        value = self.reader.read(timeout_class)
        if value < 0:
            raise FramingError('End of stream' if value == RESULT_END_OF_STREAM else 'Reader stopped while reading')
        return value

    def _expect_byte(self, expected: int, timeout_class: stk.TimeoutValues, what: str):
        value = self._read_byte(timeout_class)
        if value != expected:
            raise FramingError(f'Expected {what} (0x{expected:02x}), got 0x{value:02x}')

    def _handle_read_timeout(self):
        logger.warning('Timeout while waiting for a response')
        if not self._timeout_occurred:
            self.recover()

    def check_response(self, expect_rich: bool = False, opcode: int = None, timeout_class: stk.TimeoutValues = stk.TimeoutValues.DEFAULT) -> bool:
        """@brief Read and check a response to a command

        @param expect_rich Set if the status byte following INSYNC should be decoded by the decoder registered for @p opcode
        @param opcode The opcode of the command we are reading the response to
        @param timeout_class The timeout category to apply for each byte

        @return True if the response is INSYNC followed by a successful status
        @warning Raises NoDeviceError if the target reports it has no device
        """
        decoder = None
        if expect_rich:
            try:
                decoder = RICH_STATUS_DECODERS[opcode]
            except KeyError:
                raise ValueError(f'No response decoder for opcode {opcode!r}') from None
        try:
            value = self._read_byte(timeout_class)
            if value != stk.STK_INSYNC:
                if self._sync_stack >= self.MAX_SYNC_STACK:
                    logger.warning(f'Still not in sync (got 0x{value:02x})')
                    return False
                self._sync_stack += 1
                logger.warning(f'Response was not INSYNC (got 0x{value:02x}), resync attempt {self._sync_stack}')
                return False
            status = self._read_byte(timeout_class)
        except ReadTimeoutError:
            self._handle_read_timeout()
            return False
        except FramingError as e:
            logger.warning(f'Invalid response: {e}')
            return False
        except TransportError as e:
            logger.warning(f'Cannot read response: {e}')
            return False
        if decoder is not None:
            return decoder(status)
        if status != stk.STK_OK:
            logger.info(f'Response was INSYNC but not OK (0x{status:02x})')
            return False
        return True

    def _exchange(self, command: STK500Command) -> bool:
        if not self._send(command):
            return False
        return self.check_response(command.RICH_RESPONSE, command.COMMAND_ID, command.get_reply_timeout())

    # Synchronisation and recovery

    def get_synchronization(self) -> bool:
        recoveries_before = self.timeout_recoveries
        if self._exchange(CommandGetSync()):
            self._sync_stack = 0
            return True
        if self.timeout_recoveries > recoveries_before:
            logger.info('Recovered from timeout, now in sync')
            return True
        if self._timeout_occurred and self._partial_recovery and not self._recovery_successful:
            logger.info('Only a partial recovery, cannot synchronise')
            return False
        logger.debug('Could not get synchronization')
        return False

    def spam_sync(self) -> bool:
        """@brief Flood the target with sync requests until the reader reports that something was received after a timeout
        @return True if a byte arrived
        """
        buffer = CommandGetSync().get_as_buffer()
        wrong_state_notified = False
        for _ in range(self.SPAM_SYNC_COUNT):
            if self.reader.get_state() is ReaderState.TIMEOUT_OCCURRED:
                if self.reader.wait_until_activated(0.01):
                    try:
                        if self.reader.get_result() == TIMEOUT_BYTE_RECEIVED:
                            return True
                    except TransportError as e:
                        logger.warning(f'Reader failed while resynchronising: {e}')
                        return False
            elif not wrong_state_notified:
                wrong_state_notified = True
                logger.info(f'Resynchronising while reader is in state {self.reader.get_state().name}')
            try:
                self.transport.write(buffer)
            except TransportError as e:
                logger.warning(f'Unable to send sync: {e}')
                return False
            time.sleep(self.SPAM_SYNC_INTERVAL)
        logger.warning(f'No answer to {self.SPAM_SYNC_COUNT} sync requests')
        return False

    def recover(self) -> bool:
        """@brief Try to regain frame synchronisation after a timeout, without closing the connection
        @return True if the target is in sync again
        """
        logger.warning('Attempting timeout recovery')
        self._timeout_occurred = True
        self._recovery_successful = False
        for _ in range(self.RECOVERY_ROUNDS):
            self._partial_recovery = False
            if not self.spam_sync():
                logger.warning('Unable to regain communication')
                self.restart_reader()
                break
            self._partial_recovery = True
            if not self.reader.wait_for_state(ReaderState.WAITING, self.READER_STATE_TIMEOUT):
                continue
            self.reader.forget()    # Answers to the flood of sync requests are meaningless
            time.sleep(self.POST_FORGET_DELAY)
            if self.get_synchronization():
                self._recovery_successful = True
                self._timeout_occurred = False
                self.timeout_recoveries += 1
                logger.warning(f'Recovery successful ({self.timeout_recoveries} so far)')
                break
        return self._recovery_successful

    def soft_reset(self) -> bool:
        """@brief Ask the application firmware running on the target to reboot into the bootloader"""
        logger.debug(f'Sending soft reset: {hexlify_buffer(stk.SOFT_RESET_PATTERN)}')
        try:
            self.transport.write(stk.SOFT_RESET_PATTERN)
        except TransportError as e:
            logger.warning(f'Unable to send soft reset: {e}')
            return False
        return True

    def hardware_reset(self) -> bool:
        """@brief Placeholder for a real hardware reset, only counts as a retry"""
        logger.warning('Hardware reset requested (not supported)')
        self._upload_retries += 1
        return True

    def reset_and_sync(self) -> bool:
        for _ in range(self.RESET_RETRIES):
            if self.reader.get_state() is not ReaderState.WAITING:
                self.restart_reader()
            self.reader.wait_until_activated(self.READER_STATE_TIMEOUT)
            if not self.soft_reset():
                self._set_state(stk.ProtocolState.ERROR_CONNECT)
                return False
            time.sleep(self.reset_settle_delay)
            if self.get_synchronization():
                return True
        logger.error('Unable to reset and synchronise')
        self._set_state(stk.ProtocolState.ERROR_CONNECT)
        self.reader.stop()
        return False

    # Programming commands

    def enter_program_mode(self) -> bool:
        ok = self._exchange(CommandEnterProgMode())
        if not ok:
            logger.warning('Unable to enter programming mode')
        return ok

    def leave_program_mode(self) -> bool:
        ok = self._exchange(CommandLeaveProgMode())
        if not ok:
            logger.warning('Unable to leave programming mode')
        return ok

    def erase_chip(self) -> bool:
        """@brief Erase the whole flash using the universal command
        @note The response is INSYNC, one ignored data byte, then OK
        """
        command = CommandUniversal(stk.CHIP_ERASE_INSTRUCTION)
        if not self._send(command):
            return False
        timeout_class = command.get_reply_timeout()
        try:
            self._expect_byte(stk.STK_INSYNC, timeout_class, 'INSYNC')
            self._read_byte(timeout_class)
            self._expect_byte(stk.STK_OK, timeout_class, 'OK')
        except ReadTimeoutError:
            self._handle_read_timeout()
            return False
        except (FramingError, TransportError) as e:
            logger.warning(f'Chip erase failed: {e}')
            return False
        logger.info('Chip erased')
        return True

    def load_address(self, address) -> bool:
        ok = self._exchange(CommandLoadAddress(address))
        if not ok:
            logger.warning(f'Failed to load address 0x{address:06x}')
        return ok

    def program_page(self, data: bytes, flash: bool = True) -> bool:
        """@brief Write one page at the previously loaded address
        @param data The page content
        @param flash Must be True, EEPROM pages are not supported
        """
        command = CommandProgramPage(data, memtype=stk.MEMTYPE_FLASH if flash else stk.MEMTYPE_EEPROM)
        if not self._send(command):
            return False
        started_at = time.monotonic()
        ok = self.check_response(command.RICH_RESPONSE, command.COMMAND_ID, command.get_reply_timeout())
        if ok:
            self._statistics.append((time.monotonic() - started_at) * 1000)
        return ok

    def read_page(self, length: int, address=None, flash: bool = True) -> Optional[bytes]:
        """@brief Read back one page
        @param length The number of bytes to read
        @param address If provided, load this address first, otherwise read at the previously loaded address
        @param flash Must be True, EEPROM pages are not supported
        @return The page content, or None if the response was not well-formed
        """
        if address is not None and not self.load_address(address):
            return None
        command = CommandReadPage(length, memtype=stk.MEMTYPE_FLASH if flash else stk.MEMTYPE_EEPROM)
        if not self._send(command):
            return None
        timeout_class = command.get_reply_timeout()
        try:
            self._expect_byte(stk.STK_INSYNC, timeout_class, 'INSYNC')
            data = bytes(self._read_byte(timeout_class) for _ in range(length))
            self._expect_byte(stk.STK_OK, timeout_class, 'OK')
        except ReadTimeoutError:
            self._handle_read_timeout()
            return None
        except (FramingError, TransportError) as e:
            logger.warning(f'Page read failed: {e}')
            return None
        return data

    def _update_pass_progress(self, position: int, total: int, write: bool):
        fraction = position / total
        if not write:
            self._set_progress(50 + fraction * 50)
        elif self._verify_after_write:
            self._set_progress(fraction * 50)
        else:
            self._set_progress(fraction * 100)

    def upload_file(self, chunk_size: int, write: bool) -> bool:
        """@brief Run one pass over the whole image, writing or verifying each chunk

        @param chunk_size The maximum number of bytes per page command
        @param write True for a write pass, False for a verification pass

        @return True if all chunks were processed
        """
        self._set_state(stk.ProtocolState.WRITING if write else stk.ProtocolState.READING)
        total = self.firmware.get_total_data_size()
        logger.info(f'{"Writing" if write else "Verifying"} {total} bytes in chunks of {chunk_size} bytes')
        position = 0
        while position < total:
            if self._upload_retries > self.MAX_UPLOAD_RETRIES:
                logger.error(f'Giving up after {self._upload_retries} retries')
                return False
            chunk = self.firmware.get_chunk(MCULogicalAddress(position), chunk_size)
            if not chunk:
                return True
            address_loaded = False
            for attempt in range(1, self.LOAD_ADDRESS_ATTEMPTS + 1):
                if self.load_address(position):
                    logger.debug(f'Address loaded after {attempt} attempts')
                    address_loaded = True
                    break
                if self._timeout_occurred and not self._recovery_successful:
                    return False
                self._timeout_occurred = False
                self.hardware_reset()
            if not address_loaded:
                continue
            if write:
                success = self.program_page(chunk)
            else:
                read_back = self.read_page(len(chunk))
                success = read_back == chunk
                if read_back is not None and not success:
                    logger.warning(f'Verification mismatch at 0x{position:06x}: expected {hexlify_buffer(chunk)}, read {hexlify_buffer(read_back)}')
            if success:
                position += len(chunk)
                self._update_pass_progress(position, total, write)
                continue
            if self._timeout_occurred and not self._recovery_successful:
                logger.error(f'Lost communication at 0x{position:06x}')
                return False
            self._timeout_occurred = False
            self._upload_retries += 1
            logger.warning(f'Retrying chunk at 0x{position:06x} ({self._upload_retries} retries so far)')
        return True

    def write_and_read_file(self, verify: bool, chunk_size: int) -> bool:
        """@brief Write the whole image, then read it back if @p verify is set"""
        self._set_progress(0)
        self._upload_retries = 0
        self._verify_after_write = verify
        if not self.upload_file(chunk_size, write=True):
            return False
        if verify:
            return self.upload_file(chunk_size, write=False)
        return True

    def _program_in_progmode(self, verify: bool, chunk_size: int) -> bool:
        if not self.erase_chip():
            logger.error('Chip not erased')
            self._set_state(stk.ProtocolState.ERROR_WRITE)
            return False
        self._statistics = []
        success = self.write_and_read_file(verify, chunk_size)
        self.log_writing_stats()
        if not success:
            self._set_state(self._error_state_for_phase())
            if self._timeout_occurred and not self._recovery_successful:
                logger.error('Lost communication during programming, a hardware reset is required')
                return False
            self._timeout_occurred = False
        for _ in range(self.LEAVE_PROGMODE_ATTEMPTS):
            if self.leave_program_mode():
                logger.info('Target left programming mode')
                break
            if self._timeout_occurred and not self._recovery_successful:
                logger.warning('Unable to recover from timeout while leaving programming mode')
                break
            self._timeout_occurred = False
        else:
            logger.warning('Giving up on leaving programming mode')
        if not self._state.is_error():
            self._set_state(stk.ProtocolState.FINISHED)
        return self._state is stk.ProtocolState.FINISHED

    def _program(self, verify: bool, chunk_size: int) -> bool:
        if not self.reset_and_sync():
            return False
        for attempt in range(1, self.ENTER_PROGMODE_ATTEMPTS + 1):
            logger.info(f'Entering programming mode (attempt {attempt}/{self.ENTER_PROGMODE_ATTEMPTS})')
            if self.enter_program_mode():
                return self._program_in_progmode(verify, chunk_size)
            if self._timeout_occurred and not self._recovery_successful:
                self._set_state(stk.ProtocolState.ERROR_CONNECT)
                return False
            self._timeout_occurred = False
            if attempt < self.ENTER_PROGMODE_ATTEMPTS and not self.reset_and_sync():
                return False
        logger.error(f'Target refused programming mode {self.ENTER_PROGMODE_ATTEMPTS} times')
        self._set_state(stk.ProtocolState.ERROR_CONNECT)
        return False

    def program(self, verify: bool = True, chunk_size: int = 128) -> bool:
        """@brief Program the firmware image into the target

        @param verify Read back and compare each chunk after the write pass
        @param chunk_size The maximum number of bytes per page command

        @return True if the target was programmed (and verified if requested), get_protocol_state() tells why otherwise
        @note This method never raises
        """
        self._reset_session_flags()
        self._progress = 0.0
        self._reported_progress = None
        self._set_state(stk.ProtocolState.INITIALIZING)
        if chunk_size <= 0 or chunk_size > 0xffff:
            logger.error(f'Invalid chunk size {chunk_size}')
            self._set_state(stk.ProtocolState.ERROR_WRITE)
            return False
        try:
            image_valid = self.firmware.is_valid() and self.firmware.get_total_data_size() > 0
        except Exception:
            logger.exception('Cannot read firmware image')
            image_valid = False
        if not image_valid:
            logger.error('Firmware image is invalid, cancelling')
            self._set_state(stk.ProtocolState.ERROR_PARSE_HEX)
            return False
        self._set_state(stk.ProtocolState.READY)
        self.reader = AsyncReader(self.transport, timeouts=self.timeouts)
        self.reader.start_worker()
        try:
            self.reader.start()
            self._set_state(stk.ProtocolState.CONNECTING)
            if not self.reader.wait_for_state(ReaderState.WAITING, self.READER_STATE_TIMEOUT):
                logger.error('Reader did not start')
                self._set_state(stk.ProtocolState.ERROR_CONNECT)
                return False
            return self._program(verify, chunk_size)
        except ProtocolFatalError as e:
            logger.error(f'Fatal protocol error: {e}')
            self._set_state(stk.ProtocolState.ERROR_CONNECT)
            return False
        except Exception:
            logger.exception(f'Unexpected error while in state {self._state.name}')
            self._set_state(self._error_state_for_phase())
            return False
        finally:
            self._shutdown_reader_completely()
