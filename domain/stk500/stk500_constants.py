#!/usr/bin/env python3
# coding: utf-8
"""@brief STK500v1 protocol constants, timeout categories and protocol states
"""

from enum import Enum

# Response status bytes
STK_OK = 0x10
STK_FAILED = 0x11
STK_UNKNOWN = 0x12
STK_NODEVICE = 0x13
STK_INSYNC = 0x14
STK_NOSYNC = 0x15

# End of command marker
CRC_EOP = 0x20

# Command opcodes
STK_GET_SYNC = 0x30
STK_GET_SIGN_ON = 0x31
STK_ENTER_PROGMODE = 0x50
STK_LEAVE_PROGMODE = 0x51
STK_CHIP_ERASE = 0x52
STK_CHECK_AUTOINC = 0x53
STK_LOAD_ADDRESS = 0x55
STK_UNIVERSAL = 0x56
STK_PROG_FLASH = 0x60
STK_PROG_DATA = 0x61
STK_PROG_PAGE = 0x64
STK_READ_FLASH = 0x70
STK_READ_DATA = 0x71
STK_READ_PAGE = 0x74

# Memory type tags used by page commands
MEMTYPE_FLASH = ord('F')
MEMTYPE_EEPROM = ord('E')

# Universal command payload for a full chip erase (AVR serial programming instruction)
CHIP_ERASE_INSTRUCTION = bytes([0xAC, 0x80, 0x00, 0x00])

# Out-of-band pattern understood by the target's application firmware (ComputerSerial library) as a reboot request
SOFT_RESET_PATTERN = bytes([0xFF, 0x00, 0x01, 0xFF, 0x00, 0x00])


class TimeoutValues(Enum):
    """@brief Timeout categories, each operation kind picks one of them"""
    DEFAULT = 'default'
    CONNECT = 'connect'
    READ = 'read'
    WRITE = 'write'


class TimeoutTable:
    """@brief Mapping of each TimeoutValues category to a deadline in ms
    """
    DEFAULT_TIMEOUTS_MS = {
        TimeoutValues.DEFAULT: 1000,
        TimeoutValues.CONNECT: 2000,
        TimeoutValues.READ: 1000,
        TimeoutValues.WRITE: 2000,
    }

    def __init__(self, **overrides_ms):
        """@brief Constructor
        @param overrides_ms Optional per-category values in ms, keyed by lowercase category name (eg: write=3000)
        """
        self._timeouts_ms = dict(self.DEFAULT_TIMEOUTS_MS)
        for name, value in overrides_ms.items():
            try:
                category = TimeoutValues(name)
            except ValueError:
                raise ValueError(f'Unknown timeout category {name!r}') from None
            if value <= 0:
                raise ValueError(f'Timeout for {name} must be strictly positive, got {value}')
            self._timeouts_ms[category] = int(value)

    @classmethod
    def uniform(cls, timeout_ms: int):
        """@brief Build a table using the same deadline for all categories"""
        return cls(**{category.value: timeout_ms for category in TimeoutValues})

    def get_timeout_ms(self, category: TimeoutValues) -> int:
        """@brief Get the deadline for a category, in ms"""
        return self._timeouts_ms[category]

    def get_timeout(self, category: TimeoutValues) -> float:
        """@brief Get the deadline for a category, in s"""
        return self._timeouts_ms[category] / 1000

    def __str__(self) -> str:
        return 'TimeoutTable(' + ', '.join(f'{c.value}={ms}ms' for c, ms in self._timeouts_ms.items()) + ')'


class ProtocolState(Enum):
    """@brief Caller-visible state of a programming session"""
    INITIALIZING = 'initializing'
    READY = 'ready'
    CONNECTING = 'connecting'
    WRITING = 'writing'
    READING = 'reading'
    FINISHED = 'finished'
    ERROR_PARSE_HEX = 'error_parse_hex'
    ERROR_CONNECT = 'error_connect'
    ERROR_WRITE = 'error_write'
    ERROR_READ = 'error_read'

    def is_error(self) -> bool:
        return self in (ProtocolState.ERROR_PARSE_HEX, ProtocolState.ERROR_CONNECT, ProtocolState.ERROR_WRITE, ProtocolState.ERROR_READ)
