#!/usr/bin/env python3
# coding: utf-8
"""STK500v1 (Optiboot) flasher over a serial or Bluetooth link

Usage:
  stk500_flasher.py [-n] [-d [-d]] [-c <chunk_size>] <port_or_url> <hex_filename>

Where:
- <port_or_url> is a serial device (eg: /dev/ttyUSB0, /dev/rfcomm0, COM3) or a pyserial URL (eg: socket://host:port)
- -n skips verification (read back) of the written flash
- -d outputs debug logs, -d -d also outputs debug logs from the protocol layers
- -c sets the number of bytes per page command (default 128)

The baudrate can be set using the STK500_BAUDRATE environment variable (default 115200)
"""

from logging import DEBUG, INFO
import os
import sys

import domain.stk500.flashing_tools as ftools
from domain.common import create_main_logger
from domain.ext_adapters_interface.transport_interface import TransportError
from domain.flasher_context import FlasherContext
from adapters.hex_file_parser_python_intelhex import PythonIntelHexFileParser
from adapters.progressbar_progressbar2 import ProgressBar2Factory
from adapters.progressbar_silent import SilentProgressBarFactory
from adapters.transport_pyserial import PySerialTransport

DEFAULT_CHUNK_SIZE = 128
DEFAULT_BAUDRATE = 115200

logger = None

def get_args(argv):
    """@brief Extract command-line arguments
    @note Simplistic built-in version without external dependencies
    @return A tuple (verify, debug_level, chunk_size, port_or_url, hex_filename)
    """
    verify = True
    debug_level = 0
    chunk_size = DEFAULT_CHUNK_SIZE
    positional = []
    args = iter(argv[1:])
    for arg in args:
        if arg == '-n':
            verify = False
        elif arg == '-d':
            debug_level += 1
        elif arg == '-c':
            chunk_size = int(next(args))
            if chunk_size <= 0 or chunk_size > 0xffff:
                raise ValueError(f'Invalid chunk size {chunk_size}')
        elif arg.startswith('-'):
            raise ValueError(f'Unknown option {arg}')
        else:
            positional.append(arg)
    (port_or_url, hex_filename) = positional
    return (verify, debug_level, chunk_size, port_or_url, hex_filename)

if __name__ == "__main__":
    try:
        (verify, debug_level, chunk_size, port_or_url, hex_filename) = get_args(sys.argv)
        baudrate = int(os.environ.get('STK500_BAUDRATE', DEFAULT_BAUDRATE))
    except (ValueError, StopIteration):
        print(__doc__, file=sys.stderr) # Output usage
        sys.exit(1)
    logger = create_main_logger(name="stk500_flasher", log_level=DEBUG if debug_level > 0 else INFO, also_log_libs=(debug_level > 1))
    firmware = PythonIntelHexFileParser()
    try:
        firmware.read_hex_from(hex_filename)
    except Exception as e:
        logger.error("Error while reading input firmware file '" + hex_filename + "': " + str(e))
        sys.exit(1)
    if logger.isEnabledFor(DEBUG):
        progressbar_factory = SilentProgressBarFactory
    else:
        progressbar_factory = ProgressBar2Factory
    try:
        transport = PySerialTransport.open(port_or_url, baudrate=baudrate)
    except TransportError as e:
        logger.error(str(e))
        sys.exit(1)
    with transport:
        flasher_ctx = FlasherContext(name='cli',
                                     progressbar_factory=progressbar_factory,
                                     logger=logger,
                                     firmware_file_parser=firmware,
                                     transport=transport)
        ftools.log_firmware_summary(flasher_ctx)
        if not ftools.stk500_program_cmd(context=flasher_ctx, verify=verify, chunk_size=chunk_size):
            sys.exit(2)

    logger.info('Done')
