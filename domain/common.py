#!/usr/bin/env python3
# coding: utf-8

from logging import getLogger, StreamHandler, Formatter
from logging import WARNING

def create_main_logger(name: str, log_level=WARNING, also_log_libs: bool = False):
    """@brief Create the main applicative logger and return it
    @param name The name of the logger
    @param log_level The log level over which logs are output
    @param also_log_libs Also configure all python loggers (including the domain.* modules) similarly to the main applicative logger
    """
    LOG_FORMAT = "%(asctime)s :: %(levelname)s :: %(threadName)s :: %(name)s: %(message)s"
    main_logger = getLogger(name=name)
    main_logger.handlers = []
    main_logger.setLevel(log_level)
    stream_handler = StreamHandler()
    stream_handler.setLevel(log_level)
    stream_handler.setFormatter(Formatter(LOG_FORMAT))
    if also_log_libs:
        root_logger = getLogger()
        root_logger.setLevel(log_level)
        root_logger.addHandler(stream_handler)
    else:  # We do not enable a handler on the main_logger if the root logger is already generating messages to avoid duplicates
        main_logger.addHandler(stream_handler)
    return main_logger

def hexlify_buffer(buffer) -> str:
    """@brief Format a byte buffer for logging
    @param buffer The bytes, bytearray or iterable of byte values to format
    @return The buffer as space-separated hexadecimal byte values (eg: '30 20')
    """
    return ' '.join('{:02x}'.format(b) for b in buffer)
