#!/usr/bin/env python3
# coding: utf-8

from domain.flasher_context import FlasherContext
from domain.stk500.stk500_comm import STK500ProtocolSession

def log_firmware_summary(context: FlasherContext) -> None:
    """@brief Log the segments contained in the firmware image
    @param context The context container for flashing operations
    """
    firmware = context.firmware_file_parser
    segments = firmware.get_segments()
    context.logger.info(f'Firmware image: {firmware.get_total_data_size()} bytes from address 0, {len(segments)} segment(s)')
    for segment in segments:
        context.logger.debug(f'  {segment} ({segment.get_size()} bytes)')

def stk500_program_cmd(context: FlasherContext, verify: bool = True, chunk_size: int = 128) -> bool:
    """@brief Program (and optionally verify) the firmware into an Optiboot target
    @param context The context container for flashing operations
    @param verify Read back the flash after writing and compare it with the firmware
    @param chunk_size The number of bytes to send in each page command
    @return True on success
    """
    with context.create_progress_bar(name="Programming ", min_value=0, max_value=100, show_eta=True) as bar:
        bar.start()
        session = STK500ProtocolSession(transport=context.transport,
                                        firmware=context.firmware_file_parser,
                                        timeouts=context.timeouts,
                                        reset_settle_delay=context.reset_settle_delay,
                                        progress_updater=bar)
        success = session.program(verify=verify, chunk_size=chunk_size)
        bar.finish()
    stats = session.get_writing_stats()
    if stats.count > 0:
        context.logger.info(f'Wrote {stats.count} pages (min {stats.min_ms:.0f}ms, max {stats.max_ms:.0f}ms, average {stats.average_ms:.0f}ms per page)')
    if session.timeout_recoveries > 0:
        context.logger.warning(f'Recovered from {session.timeout_recoveries} timeout(s)')
    if success:
        context.logger.info('Target programmed' + (' and verified' if verify else ''))
    else:
        context.logger.error(f'Programming failed with state {session.get_protocol_state().name} (progress {session.get_progress()}%)')
    return success
