# coding: utf-8
import pytest

from adapters.mock_logger import MockLogger, ERROR, WARNING, INFO, DEBUG
from adapters.hex_file_parser_python_intelhex import PythonIntelHexFileParser
from adapters.mock_progressbar import MockProgressBarFactory, MockProgressBar
from adapters.progressbar_silent import SilentProgressBarFactory
from domain.mcu_addressing import MCULocatedLogicalDataChunk
from domain.stk500.mock_transport import FakeTransport, EmulatedOptiboot
import domain.stk500.flashing_tools as flashing_tools
import domain.stk500.stk500_constants as stk
from domain.flasher_context import FlasherContext

sample_content = b'0123456789abcdef' * 8

def create_test_context(target: EmulatedOptiboot, progressbar_factory=MockProgressBarFactory, firmware=None) -> FlasherContext:
    if firmware is None:
        firmware = PythonIntelHexFileParser()
        firmware.put_data_chunk(MCULocatedLogicalDataChunk(0, sample_content))
    return FlasherContext('',
                          progressbar_factory=progressbar_factory,
                          logger=MockLogger(DEBUG),
                          firmware_file_parser=firmware,
                          transport=FakeTransport(response_handler=target),
                          timeouts=stk.TimeoutTable.uniform(100),
                          reset_settle_delay=0)

def test_firmware_summary():
    firmware = PythonIntelHexFileParser()
    firmware.put_data_chunk(MCULocatedLogicalDataChunk(0, b'\x00' * 16))
    firmware.put_data_chunk(MCULocatedLogicalDataChunk(0x100, b'\x00' * 16))
    test_context = create_test_context(EmulatedOptiboot(), firmware=firmware)

    flashing_tools.log_firmware_summary(test_context)

    assert test_context.logger.get_messages(INFO) == ['Firmware image: 272 bytes from address 0, 2 segment(s)']
    assert len(test_context.logger.get_messages(DEBUG)) == 3

def test_program_and_verify():
    target = EmulatedOptiboot()
    test_context = create_test_context(target)

    # When programming with verification
    assert flashing_tools.stk500_program_cmd(context=test_context, verify=True, chunk_size=64)

    # Then the flash content matches the firmware
    assert target.read_data_at(0, len(sample_content)) == sample_content
    # And the progress bar went from start to finish
    progress_bar = MockProgressBar.instances[-1]
    assert progress_bar.name == 'Programming '
    assert progress_bar.started
    assert progress_bar.finished
    assert progress_bar.history[-1] == 100
    assert progress_bar.history == sorted(progress_bar.history)
    assert 'Target programmed and verified' in test_context.logger.get_messages(INFO)
    assert test_context.logger.get_messages(ERROR) == []
    assert test_context.logger.get_messages(WARNING) == []

def test_program_with_recovery_logs_warning():
    target = EmulatedOptiboot()
    target.drop_response(stk.STK_PROG_PAGE)
    test_context = create_test_context(target, progressbar_factory=SilentProgressBarFactory)

    assert flashing_tools.stk500_program_cmd(context=test_context, verify=False)

    assert test_context.logger.get_messages(WARNING)[0] == 'Recovered from 1 timeout(s)'
    assert 'Target programmed' in test_context.logger.get_messages(INFO)

def test_program_failure_reports_state():
    target = EmulatedOptiboot()
    target.no_device = True
    test_context = create_test_context(target)

    assert not flashing_tools.stk500_program_cmd(context=test_context)

    error_messages = test_context.logger.get_messages(ERROR)
    assert len(error_messages) == 1
    assert 'ERROR_CONNECT' in error_messages[0]
    assert target.count_received(stk.STK_PROG_PAGE) == 0
    assert MockProgressBar.instances[-1].finished
