# coding: utf-8
import logging
import pytest
import threading
import time

from domain.ext_adapters_interface.transport_interface import TransportError
from domain.stk500.async_reader import AsyncReader, Deadline, ReaderState, ReadTimeoutError, IllegalUseError, ReaderQueueOverflowError
from domain.stk500.async_reader import RESULT_END_OF_STREAM, RESULT_NOT_DONE, TIMEOUT_BYTE_RECEIVED
from domain.stk500.mock_transport import FakeTransport
from domain.stk500.stk500_constants import TimeoutTable, TimeoutValues

STATE_TIMEOUT = 2.0

class RecordingReader(AsyncReader):
    """@brief AsyncReader recording every state switch performed by its worker
    """
    def __init__(self, *args, **kwargs):
        self.switch_history = []
        super().__init__(*args, **kwargs)

    def _switch_locked(self, new_state):
        self.switch_history.append(new_state)
        super()._switch_locked(new_state)

def create_running_reader(transport: FakeTransport, timeouts: TimeoutTable = None, reader_class=AsyncReader) -> AsyncReader:
    reader = reader_class(transport, timeouts=timeouts if timeouts is not None else TimeoutTable.uniform(100))
    reader.start_worker()
    assert reader.start()
    assert reader.wait_for_state(ReaderState.WAITING, STATE_TIMEOUT)
    return reader

def shutdown(reader: AsyncReader):
    reader.stop()
    assert reader.wait_for_state(ReaderState.STOPPED, STATE_TIMEOUT)
    assert reader.request_complete_stop()
    assert reader.join(STATE_TIMEOUT)

def test_timeout_table_defaults_and_overrides():
    timeouts = TimeoutTable(write=3000)
    assert timeouts.get_timeout_ms(TimeoutValues.DEFAULT) == 1000
    assert timeouts.get_timeout_ms(TimeoutValues.CONNECT) == 2000
    assert timeouts.get_timeout_ms(TimeoutValues.READ) == 1000
    assert timeouts.get_timeout(TimeoutValues.WRITE) == 3.0
    assert TimeoutTable.uniform(50).get_timeout_ms(TimeoutValues.CONNECT) == 50
    with pytest.raises(ValueError):
        TimeoutTable(sleep=100)
    with pytest.raises(ValueError):
        TimeoutTable(read=0)

def test_deadline():
    assert Deadline(0).remaining() == 0.0
    assert Deadline(-1).expired()
    deadline = Deadline.from_ms(10000)
    assert not deadline.expired()
    assert 9.0 < deadline.remaining() <= 10.0

def test_start_stop_restart_transitions_in_order():
    transport = FakeTransport()
    reader = create_running_reader(transport, reader_class=RecordingReader)

    # When the reader is stopped, then started again
    assert reader.stop()
    assert reader.wait_for_state(ReaderState.STOPPED, STATE_TIMEOUT)
    assert reader.start()
    assert reader.wait_for_state(ReaderState.WAITING, STATE_TIMEOUT)

    # Then all requested transitions have been applied in order
    assert reader.switch_history == [ReaderState.STARTING,
                                     ReaderState.WAITING,
                                     ReaderState.STOPPING,
                                     ReaderState.STOPPED,
                                     ReaderState.STARTING,
                                     ReaderState.WAITING]
    assert all(isinstance(state, ReaderState) for state in reader.switch_history)
    shutdown(reader)

def test_read_returns_buffered_byte_without_waiting_for_deadline():
    transport = FakeTransport()
    transport.feed(b'\x14\x10')
    reader = create_running_reader(transport, timeouts=TimeoutTable.uniform(2000))

    started_at = time.monotonic()
    assert reader.read(TimeoutValues.READ) == 0x14
    assert reader.read(TimeoutValues.READ) == 0x10
    assert time.monotonic() - started_at < 2.0
    assert reader.wait_for_state(ReaderState.WAITING, STATE_TIMEOUT)
    shutdown(reader)

def test_read_timeout():
    transport = FakeTransport()
    reader = create_running_reader(transport, timeouts=TimeoutTable.uniform(50))

    # When nothing is received within the deadline
    with pytest.raises(ReadTimeoutError):
        reader.read(TimeoutValues.DEFAULT)

    # Then the reader stays in TIMEOUT_OCCURRED
    assert reader.get_state() is ReaderState.TIMEOUT_OCCURRED
    assert reader.get_result() == RESULT_NOT_DONE
    # And reading is not allowed until the timeout is dealt with
    with pytest.raises(IllegalUseError):
        reader.read(TimeoutValues.DEFAULT)
    shutdown(reader)

def test_byte_received_after_timeout_is_reported():
    transport = FakeTransport()
    reader = create_running_reader(transport, timeouts=TimeoutTable.uniform(50))
    with pytest.raises(ReadTimeoutError):
        reader.read(TimeoutValues.DEFAULT)

    # When a late byte arrives
    transport.feed(b'\x14')
    time.sleep(0.2)

    # Then the outcome is the distinguished "timeout recovered" code, and the reader goes back to WAITING
    assert reader.get_result() == TIMEOUT_BYTE_RECEIVED
    assert reader.wait_for_state(ReaderState.WAITING, STATE_TIMEOUT)
    # The late byte was not consumed
    assert reader.read(TimeoutValues.DEFAULT) == 0x14
    shutdown(reader)

def test_forget_after_timeout_discards_exactly_pending_bytes():
    transport = FakeTransport()
    reader = create_running_reader(transport, timeouts=TimeoutTable.uniform(50))
    with pytest.raises(ReadTimeoutError):
        reader.read(TimeoutValues.DEFAULT)
    transport.feed(b'\x01\x02\x03\x04\x05')
    time.sleep(0.2)

    assert reader.forget() == 5
    assert transport.bytes_available() == 0
    # The reported outcome is unchanged
    assert reader.get_result() == TIMEOUT_BYTE_RECEIVED
    assert reader.wait_for_state(ReaderState.WAITING, STATE_TIMEOUT)
    shutdown(reader)

def test_forget_while_waiting():
    transport = FakeTransport()
    reader = create_running_reader(transport)
    transport.feed(b'\xaa\xbb\xcc')
    assert reader.forget() == 3
    assert reader.forget() == 0
    assert reader.get_state() is ReaderState.WAITING
    assert reader.was_current_state_activated()
    shutdown(reader)

def test_forget_not_allowed_while_stopped():
    reader = AsyncReader(FakeTransport())
    reader.start_worker()
    assert reader.wait_for_state(ReaderState.STOPPED, STATE_TIMEOUT)
    with pytest.raises(IllegalUseError):
        reader.forget()
    assert reader.request_complete_stop()
    assert reader.join(STATE_TIMEOUT)

def test_stop_while_reading_waits_for_the_read_to_resolve():
    class TestContext:
        def __init__(self):
            self.read_outcome = None

    transport = FakeTransport()
    reader = create_running_reader(transport, timeouts=TimeoutTable.uniform(5000))
    test_context = TestContext()

    def blocking_read():
        test_context.read_outcome = reader.read(TimeoutValues.READ)

    read_thread = threading.Thread(target=blocking_read)
    read_thread.start()
    assert reader.wait_for_state(ReaderState.READING, STATE_TIMEOUT)

    # When a stop is requested while reading
    assert reader.stop()
    assert reader.get_state() is ReaderState.READING
    transport.feed(b'\x42')

    # Then the read resolves (with the real byte or no result at all) and the reader ends up stopped
    read_thread.join(STATE_TIMEOUT)
    assert not read_thread.is_alive()
    assert test_context.read_outcome in (0x42, RESULT_NOT_DONE)
    assert reader.wait_for_state(ReaderState.STOPPED, STATE_TIMEOUT)
    assert reader.read(TimeoutValues.READ) == RESULT_NOT_DONE
    assert reader.request_complete_stop()
    assert reader.join(STATE_TIMEOUT)

def test_start_requested_before_worker_runs():
    reader = AsyncReader(FakeTransport())
    # The worker is not running, so requested states are not applied yet
    assert reader.start()
    assert reader.get_state() is ReaderState.STOPPED
    reader.start_worker()
    assert reader.wait_for_state(ReaderState.WAITING, STATE_TIMEOUT)
    shutdown(reader)

def test_end_of_stream():
    transport = FakeTransport()
    reader = create_running_reader(transport)
    transport.signal_end_of_stream()

    assert reader.read(TimeoutValues.READ) == RESULT_END_OF_STREAM
    assert reader.get_state() is ReaderState.FAIL
    with pytest.raises(TransportError):
        reader.get_result()
    shutdown(reader)

def test_transport_failure():
    transport = FakeTransport()
    reader = create_running_reader(transport)
    transport.fail_reads = True

    with pytest.raises(TransportError):
        reader.read(TimeoutValues.READ)
    assert reader.get_state() is ReaderState.FAIL
    transport.fail_reads = False
    shutdown(reader)

def test_complete_stop_only_honoured_when_stopped():
    transport = FakeTransport()
    reader = create_running_reader(transport)
    assert not reader.request_complete_stop()
    assert reader.get_state() is ReaderState.WAITING
    shutdown(reader)

def test_transition_queue_is_bounded():
    reader = AsyncReader(FakeTransport(), max_pending_transitions=2)
    # The worker is not started, so nothing drains the queue
    with reader._cond:
        reader._request_transition_locked(ReaderState.STARTING)
        reader._request_transition_locked(ReaderState.WAITING)
        with pytest.raises(ReaderQueueOverflowError):
            reader._request_transition_locked(ReaderState.STOPPING)
    with pytest.raises(ValueError):
        AsyncReader(FakeTransport(), max_pending_transitions=0)

def test_transition_queue_filling_up_is_logged(caplog):
    reader = AsyncReader(FakeTransport(), max_pending_transitions=5)
    with caplog.at_level(logging.WARNING, logger='domain.stk500.async_reader'):
        with reader._cond:
            for state in (ReaderState.STARTING, ReaderState.WAITING, ReaderState.STOPPING):
                reader._request_transition_locked(state)
            assert not [r for r in caplog.records if r.levelno == logging.WARNING]
            # The 4th pending request reaches 80% of the bound
            reader._request_transition_locked(ReaderState.STOPPED)
    warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert warnings == ['Reader transition queue is filling up (4/5 pending)']

def test_deadline_follows_requested_timeout_class():
    transport = FakeTransport()
    reader = create_running_reader(transport, timeouts=TimeoutTable(default=50, connect=2000))

    # When a byte arrives well after the DEFAULT deadline, but within the CONNECT one
    late_byte = threading.Timer(0.3, transport.feed, args=(b'\x14',))
    late_byte.start()
    assert reader.read(TimeoutValues.CONNECT) == 0x14
    late_byte.join()

    # Then DEFAULT reads still time out after their own deadline
    assert reader.wait_for_state(ReaderState.WAITING, STATE_TIMEOUT)
    started_at = time.monotonic()
    with pytest.raises(ReadTimeoutError):
        reader.read(TimeoutValues.DEFAULT)
    assert time.monotonic() - started_at < 1.0
    shutdown(reader)
