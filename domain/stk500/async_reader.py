#!/usr/bin/env python3
# coding: utf-8
"""@brief Timeout-capable single byte reader on top of a transport whose blocking read cannot be interrupted

A dedicated worker thread runs a finite state machine. Other threads never switch the active state themselves, they
enqueue the target state and the worker performs the switch (one transition per worker iteration).
The worker only invokes the transport's blocking read when the transport already reported received bytes, deadlines are
thus enforced by the state machine and not by the read call itself.
"""

from collections import deque
from enum import Enum
from logging import getLogger
import threading
import time

from domain.ext_adapters_interface.transport_interface import ByteTransport, TransportError
from domain.stk500.stk500_constants import TimeoutTable, TimeoutValues

logger = getLogger(__name__)

class ReaderError(Exception):
    pass

class ReadTimeoutError(ReaderError):
    pass

class IllegalUseError(ReaderError):
    pass

class ReaderQueueOverflowError(IllegalUseError):
    pass

RESULT_END_OF_STREAM = -1
RESULT_NOT_DONE = -2
TIMEOUT_BYTE_RECEIVED = -3


class ReaderState(Enum):
    STOPPED = 'stopped'
    STARTING = 'starting'
    WAITING = 'waiting'
    READING = 'reading'
    RESULT_READY = 'result_ready'
    TIMEOUT_OCCURRED = 'timeout_occurred'
    FAIL = 'fail'
    STOPPING = 'stopping'


class Deadline:
    """@brief Absolute point in time after which an operation is considered as timed out (based on a monotonic clock)
    """
    def __init__(self, timeout: float):
        """@brief Constructor
        @param timeout The delay (in s) from now after which the deadline expires
        """
        self.started_at = time.monotonic()
        self.expires_at = self.started_at + timeout

    @classmethod
    def from_ms(cls, timeout_ms: int):
        return cls(timeout_ms / 1000)

    def expired(self) -> bool:
        return time.monotonic() > self.expires_at

    def remaining(self) -> float:
        """@brief Get the time left before expiry (in s), 0 if already expired"""
        return max(0.0, self.expires_at - time.monotonic())

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000


class _ResultSlot:
    """@brief One-slot handoff between the worker (producer while reading) and the caller (consumer)
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._value = RESULT_NOT_DONE

    def put(self, value: int):
        with self._lock:
            self._value = value

    def take(self) -> int:
        """@brief Fetch the value and clear the slot"""
        with self._lock:
            value = self._value
            self._value = RESULT_NOT_DONE
            return value

    def peek(self) -> int:
        with self._lock:
            return self._value


class _BufferedInput:
    """@brief Byte source owned by the worker, buffering what the transport delivers
    """
    def __init__(self, transport: ByteTransport):
        self._transport = transport
        self._buffer = bytearray()

    def available(self) -> int:
        return len(self._buffer) + self._transport.bytes_available()

    def read(self) -> int:
        """@brief Consume one byte
        @return The byte value (0-255) or RESULT_END_OF_STREAM
        @note Should only be called when available() reported pending bytes, otherwise it may block forever
        """
        if not self._buffer:
            data = self._transport.read(max(1, self._transport.bytes_available()))
            if not data:
                return RESULT_END_OF_STREAM
            self._buffer.extend(data)
        value = self._buffer[0]
        del self._buffer[0]
        return value

    def skip(self, count: int) -> int:
        """@brief Discard up to @p count bytes
        @return The number of bytes actually discarded
        """
        skipped = min(count, len(self._buffer))
        del self._buffer[:skipped]
        if count > skipped:
            skipped += len(self._transport.read(count - skipped))
        return skipped


class AsyncReader:
    """@brief Finite state machine turning a blocking byte source into a "read one byte within a deadline" primitive

    The worker thread is started with start_worker(), the reader then rests in STOPPED until start() is invoked.
    """
    POLL_INTERVAL = 0.001   # Worker wake-up period (in s) in states polling the transport or a deadline
    IDLE_INTERVAL = 1.0     # Worker wake-up period (in s) in all other states
    READ_SAFETY_MARGIN = 1.0    # Extra delay (in s) granted to the worker to resolve a read past its deadline
    FORGET_TIMEOUT = 1.0

    _POLLING_STATES = (ReaderState.READING, ReaderState.TIMEOUT_OCCURRED)
    _FORGET_STATES = (ReaderState.WAITING, ReaderState.TIMEOUT_OCCURRED)
    _READ_OUTCOME_STATES = (ReaderState.RESULT_READY, ReaderState.TIMEOUT_OCCURRED, ReaderState.FAIL)

    def __init__(self, transport: ByteTransport, timeouts: TimeoutTable = None, max_pending_transitions: int = 500, name: str = 'stk500-reader'):
        """@brief Constructor
        @param transport The byte transport to read from
        @param timeouts The deadlines to apply for each timeout category
        @param max_pending_transitions The maximum number of transition requests waiting to be processed by the worker
        @param name The name of the worker thread
        """
        if max_pending_transitions < 1:
            raise ValueError('max_pending_transitions must be at least 1')
        self._transport = transport
        self._timeouts = timeouts if timeouts is not None else TimeoutTable()
        self._max_pending = max_pending_transitions
        self._warn_pending = max(1, (max_pending_transitions * 4) // 5)
        self.name = name

        self._cond = threading.Condition()
        self._pending = deque()
        self._state = ReaderState.STOPPED
        self._activated = False
        self._tick_request_issued = False
        self._wake_pending = False
        self._complete_stop = False
        self._worker = None

        self._input = None
        self._result = _ResultSlot()
        self._last_error = None
        self._read_timeout_class = TimeoutValues.DEFAULT
        self._deadline = None
        self._stop_after_read = False
        self._result_delivered = False
        self._received_something = False
        self._timeout_outcome_fetched = False
        self._forget_requested = False
        self._forget_outcome = None

        self._activators = {
            ReaderState.STOPPED: self._activate_stopped,
            ReaderState.STARTING: self._activate_starting,
            ReaderState.WAITING: self._activate_waiting,
            ReaderState.READING: self._activate_reading,
            ReaderState.RESULT_READY: self._activate_result_ready,
            ReaderState.TIMEOUT_OCCURRED: self._activate_timeout_occurred,
            ReaderState.FAIL: lambda: None,
            ReaderState.STOPPING: self._activate_stopping,
        }
        self._ticks = {
            ReaderState.STOPPED: lambda: None,
            ReaderState.STARTING: self._tick_starting,
            ReaderState.WAITING: lambda: None,
            ReaderState.READING: self._tick_reading,
            ReaderState.RESULT_READY: self._tick_result_ready,
            ReaderState.TIMEOUT_OCCURRED: self._tick_timeout_occurred,
            ReaderState.FAIL: lambda: None,
            ReaderState.STOPPING: self._tick_stopping,
        }

    # Transition queue handling (all *_locked methods expect self._cond to be held)

    def _wake_worker_locked(self):
        self._wake_pending = True
        self._cond.notify_all()

    def _request_transition_locked(self, new_state: ReaderState):
        if len(self._pending) >= self._max_pending:
            raise ReaderQueueOverflowError(f'{len(self._pending)} transitions already pending, refusing {new_state.name}')
        self._pending.append(new_state)
        if len(self._pending) == self._warn_pending:
            logger.warning(f'Reader transition queue is filling up ({len(self._pending)}/{self._max_pending} pending)')
        logger.debug(f'Requested transition to {new_state.name} ({len(self._pending)} pending)')
        self._wake_worker_locked()

    def _request_from_tick_locked(self, new_state: ReaderState):
        """@brief Request a transition at most once for the current state instance"""
        if not self._tick_request_issued:
            self._tick_request_issued = True
            self._request_transition_locked(new_state)

    def _switch_locked(self, new_state: ReaderState):
        logger.debug(f'Reader state {self._state.name} -> {new_state.name}')
        self._state = new_state
        self._activated = False
        self._tick_request_issued = False
        if self._forget_requested:
            self._forget_requested = False  # Pending forget requests are cancelled by any state switch
        self._cond.notify_all()

    # Worker

    def _run(self):
        logger.debug(f'Reader worker {self.name} running')
        while True:
            with self._cond:
                if self._complete_stop:
                    break
            try:
                self._step()
            except Exception as e:
                logger.exception(f'Unexpected error in reader worker while in state {self._state.name}')
                with self._cond:
                    self._last_error = e
                    self._switch_locked(ReaderState.FAIL)
        logger.info(f'Reader worker {self.name} fully stopped')

    def _step(self):
        """@brief One worker iteration: switch to a pending state, or serve a forget request, or activate and tick the current state"""
        with self._cond:
            self._wake_pending = False
            state = self._state
            activated = self._activated
            if activated and self._pending:
                self._switch_locked(self._pending.popleft())
                return
            serve_forget = activated and self._forget_requested and state in self._FORGET_STATES
        if serve_forget:
            self._serve_forget()
            return
        if not activated:
            self._activators[state]()
            with self._cond:
                self._activated = True
                self._cond.notify_all()
        self._ticks[state]()
        with self._cond:
            if not (self._wake_pending or self._pending or self._forget_requested or self._complete_stop):
                self._cond.wait(timeout=self.POLL_INTERVAL if state in self._POLLING_STATES else self.IDLE_INTERVAL)

    def _discard_pending_bytes(self) -> int:
        if self._input is None:
            return 0
        to_skip = self._input.available()
        if to_skip == 0:
            return 0
        skipped = self._input.skip(to_skip)
        logger.debug(f'Discarded {skipped} pending bytes (out of {to_skip})')
        return skipped

    def _serve_forget(self):
        try:
            outcome = self._discard_pending_bytes()
        except TransportError as e:
            outcome = e
        with self._cond:
            if isinstance(outcome, TransportError):
                self._last_error = outcome
                self._request_transition_locked(ReaderState.FAIL)
            if self._forget_requested:
                self._forget_requested = False
                self._forget_outcome = outcome
                self._cond.notify_all()

    # State activations and ticks (only run by the worker)

    def _activate_stopped(self):
        self._input = None
        logger.info('Reader stopped')

    def _activate_starting(self):
        self._input = _BufferedInput(self._transport)

    def _tick_starting(self):
        with self._cond:
            self._request_from_tick_locked(ReaderState.WAITING)

    def _activate_waiting(self):
        with self._cond:
            self._last_error = None

    def _activate_reading(self):
        self._result.put(RESULT_NOT_DONE)
        with self._cond:
            # Deadline of the caller's timeout class, not always DEFAULT, so CONNECT and WRITE responses get their longer delays
            self._deadline = Deadline(self._timeouts.get_timeout(self._read_timeout_class))

    def _tick_reading(self):
        with self._cond:
            if self._tick_request_issued:
                return
            deadline = self._deadline
        outcome = None
        error = None
        if deadline.expired():
            logger.debug(f'Read timed out after {deadline.elapsed_ms():.0f}ms')
            outcome = ReaderState.TIMEOUT_OCCURRED
        else:
            try:
                if self._input.available() > 0:
                    value = self._input.read()
                    self._result.put(value)
                    outcome = ReaderState.FAIL if value == RESULT_END_OF_STREAM else ReaderState.RESULT_READY
            except TransportError as e:
                error = e
                outcome = ReaderState.FAIL
        if outcome is None:
            return
        with self._cond:
            if error is not None:
                self._last_error = error
            self._request_from_tick_locked(outcome)
            if self._stop_after_read:
                self._stop_after_read = False
                self._request_transition_locked(ReaderState.STOPPING)

    def _activate_result_ready(self):
        with self._cond:
            self._result_delivered = False

    def _tick_result_ready(self):
        with self._cond:
            if self._result_delivered:
                self._request_from_tick_locked(ReaderState.WAITING)

    def _activate_timeout_occurred(self):
        with self._cond:
            self._received_something = False
            self._timeout_outcome_fetched = False
        try:
            self._discard_pending_bytes()
        except TransportError as e:
            with self._cond:
                self._last_error = e
                self._request_from_tick_locked(ReaderState.FAIL)

    def _tick_timeout_occurred(self):
        with self._cond:
            if self._received_something or self._tick_request_issued:
                return
        try:
            arrived = self._input.available()
        except TransportError as e:
            with self._cond:
                self._last_error = e
                self._request_from_tick_locked(ReaderState.FAIL)
            return
        if arrived > 0:
            with self._cond:
                logger.debug(f'{arrived} bytes received after timeout')
                self._received_something = True
                self._cond.notify_all()

    def _activate_stopping(self):
        with self._cond:
            dropped = len(self._pending)
            self._pending.clear()
            self._stop_after_read = False
        if dropped:
            logger.debug(f'Dropped {dropped} pending transitions while stopping')

    def _tick_stopping(self):
        with self._cond:
            self._request_from_tick_locked(ReaderState.STOPPED)

    # Caller-side API

    def start_worker(self):
        """@brief Create and start the worker thread executing the state machine"""
        with self._cond:
            if self._worker is not None and self._worker.is_alive():
                raise IllegalUseError('Reader worker is already running')
            self._complete_stop = False
            self._worker = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._worker.start()

    def request_complete_stop(self) -> bool:
        """@brief Request the worker thread to terminate
        @return True if the request was accepted (the reader must be resting in STOPPED)
        """
        with self._cond:
            if self._state is not ReaderState.STOPPED or self._pending:
                logger.debug(f'Complete stop refused while in state {self._state.name}')
                return False
            self._complete_stop = True
            self._wake_worker_locked()
            return True

    def join(self, timeout: float = None) -> bool:
        """@brief Wait for the worker thread to terminate
        @return True if the worker is not running anymore
        """
        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    def start(self) -> bool:
        with self._cond:
            if self._state is ReaderState.STOPPING:
                logger.error('Cannot start the reader while it is stopping')
                return False
            if self._state is ReaderState.STOPPED and ReaderState.STARTING not in self._pending:
                logger.info('Starting reader')
                self._request_transition_locked(ReaderState.STARTING)
            return True

    def stop(self) -> bool:
        """@brief Request the reader to stop (advisory, poll get_state() or use wait_for_state() to know when it is effective)
        @return False if stopping is not possible yet (while starting)
        """
        with self._cond:
            if self._state is ReaderState.STARTING:
                logger.error('Wait until the reader is running before attempting to stop it')
                return False
            if self._state in (ReaderState.STOPPED, ReaderState.STOPPING):
                return True
            if self._state is ReaderState.READING and self._activated and not self._pending:
                logger.info('Stop requested while reading, will stop once the read attempt resolves')
                self._stop_after_read = True
            elif ReaderState.STOPPING not in self._pending:
                self._request_transition_locked(ReaderState.STOPPING)
            return True

    def get_state(self) -> ReaderState:
        with self._cond:
            return self._state

    def was_current_state_activated(self) -> bool:
        with self._cond:
            return self._activated

    def wait_for_state(self, state: ReaderState, timeout: float) -> bool:
        """@brief Block until the reader is in @p state, and this state has been activated
        @param state The state to wait for
        @param timeout The maximum time to wait (in s)
        @return True if the state was reached, False on timeout
        """
        with self._cond:
            return self._cond.wait_for(lambda: self._state is state and self._activated, timeout=timeout)

    def wait_until_activated(self, timeout: float) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._activated, timeout=timeout)

    def _is_settled_locked(self) -> bool:
        if not self._activated or self._pending:
            return False
        if self._state is ReaderState.RESULT_READY:
            return not self._result_delivered
        return self._state not in (ReaderState.STARTING, ReaderState.READING)

    def _is_read_resolved_locked(self) -> bool:
        if self._state in (ReaderState.STOPPING, ReaderState.STOPPED):
            return True
        return self._state in self._READ_OUTCOME_STATES and self._activated

    def read(self, timeout_class: TimeoutValues = TimeoutValues.DEFAULT) -> int:
        """@brief Read one byte within the deadline of @p timeout_class

        @param timeout_class The timeout category to apply

        @return The byte value (0-255), RESULT_END_OF_STREAM, or RESULT_NOT_DONE if the reader is stopping or stopped
        @warning Raises ReadTimeoutError if no byte was received within the deadline, TransportError on transport failure
                 and IllegalUseError if the reader is not in a state allowing reads
        """
        timeout = self._timeouts.get_timeout(timeout_class)
        with self._cond:
            # Let a previous outcome go back to WAITING before issuing a new read
            self._cond.wait_for(self._is_settled_locked, timeout=timeout)
            if self._state in (ReaderState.STOPPING, ReaderState.STOPPED):
                return RESULT_NOT_DONE
            if self._state is not ReaderState.WAITING or not self._is_settled_locked():
                raise IllegalUseError(f'Reading not allowed while in state {self._state.name}')
            self._read_timeout_class = timeout_class
            self._request_transition_locked(ReaderState.READING)
            resolved = self._cond.wait_for(self._is_read_resolved_locked, timeout=timeout + self.READ_SAFETY_MARGIN)
            state = self._state
            if not resolved:
                raise ReadTimeoutError(f'Reader did not resolve the read within {timeout + self.READ_SAFETY_MARGIN}s (state {state.name})')
            if state is ReaderState.TIMEOUT_OCCURRED:
                raise ReadTimeoutError(f'No byte received within {timeout}s')
            if state is ReaderState.FAIL:
                if self._result.peek() == RESULT_END_OF_STREAM:
                    return RESULT_END_OF_STREAM
                raise TransportError('Reader failed') from self._last_error
            if state is ReaderState.RESULT_READY:
                return self._get_result_locked()
            return RESULT_NOT_DONE

    def _get_result_locked(self) -> int:
        if self._state is ReaderState.RESULT_READY:
            value = self._result.take()
            self._result_delivered = True
            self._wake_worker_locked()
            return value
        if self._state is ReaderState.TIMEOUT_OCCURRED:
            if not self._received_something:
                return RESULT_NOT_DONE
            if not self._timeout_outcome_fetched:
                self._timeout_outcome_fetched = True
                self._request_transition_locked(ReaderState.WAITING)
            return TIMEOUT_BYTE_RECEIVED
        if self._state is ReaderState.FAIL:
            raise TransportError('Reader is in a failure state') from self._last_error
        return RESULT_NOT_DONE

    def get_result(self) -> int:
        """@brief Fetch the outcome of the current state

        @return The byte read (in RESULT_READY, the slot is then cleared and the reader goes back to WAITING),
                TIMEOUT_BYTE_RECEIVED if bytes arrived after a timeout (in TIMEOUT_OCCURRED, the reader then goes back to
                WAITING), RESULT_NOT_DONE otherwise
        @warning Raises TransportError when in FAIL
        """
        with self._cond:
            return self._get_result_locked()

    def forget(self) -> int:
        """@brief Discard all bytes received but not read yet

        @return The number of bytes discarded
        @warning Raises IllegalUseError if not in WAITING or TIMEOUT_OCCURRED
        """
        with self._cond:
            if self._state not in self._FORGET_STATES:
                raise IllegalUseError(f'forget() is only allowed while timed out or waiting, not in {self._state.name}')
            if self._worker is None or not self._worker.is_alive():
                raise IllegalUseError('forget() requires the reader worker to be running')
            if self._forget_requested:
                raise IllegalUseError('A forget request is already in progress')
            self._forget_requested = True
            self._forget_outcome = None
            self._wake_worker_locked()
            if not self._cond.wait_for(lambda: not self._forget_requested, timeout=self.FORGET_TIMEOUT):
                self._forget_requested = False
            outcome = self._forget_outcome
            self._forget_outcome = None
        if isinstance(outcome, TransportError):
            raise outcome
        return outcome if outcome is not None else 0
