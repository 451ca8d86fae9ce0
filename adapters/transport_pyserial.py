# coding: utf-8
"""@brief Module implementing a byte transport on top of python pyserial

Any URL supported by serial.serial_for_url() can be used: local serial ports, Bluetooth RFCOMM devices (/dev/rfcomm*),
socket:// or rfc2217:// network bridges
"""
import serial

from domain.ext_adapters_interface.transport_interface import ByteTransport, TransportError

class PySerialTransport(ByteTransport):
    """@brief Concrete implementation of ByteTransport using python pyserial"""
    def __init__(self, device: serial.SerialBase):
        """@brief Constructor
        @param device An opened pyserial port (as returned by serial.serial_for_url())
        """
        self.device = device

    @staticmethod
    def open(url: str, baudrate: int = 115200) -> 'PySerialTransport':
        """@brief Open a serial port or URL and wrap it into a transport
        @note The port is opened with blocking reads (no timeout)
        """
        try:
            device = serial.serial_for_url(url, baudrate=baudrate, parity=serial.PARITY_NONE, stopbits=serial.STOPBITS_ONE, xonxoff=False, timeout=None)
        except serial.SerialException as e:
            raise TransportError(f'Cannot open {url}: {e}') from e
        return PySerialTransport(device)

    def __enter__(self):
        return self

    def __exit__(self, type, value, traceback):
        self.close()

    def close(self):
        self.device.close()

    def write(self, data: bytes) -> None:
        try:
            self.device.write(data)
            self.device.flush()
        except serial.SerialException as e:
            raise TransportError(f'Write failed: {e}') from e

    def read(self, size: int) -> bytes:
        try:
            return self.device.read(size)
        except serial.SerialException as e:
            raise TransportError(f'Read failed: {e}') from e

    def bytes_available(self) -> int:
        try:
            return self.device.in_waiting
        except (serial.SerialException, OSError) as e:
            raise TransportError(f'Cannot probe received bytes: {e}') from e
