# coding: utf-8
"""@brief Module declaring the interface to which must comply all concrete implementations of byte transports towards the target
"""
import abc


class TransportError(Exception):
    """@brief Raised when the underlying byte stream fails (write or read failure, link lost)"""
    pass


class ByteTransport(metaclass=abc.ABCMeta):
    """@brief Interface to which must comply all concrete implementations of byte transports

    @note read() may block without any way to interrupt it or to time it out, this is why callers should only invoke it
          for a number of bytes that bytes_available() already reported as received
    """

    @abc.abstractmethod
    def write(self, data: bytes) -> None:
        """@brief Send bytes to the target

        @param data The buffer to send

        @warning Raises TransportError on failure
        """
        raise NotImplementedError

    @abc.abstractmethod
    def read(self, size: int) -> bytes:
        """@brief Blocking read of @p size bytes

        @param size The number of bytes to read

        @return The bytes read, a shorter (possibly empty) buffer signals the end of the stream
        @warning Raises TransportError on failure
        """
        raise NotImplementedError

    @abc.abstractmethod
    def bytes_available(self) -> int:
        """@brief Non-blocking probe for the number of bytes already received and not read yet

        @warning Raises TransportError on failure
        """
        raise NotImplementedError

    @classmethod
    def __subclasshook__(cls, subclass):
        if cls is not ByteTransport:
            return NotImplemented
        return all(callable(getattr(subclass, method, None)) for method in ("write", "read", "bytes_available")) or NotImplemented
