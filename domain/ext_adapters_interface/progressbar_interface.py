# coding: utf-8
"""@brief Module declaring the interface to which must comply all concrete implementations of progress bar handlers
"""
import abc

class ProgressBarInterface(metaclass=abc.ABCMeta):
    """@brief Interface to which must comply all concrete implementations of progress bar handlers

    A progress bar also acts as the progress updater of a programming session (only update() is then invoked)
    """

    @abc.abstractmethod
    def __init__(self, name: str, min_value: int, max_value: int, show_eta: bool = False, *args, **kwargs):
        """@brief Construct a progressbar object based on its name

        @param name The name of the progress bar
        @param min_value The minimum value for progress display (corresponds to 0% progress)
        @param max_value The maximum value for progress display (corresponds to 100% progress)
        @param show_eta Should we calculate and display an estimated completion time?
        """
        raise NotImplementedError

    @abc.abstractmethod
    def __enter__(self):
        """@brief Ressource acquisition entry point"""
        raise NotImplementedError

    @abc.abstractmethod
    def __exit__(self, type, value, traceback):
        """@brief Ressource release"""
        raise NotImplementedError

    @abc.abstractmethod
    def update(self, value: int, raise_on_out_of_bounds = False):
        """Update the progressbar with a given value

        @param value The updated value
        @param raise_on_out_of_bounds Should we raise on out of bounds values? If not, the value is saturated to bounds instead.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def start(self):
        """Start displaying the progressbar"""
        raise NotImplementedError

    @abc.abstractmethod
    def finish(self):
        """Terminate the progressbar display"""
        raise NotImplementedError

    @classmethod
    def __subclasshook__(cls, subclass):
        if cls is not ProgressBarInterface:
            return NotImplemented
        return all(callable(getattr(subclass, method, None)) for method in ("__enter__", "__exit__", "update", "start", "finish")) or NotImplemented

class ProgressBarFactoryInterface(metaclass=abc.ABCMeta):
    """@brief Interface to which must comply all factories of progress bars"""

    @staticmethod
    @abc.abstractmethod
    def create(*args, **kwargs):
        """@brief Generate a progressbar instance

        @note All arguments are to be passed as are to the ProgressBar contructor
        """
        raise NotImplementedError

    @classmethod
    def __subclasshook__(cls, subclass):
        if cls is not ProgressBarFactoryInterface:
            return NotImplemented
        return callable(getattr(subclass, "create", None)) or NotImplemented
