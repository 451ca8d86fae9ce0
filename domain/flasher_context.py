# coding: utf-8
"""@brief Module providing context for flasher code
"""

from domain.ext_adapters_interface.progressbar_interface import ProgressBarInterface, ProgressBarFactoryInterface
from domain.ext_adapters_interface.hex_file_parser_interface import HexFileParser
from domain.ext_adapters_interface.transport_interface import ByteTransport
from domain.stk500.stk500_constants import TimeoutTable

class FlasherContext:
    """@brief Flasher context container, including handlers for UI (logger, progressbar) and for file and target access
    @note This class is used for dependency injection
    """

    def __init__(self, name: str, progressbar_factory: ProgressBarFactoryInterface, logger, firmware_file_parser: HexFileParser, transport: ByteTransport, timeouts: TimeoutTable = None, reset_settle_delay: float = 0.5):
        """@brief Construct a Flasher context container
        @param name The name of the context
        @param progressbar_factory A factory generating progress bar instances
        @param logger A logger to use
        @param firmware_file_parser The hex fimware instance to read firmware data from
        @param transport The byte transport connected to the target's bootloader
        @param timeouts The deadlines to apply for each timeout category (defaults are used if None)
        @param reset_settle_delay The time to wait (in s) after a soft reset of the target
        """
        self.name = name
        self.progressbar_factory = progressbar_factory
        self.logger = logger
        self.firmware_file_parser = firmware_file_parser
        self.transport = transport
        self.timeouts = timeouts if timeouts is not None else TimeoutTable()
        self.reset_settle_delay = reset_settle_delay

    def create_progress_bar(self, name: str, min_value: int, max_value: int, *args, **kwargs) -> ProgressBarInterface:
        """@brief Construct a progress bar based on min and max values
        @param name The name of the progress bar
        @param min_value The minimum value for progress display (corresponds to 0% progress)
        @param max_value The maximum value for progress display (corresponds to 100% progress)
        @return The Progress bar that has been created
        @note All other arguments are to be passed as are to the ProgressBar contructor
        """
        return self.progressbar_factory.create(name=name, min_value=min_value, max_value=max_value, *args, **kwargs)
