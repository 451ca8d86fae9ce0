# coding: utf-8
"""@brief Module implementing a non-drawing progress bar, used when debug logs would garble a textual bar

Progress is reported as debug logs instead, once every 10%
"""
from logging import getLogger

from domain.ext_adapters_interface.progressbar_interface import ProgressBarInterface, ProgressBarFactoryInterface

logger = getLogger(__name__)

class SilentProgressBar(ProgressBarInterface):
    """@brief Concrete implementation of ProgressBarInterface drawing nothing"""
    LOG_STEP_PERCENT = 10

    def __init__(self, name: str, min_value: int, max_value: int, show_eta: bool = False, *args, **kwargs):
        self.name = name.strip()
        self.min_value = min_value
        self.span = max(1, max_value - min_value)
        self.last_logged_step = None

    def __enter__(self):
        return self

    def __exit__(self, type, value, traceback):
        pass

    def update(self, value: int, *args, **kwargs):
        step = int((value - self.min_value) * 100 / self.span) // self.LOG_STEP_PERCENT
        if step != self.last_logged_step:
            self.last_logged_step = step
            logger.debug(f'{self.name} {step * self.LOG_STEP_PERCENT}%')

    def finish(self, *args, **kwargs):
        logger.debug(f'{self.name} done')

    def start(self, *args, **kwargs):
        self.last_logged_step = None

class SilentProgressBarFactory(ProgressBarFactoryInterface):
    @staticmethod
    def create(*args, **kwargs):
        return SilentProgressBar(*args, **kwargs)
