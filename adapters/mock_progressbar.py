# coding: utf-8
"""@brief Module implementing a history-recording progress bar
"""
from typing import List

from domain.ext_adapters_interface.progressbar_interface import ProgressBarInterface, ProgressBarFactoryInterface

class MockProgressBar(ProgressBarInterface):
    """@brief Concrete implementation of ProgressBarInterface for unit test purposes, recording all updates"""
    instances: List['MockProgressBar'] = []

    def __init__(self, name: str, min_value: int, max_value: int, show_eta: bool = False, *args, **kwargs):
        self.name = name
        self.min_value = min_value
        self.max_value = max_value
        self.started = False
        self.finished = False
        self.history: List[int] = []
        MockProgressBar.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, type, value, traceback):
        pass

    def update(self, value: int, raise_on_out_of_bounds = False):
        if value < self.min_value or value > self.max_value:
            raise IndexError(f'Update value {value} out of bounds')
        self.history.append(value)

    def finish(self):
        self.finished = True

    def start(self):
        self.started = True

class MockProgressBarFactory(ProgressBarFactoryInterface):
    @staticmethod
    def create(*args, **kwargs):
        return MockProgressBar(*args, **kwargs)
