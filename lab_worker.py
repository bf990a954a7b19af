#!/usr/bin/env python3
"""
Background LAB conversion for large pixel batches.

LabConversionService hands conversions to a worker thread (or process) so an
interactive caller is not blocked. Both paths run convert_to_lab(), so the
results are identical; the service only changes where the work happens.
"""

from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

import numpy as np
from loguru import logger

from color_space import rgb_array_to_lab


@dataclass
class LabConversion:
    """LAB values for the sampled pixels plus simple statistics."""
    values: np.ndarray  # (n, 3)
    mean: np.ndarray  # (3,)
    count: int


def convert_to_lab(pixels, sample_factor: int = 1) -> LabConversion:
    """
    Convert every sample_factor-th pixel of an RGB(A) buffer to LAB.

    Args:
        pixels: Flat RGBA buffer or array of shape (n, 3) / (n, 4)
        sample_factor: Process every Nth pixel (1 = all pixels)
    """
    if sample_factor < 1:
        raise ValueError(f"sample_factor must be >= 1, got {sample_factor}")

    arr = np.asarray(pixels, dtype=np.uint8)
    if arr.ndim == 1:
        arr = arr.reshape(-1, 4)

    rgb = arr[::sample_factor, :3]
    values = rgb_array_to_lab(rgb)
    mean = values.mean(axis=0) if len(values) else np.zeros(3)

    return LabConversion(values=values, mean=mean, count=len(values))


class LabConversionService:
    """
    Off-loads LAB conversion to a single background worker.

    Lifecycle: start() -> convert() ... -> shutdown(). Usable as a context
    manager. convert() on a service that is not running computes the result
    synchronously and returns an already-completed future.
    """

    def __init__(self, use_processes: bool = False):
        self.use_processes = use_processes
        self._executor: Optional[Executor] = None

    @property
    def running(self) -> bool:
        return self._executor is not None

    def start(self) -> "LabConversionService":
        if self._executor is None:
            if self.use_processes:
                self._executor = ProcessPoolExecutor(max_workers=1)
            else:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="lab-worker")
            logger.debug(f"LAB worker started ({'process' if self.use_processes else 'thread'})")
        return self

    def convert(self, pixels, sample_factor: int = 1) -> Future:
        if self._executor is None:
            future = Future()
            try:
                future.set_result(convert_to_lab(pixels, sample_factor))
            except ValueError as e:
                future.set_exception(e)
            return future

        return self._executor.submit(convert_to_lab, np.asarray(pixels, dtype=np.uint8), sample_factor)

    def shutdown(self, wait: bool = True):
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
            logger.debug("LAB worker shut down")

    def __enter__(self) -> "LabConversionService":
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
