"""Fixed-size worker pool with ordered, barrier-style results."""

from __future__ import annotations

import concurrent.futures
from typing import Callable, Iterable, TypeVar

import torch

T = TypeVar("T")
R = TypeVar("R")


class ParallelBatcher:
    """Run independent tasks on ``cores`` threads and return results in input order.

    ``map`` only returns after every task finished, and the first exception
    raised by a task is re-raised in the caller. Results never depend on the
    number of workers.
    """

    def __init__(self, cores: int = 1):
        cores = int(cores)
        if cores < 1:
            raise ValueError("cores must be >= 1")
        self.cores = cores

    def map(self, fn: Callable[[T], R], items: Iterable[T]) -> list[R]:
        items = list(items)
        workers = min(self.cores, len(items))
        if workers <= 1:
            return [fn(x) for x in items]
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(fn, items))

    @staticmethod
    def split_rows(n: int, k: int) -> list[tuple[int, int]]:
        """Split ``range(n)`` into at most ``k`` contiguous ``(start, stop)`` ranges."""
        k = max(1, min(int(k), int(n)))
        size, rem = divmod(int(n), k)
        out, start = [], 0
        for i in range(k):
            stop = start + size + (1 if i < rem else 0)
            out.append((start, stop))
            start = stop
        return out

    def map_ranges(self, fn: Callable[[int, int], torch.Tensor], n: int) -> torch.Tensor:
        """Evaluate ``fn(start, stop)`` on row ranges and concatenate the results."""
        if n == 0 or self.cores == 1:
            return fn(0, n)
        parts = self.map(lambda r: fn(*r), self.split_rows(n, self.cores))
        return torch.cat(parts, dim=0)

    def map_rows(self, fn: Callable[[torch.Tensor], torch.Tensor], x: torch.Tensor) -> torch.Tensor:
        return self.map_ranges(lambda a, b: fn(x[a:b]), x.shape[0])
