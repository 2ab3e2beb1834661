"""
Execution strategies for the per-pixel stages.

Every stage is written once, as an element function that works on one pixel
(tensors of shape (k,)) as well as on a block of pixels (..., k). A strategy
decides how the image is cut up and in which order the pieces run:

- map:    fn(*pixel_inputs, **global_inputs) -> tuple of per-pixel outputs
- reduce: fn(*pixel_inputs, **global_inputs) -> partial sum, partials are added

Inputs are (H, W, k) tensors; keyword tensors are read-only globals shared by
every pixel.
"""

import logging
from functools import partial
from multiprocessing import cpu_count
from multiprocessing.pool import ThreadPool
from typing import Callable, Optional

import torch

logger = logging.getLogger(__name__)


class ExecutionStrategy:
    """Interface shared by the sequential and the parallel execution."""

    name = "base"

    def __init__(self, device: torch.device = None):
        self.device = torch.device(device) if device is not None else torch.device("cpu")

    def map(self, fn: Callable, inputs: tuple, **kwargs) -> tuple:
        raise NotImplementedError

    def reduce(self, fn: Callable, inputs: tuple, **kwargs) -> torch.Tensor:
        raise NotImplementedError

    def _to_device(self, kwargs: dict) -> dict:
        return {k: v.to(self.device) if isinstance(v, torch.Tensor) else v for k, v in kwargs.items()}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(device={self.device})"


class SequentialStrategy(ExecutionStrategy):
    """
    One pixel at a time, row-major, on a single thread.

    Reductions are accumulated in that fixed order so results are reproducible
    bit for bit.
    """

    name = "sequential"

    def map(self, fn: Callable, inputs: tuple, **kwargs) -> tuple:
        inputs = tuple(t.to(self.device) for t in inputs)
        kwargs = self._to_device(kwargs)
        H, W = inputs[0].shape[:2]

        outputs = None
        for y in range(H):
            for x in range(W):
                result = fn(*(t[y, x] for t in inputs), **kwargs)
                if outputs is None:
                    outputs = tuple(torch.empty((H, W, *r.shape), dtype=r.dtype, device=r.device) for r in result)
                for out, r in zip(outputs, result):
                    out[y, x] = r

        return outputs

    def reduce(self, fn: Callable, inputs: tuple, **kwargs) -> torch.Tensor:
        inputs = tuple(t.to(self.device) for t in inputs)
        kwargs = self._to_device(kwargs)
        H, W = inputs[0].shape[:2]

        total = None
        for y in range(H):
            for x in range(W):
                partial_sum = fn(*(t[y, x] for t in inputs), **kwargs)
                total = partial_sum if total is None else total + partial_sum

        return total


def _apply_block(fn: Callable, kwargs: dict, block: tuple):
    return fn(*block, **kwargs)


class ParallelStrategy(ExecutionStrategy):
    """
    Data parallel execution on row blocks.

    Every block is moved to the device and handed whole to the element
    function, so the work inside a block is vectorized by torch. Blocks run on
    a thread pool; map outputs are concatenated back in row order and reduce
    partials (one per block) are summed once all blocks are done. The order of
    the additions inside a block is up to torch, so reductions can differ from
    SequentialStrategy in the last bits.

    :param device: device the blocks run on
    :param block_rows: rows per block, None for a single block
    :param n_workers: threads in the pool, defaults to cpu_count()
    """

    name = "parallel"

    def __init__(self, device: torch.device = None, block_rows: Optional[int] = None, n_workers: Optional[int] = None):
        super().__init__(device)
        if block_rows is not None and block_rows <= 0:
            raise ValueError(f'block_rows must be positive, got {block_rows}')
        if n_workers is not None and n_workers <= 0:
            raise ValueError(f'n_workers must be positive, got {n_workers}')
        self.block_rows = block_rows
        self.n_workers = n_workers if n_workers is not None else cpu_count()

    def _blocks(self, inputs: tuple) -> list:
        H = inputs[0].shape[0]
        block_rows = self.block_rows or H
        return [tuple(t[y0:y0 + block_rows].to(self.device) for t in inputs) for y0 in range(0, H, block_rows)]

    def _run(self, fn: Callable, inputs: tuple, kwargs: dict) -> list:
        blocks = self._blocks(inputs)
        worker = partial(_apply_block, fn, self._to_device(kwargs))

        n_workers = min(self.n_workers, len(blocks))
        logger.debug(f"Running {fn.__name__} on {len(blocks)} block(s) with {n_workers} worker(s) on {self.device}")

        if n_workers == 1:
            return [worker(block) for block in blocks]

        with ThreadPool(processes=n_workers) as pool:
            return pool.map(worker, blocks)

    def map(self, fn: Callable, inputs: tuple, **kwargs) -> tuple:
        results = self._run(fn, inputs, kwargs)
        return tuple(torch.cat(outputs, dim=0) for outputs in zip(*results))

    def reduce(self, fn: Callable, inputs: tuple, **kwargs) -> torch.Tensor:
        partials = self._run(fn, inputs, kwargs)
        return torch.sum(torch.stack(partials, dim=0), dim=0)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(device={self.device}, block_rows={self.block_rows}, n_workers={self.n_workers})"


def resolve_device(device: str = "auto") -> torch.device:
    """
    "auto" picks cuda when it is available, anything else is passed to torch.device.
    """
    if device is None or device == "auto":
        return torch.device("cuda" if torch.cuda.is_available() else "cpu")
    return torch.device(device)


def make_strategy(name: str, device: str = "auto", block_rows: Optional[int] = None, n_workers: Optional[int] = None) -> ExecutionStrategy:
    """
    Build a strategy from its configuration name.

    The sequential strategy always runs on the cpu.
    """
    if name == SequentialStrategy.name:
        return SequentialStrategy()
    if name == ParallelStrategy.name:
        return ParallelStrategy(device=resolve_device(device), block_rows=block_rows, n_workers=n_workers)
    raise ValueError(f'Unknown execution strategy: {name}, expected "sequential" or "parallel"')
