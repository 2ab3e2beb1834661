import logging

import torch

from LightFactorization.analysis.errors import AllocationError, StageOrderViolationError

logger = logging.getLogger(__name__)

HOST = torch.device("cpu")


def allocate(shape: tuple, device: torch.device = HOST, dtype: torch.dtype = torch.float32) -> torch.Tensor:
    """
    Zero filled tensor, with allocation failures reported as AllocationError.
    """
    try:
        return torch.zeros(shape, dtype=dtype, device=device)
    except (RuntimeError, MemoryError) as e:
        raise AllocationError(f'Could not allocate {tuple(shape)} {dtype} on {device}: {e}') from e


class ProbeBuffer:
    """
    A host buffer with an optional mirror on the execution device.

    The stage that fills the buffer writes to the working copy (the mirror
    when there is one). Transfers between host and mirror are synchronous
    copies of the whole buffer. The buffer remembers whether it has been
    populated so later stages can refuse to read zeros.

    :param name: used in error messages
    :param shape: buffer shape
    :param device: execution device, a mirror is allocated when it is not the cpu
    """

    def __init__(self, name: str, shape: tuple, device: torch.device = HOST):
        self.name = name
        self.shape = tuple(shape)
        self.populated = False
        self.released = False

        self._host = allocate(self.shape, HOST)
        self._mirror = None
        if device is not None and torch.device(device) != HOST:
            try:
                self._mirror = allocate(self.shape, torch.device(device))
            except AllocationError:
                self.release()
                raise

    @property
    def has_mirror(self) -> bool:
        return self._mirror is not None

    def _check_alive(self):
        if self.released:
            raise StageOrderViolationError(f'Buffer "{self.name}" was used after it was released')

    @property
    def tensor(self) -> torch.Tensor:
        """Working copy, the mirror when there is one."""
        self._check_alive()
        return self._mirror if self._mirror is not None else self._host

    def require(self, stage: str) -> torch.Tensor:
        """
        Working copy of a populated buffer.

        :param stage: name of the stage that needs it, for the error message
        """
        self._check_alive()
        if not self.populated:
            raise StageOrderViolationError(f'{stage} needs "{self.name}", which has not been computed yet')
        return self.tensor

    def store(self, tensor: torch.Tensor):
        """Write a stage result into the working copy."""
        working = self.tensor
        if tuple(tensor.shape) != self.shape:
            raise ValueError(f'Buffer "{self.name}" has shape {self.shape}, got {tuple(tensor.shape)}')
        working.copy_(tensor.to(device=working.device, dtype=working.dtype))
        self.populated = True

    def upload(self, tensor: torch.Tensor):
        """Copy host data in, then mirror it to the device."""
        self._check_alive()
        self._host.copy_(tensor.to(device=HOST, dtype=self._host.dtype))
        if self._mirror is not None:
            self._mirror.copy_(self._host, non_blocking=False)
        self.populated = True

    def download(self) -> torch.Tensor:
        """Bring the mirror back to the host, returns the host tensor."""
        self._check_alive()
        if self._mirror is not None:
            self._host.copy_(self._mirror, non_blocking=False)
        return self._host

    def read(self) -> torch.Tensor:
        """Independent host copy of the contents."""
        return self.download().clone()

    def release(self):
        """Free host and mirror memory, safe to call more than once."""
        self._host = None
        self._mirror = None
        self.released = True
        self.populated = False

    def __repr__(self) -> str:
        return f"ProbeBuffer({self.name!r}, shape={self.shape}, mirror={self.has_mirror}, populated={self.populated}, released={self.released})"
