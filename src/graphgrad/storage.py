import logging
from contextlib import contextmanager

import torch

from .config import device as default_device, dtype as default_dtype
from .errors import MissingDependency, PassError

logger = logging.getLogger(__name__)


def _promoted_dtype(buffers):
    """Widest floating dtype among the supplied buffers; integer inputs never decide it."""
    if not buffers:
        return default_dtype
    result = buffers[0].dtype
    for buffer in buffers[1:]:
        result = torch.promote_types(result, buffer.dtype)
    return result


class Storage:
    """
    Buffers for a single execute call.

    Supplied inputs are read-only. Every other buffer is allocated lazily,
    zero-filled, the first time a pass asks for it, and passes accumulate
    into it. Only DataIDs in `required` may be written: those are the ones
    some downstream pass or the caller actually needs in this request.
    """
    __slots__ = ('_shapes', '_inputs', '_buffers', '_required', '_loss', 'dtype', 'device',
                 '_active_pass', '_active_reads', '_active_writes')

    def __init__(self, shapes, inputs, required, dtype=None, device=None):
        self._shapes = shapes
        self._inputs = dict(inputs)
        self._buffers = {}
        self._required = frozenset(required)
        self._loss = 0.0
        floats = [buffer for buffer in self._inputs.values() if buffer.is_floating_point()]
        self.dtype = dtype or _promoted_dtype(floats)
        self.device = device or (floats[0].device if floats else default_device)
        self._active_pass = None
        self._active_reads = None
        self._active_writes = None

    @contextmanager
    def pass_scope(self, pass_name, reads, writes):
        """Restrict access to the declared DataIDs while a pass runs."""
        self._active_pass = pass_name
        self._active_reads = frozenset(reads)
        self._active_writes = frozenset(writes)
        try:
            yield self
        finally:
            self._active_pass = None
            self._active_reads = None
            self._active_writes = None

    def is_required(self, data_id):
        return data_id in self._required

    def is_input(self, data_id):
        return data_id in self._inputs

    def get(self, data_id):
        """Read access. Returns the input buffer or the accumulated buffer."""
        if self._active_pass is not None and data_id not in self._active_reads \
                and data_id not in self._active_writes:
            raise PassError(self._active_pass, f"read of undeclared data {data_id!r}")
        if data_id in self._inputs:
            return self._inputs[data_id]
        if data_id in self._buffers:
            return self._buffers[data_id]
        if data_id in self._required:
            # every producer has run and none of them contributed
            return self._allocate(data_id)
        raise MissingDependency(f"{data_id!r} was neither supplied nor computed in this execution.", data_id)

    def get_mut(self, data_id):
        """Write access to a required buffer; allocated zero-filled on first use."""
        if self._active_pass is not None and data_id not in self._active_writes:
            raise PassError(self._active_pass, f"write to undeclared data {data_id!r}")
        if self.is_input(data_id):
            raise PassError(self._active_pass, f"write to supplied input {data_id!r}")
        if data_id not in self._required:
            raise PassError(self._active_pass, f"write to {data_id!r} which is not required by this execution")
        buffer = self._buffers.get(data_id)
        if buffer is None:
            buffer = self._allocate(data_id)
        return buffer

    def _allocate(self, data_id):
        shape = self._shapes[data_id.node]
        buffer = torch.zeros(shape, dtype=self.dtype, device=self.device)
        self._buffers[data_id] = buffer
        logger.debug("Allocated %s with shape %s", data_id, shape)
        return buffer

    def loss_add(self, value):
        self._loss += float(value)

    @property
    def loss(self):
        return self._loss

    def allocated(self):
        """DataIDs that got a buffer during this execution (inputs excluded)."""
        return set(self._buffers)

    def take(self, data_id):
        if self.is_input(data_id):
            return self._inputs[data_id].clone()
        return self.get(data_id)

    def __repr__(self):
        return f"Storage(inputs={len(self._inputs)}, allocated={len(self._buffers)}, required={len(self._required)})"
