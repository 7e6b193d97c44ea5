import math

import torch

from .config import dtype as default_dtype, device as default_device


def normal_fill(tensor, mean=0.0, std=1.0, generator=None):
    with torch.no_grad():
        tensor.normal_(mean, std, generator=generator)
    return tensor


def func_fill(tensor, func):
    """Fill element by element with the values returned by a zero-argument callable."""
    values = [float(func()) for _ in range(tensor.numel())]
    with torch.no_grad():
        tensor.copy_(torch.tensor(values, dtype=tensor.dtype).reshape(tensor.shape))
    return tensor


def generate_input_data(shapes, node_ids, default_variance, override_distributions=None,
                        dtype=None, device=None, generator=None):
    """
    One buffer per node: zero-mean normal with the given variance, unless
    override_distributions maps the node to its own element sampler.
    """
    override_distributions = override_distributions or {}
    data = []
    for node_id in node_ids:
        buffer = torch.zeros(shapes[node_id], dtype=dtype or default_dtype, device=device or default_device)
        func = override_distributions.get(node_id)
        if func is not None:
            func_fill(buffer, func)
        else:
            normal_fill(buffer, 0.0, math.sqrt(default_variance), generator=generator)
        data.append(buffer)
    return data
