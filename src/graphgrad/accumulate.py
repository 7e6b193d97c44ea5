import torch


def reduce_to_shape(contribution, target_shape):
    """Sums a broadcast contribution back down to target_shape."""
    target_shape = tuple(target_shape)
    if tuple(contribution.shape) == target_shape:
        return contribution

    # Add singleton dimensions to the front of target_shape to match the contribution's ndim
    padded_target_shape = (1,) * (contribution.ndim - len(target_shape)) + target_shape
    if len(padded_target_shape) != contribution.ndim:
        raise ValueError(f"Cannot reduce shape {tuple(contribution.shape)} to {target_shape}")

    # Identify dimensions that were broadcast
    sum_dims = []
    for i, (dim, target_dim) in enumerate(zip(contribution.shape, padded_target_shape)):
        if target_dim == 1 and dim != 1:
            sum_dims.append(i)
        elif target_dim != dim:
            raise ValueError(f"Cannot reduce shape {tuple(contribution.shape)} to {target_shape}")

    if sum_dims:
        contribution = contribution.sum(dim=sum_dims, keepdim=True)
    return contribution.reshape(target_shape)


def broadcast_accumulate(target, contribution):
    """
    target += contribution, where target was broadcast to contribution's shape.

    Every element of target may receive many contributions, so they are summed
    first and applied with one in-place add rather than written element by
    element through a broadcast view of target.
    """
    target.add_(reduce_to_shape(contribution, target.shape))
    return target


def can_broadcast(shape, to_shape):
    try:
        return torch.broadcast_shapes(tuple(shape), tuple(to_shape)) == tuple(to_shape)
    except RuntimeError:
        return False
