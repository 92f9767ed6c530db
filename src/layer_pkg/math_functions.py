# layer_pkg/math_functions.py
import torch


def sub(a: torch.Tensor, b: torch.Tensor, out: torch.Tensor) -> torch.Tensor:
    """ out = a - b, elementwise. """
    return torch.sub(a, b, out=out)


def powx(x: torch.Tensor, exponent: float, out: torch.Tensor) -> torch.Tensor:
    """ out = x ** exponent, elementwise. """
    return torch.pow(x, exponent, out=out)


def axpby(alpha: float, x: torch.Tensor, beta: float, y: torch.Tensor) -> torch.Tensor:
    """
    y = alpha * x + beta * y, in place on y.
    With beta == 0 the old contents of y are overwritten, NaNs included.
    """
    if beta == 0:
        return y.copy_(x).mul_(alpha)
    return y.mul_(beta).add_(x, alpha=alpha)


def channel_sum(x: torch.Tensor, summer_vec: torch.Tensor, out: torch.Tensor) -> torch.Tensor:
    """
    Sums x of shape (N, C, H, W) over the channel axis into out of shape (N, 1, H, W).

    Each batch element is reduced as a matrix-vector product of its (C, H*W)
    slice (transposed) against summer_vec, one element at a time in batch order.
    """
    num, channels, height, width = x.shape
    flat_x = x.reshape(num, channels, height * width)
    flat_out = out.view(num, height * width)
    for i in range(num):
        torch.mv(flat_x[i].t(), summer_vec, out=flat_out[i])
    return out
