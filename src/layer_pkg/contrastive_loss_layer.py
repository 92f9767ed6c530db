# layer_pkg/contrastive_loss_layer.py
import logging
from enum import Enum
from typing import Optional, Sequence, Tuple

import torch

from .config import ContrastiveLossConfig
from .errors import PreconditionViolation, ShapeMismatch
from .math_functions import axpby, channel_sum, powx, sub

log = logging.getLogger(__name__)

# Added to the distance before dividing by it in the non-legacy backward pass
DIST_EPSILON = 1e-4

AXIS_NAMES = ("num", "channels", "height", "width")


class LayerState(Enum):
    UNSET = "unset"  # No forward since the scratch buffers were (re)allocated
    READY = "ready"  # Scratch buffers hold the last forward's intermediates


def legacy_shape(shape: Sequence[int]) -> Tuple[int, int, int, int]:
    """
    Reads a shape as (num, channels, height, width).
    Missing trailing axes count as 1, so (N, C) embeddings are (N, C, 1, 1).
    """
    shape = tuple(int(s) for s in shape)
    if len(shape) > 4:
        raise ShapeMismatch(f"Expected at most 4 axes, got shape {shape}")
    return shape + (1,) * (4 - len(shape))


# Dissimilar-pair terms. One pair of functions is picked per layer config.

def _legacy_dissimilar_loss(dist_sq: torch.Tensor, margin: float) -> torch.Tensor:
    return torch.clamp(margin - dist_sq, min=0.0)


def _euclidean_dissimilar_loss(dist_sq: torch.Tensor, margin: float) -> torch.Tensor:
    dist = torch.clamp(margin - torch.sqrt(dist_sq), min=0.0)
    return dist * dist


def _legacy_dissimilar_scale(dist_sq: torch.Tensor, margin: float, alpha: float):
    mdist = margin - dist_sq
    return mdist, -alpha


def _euclidean_dissimilar_scale(dist_sq: torch.Tensor, margin: float, alpha: float):
    dist = torch.sqrt(dist_sq)
    mdist = margin - dist
    beta = -alpha * mdist / (dist + DIST_EPSILON)
    return mdist, beta


class ContrastiveLossLayer:
    """
    Contrastive loss over pairs of feature blobs.

    Bottom blobs are feature_a and feature_b of shape (N, C, H, W) and a 0/1
    label of shape (N, 1, H, W). Every spatial position of every batch element
    is one pair. The top is a scalar:

        loss = 1 / (2 * N * H * W) * sum(label * d^2 + (1 - label) * alpha_dissimilar * f(d))

    with f(d) = max(margin - d^2, 0) for the legacy version and
    f(d) = max(margin - d, 0)^2 otherwise.

    The layer owns its scratch buffers (diff, diff_sq, dist_sq, summer_vec).
    backward reads what the last forward left in them, so it may only be
    called once the layer is in LayerState.READY.
    """

    def __init__(self, config: ContrastiveLossConfig):
        self.config = config
        self.state = LayerState.UNSET

        self.diff: Optional[torch.Tensor] = None      # a_i - b_i
        self.diff_sq: Optional[torch.Tensor] = None   # (a_i - b_i)^2
        self.dist_sq: Optional[torch.Tensor] = None   # ||a_i - b_i||^2 per pair
        self.summer_vec: Optional[torch.Tensor] = None  # ones used to sum along channels
        self.similar: Optional[torch.Tensor] = None   # label mask cached by forward
        self.top_shape = torch.Size([])

        self._input_shapes: Tuple[Tuple[int, ...], Tuple[int, ...]] = ((), ())
        self._buffer_key = None

        if config.legacy_version:
            self._dissimilar_loss = _legacy_dissimilar_loss
            self._dissimilar_scale = _legacy_dissimilar_scale
        else:
            self._dissimilar_loss = _euclidean_dissimilar_loss
            self._dissimilar_scale = _euclidean_dissimilar_scale

    def layer_setup(self, shape_a: Sequence[int], shape_b: Sequence[int], shape_label: Sequence[int],
                    dtype: torch.dtype = None, device=None) -> torch.Size:
        """ Validates the bottom shapes, then reshapes the scratch buffers. Returns the top shape. """
        a, b, label = legacy_shape(shape_a), legacy_shape(shape_b), legacy_shape(shape_label)

        for axis in (0, 1, 2, 3):
            if a[axis] != b[axis]:
                raise ShapeMismatch(
                    f"feature_a and feature_b disagree on {AXIS_NAMES[axis]}: {a[axis]} vs {b[axis]}")
        if label[1] != 1:
            raise ShapeMismatch(f"label must have 1 channel, got {label[1]}")
        for axis in (0, 2, 3):
            if label[axis] != b[axis]:
                raise ShapeMismatch(
                    f"label and features disagree on {AXIS_NAMES[axis]}: {label[axis]} vs {b[axis]}")

        # loss and gradients are averaged over num * height * width pairs
        for axis in (0, 2, 3):
            if a[axis] == 0:
                raise ShapeMismatch(f"Cannot average over an empty batch: {AXIS_NAMES[axis]} is 0")

        self._input_shapes = (tuple(shape_a), tuple(shape_b))
        return self.reshape(shape_a, shape_b, shape_label, dtype=dtype, device=device)

    def reshape(self, shape_a: Sequence[int], shape_b: Sequence[int], shape_label: Sequence[int],
                dtype: torch.dtype = None, device=None) -> torch.Size:
        """
        (Re)allocates the scratch buffers for the given bottom shapes and refills summer_vec.
        Buffers are only reallocated when the shape, dtype or device changes, which
        also invalidates any cached forward.
        """
        num, channels, height, width = legacy_shape(shape_a)
        if dtype is None:
            dtype = self.diff.dtype if self.diff is not None else torch.get_default_dtype()
        if device is None:
            device = self.diff.device if self.diff is not None else torch.device("cpu")
        key = ((num, channels, height, width), dtype, torch.device(device))

        if key != self._buffer_key:
            log.debug(f"Reshaping contrastive loss buffers to {key[0]} ({dtype}, {device})")
            self.diff = torch.empty((num, channels, height, width), dtype=dtype, device=device)
            self.diff_sq = torch.empty_like(self.diff)
            self.dist_sq = torch.empty((num, 1, height, width), dtype=dtype, device=device)
            self.summer_vec = torch.empty(channels, dtype=dtype, device=device)
            self.similar = None
            self.state = LayerState.UNSET
            self._buffer_key = key

        self.summer_vec.fill_(1.0)
        self.top_shape = torch.Size([])
        return self.top_shape

    @torch.no_grad()
    def forward(self, feature_a: torch.Tensor, feature_b: torch.Tensor, label: torch.Tensor) -> torch.Tensor:
        """
        Computes the scalar loss and caches diff / dist_sq / the label mask for backward.

        A label counts as similar when its value cast to an integer is nonzero,
        so 0.7 is dissimilar while 2 and -1 are similar.
        """
        self.layer_setup(feature_a.shape, feature_b.shape, label.shape,
                         dtype=feature_a.dtype, device=feature_a.device)
        margin = self.config.margin
        alpha_dissimilar = self.config.alpha_dissimilar
        num, _, height, width = self.diff.shape
        dim = height * width

        sub(feature_a.reshape(self.diff.shape),
            feature_b.reshape(self.diff.shape).to(self.diff.dtype),
            self.diff)
        powx(self.diff, 2, self.diff_sq)
        channel_sum(self.diff_sq, self.summer_vec, self.dist_sq)

        self.similar = label.reshape(self.dist_sq.shape).to(torch.int64) != 0
        per_pair = torch.where(self.similar,
                               self.dist_sq,
                               alpha_dissimilar * self._dissimilar_loss(self.dist_sq, margin))
        loss = per_pair.sum() / (dim * num * 2)

        self.state = LayerState.READY
        return loss.reshape(self.top_shape)

    @torch.no_grad()
    def backward(self, top_diff, propagate_down: Sequence[bool] = (True, True),
                 grad_a: Optional[torch.Tensor] = None,
                 grad_b: Optional[torch.Tensor] = None) -> Tuple[Optional[torch.Tensor], Optional[torch.Tensor]]:
        """
        Writes d(top_diff * loss)/d(feature) into grad_a / grad_b.

        Args:
            top_diff (float or torch.Tensor): Gradient flowing into the scalar loss.
            propagate_down (Sequence[bool]): Whether feature_a / feature_b need a gradient.
            grad_a, grad_b (torch.Tensor, optional): Contiguous buffers to write into.
                                                     Allocated when missing.
        Returns:
            Tuple of (grad_a, grad_b). A buffer whose flag is False is returned
            as passed, untouched.
        """
        if self.state is not LayerState.READY:
            raise PreconditionViolation(
                "ContrastiveLossLayer.backward requires a preceding forward on the same layer")

        margin = self.config.margin
        alpha_dissimilar = self.config.alpha_dissimilar
        num, _, height, width = self.diff.shape
        dim = height * width
        top = float(top_diff)

        grads = [grad_a, grad_b]
        for i in range(2):
            if not propagate_down[i]:
                continue
            bout = self._gradient_buffer(grads[i], i)
            out = bout.view(self.diff.shape)

            sign = 1.0 if i == 0 else -1.0
            alpha = sign * top / (num * dim)

            # Similar pairs, written for every pair then overwritten for dissimilar ones
            axpby(alpha, self.diff, 0.0, out)

            mdist, beta = self._dissimilar_scale(self.dist_sq, margin, alpha)
            dissimilar = torch.where(mdist > 0.0, self.diff * beta / alpha_dissimilar, 0.0)
            out.copy_(torch.where(self.similar, out, dissimilar))
            grads[i] = bout

        return grads[0], grads[1]

    def _gradient_buffer(self, buffer: Optional[torch.Tensor], index: int) -> torch.Tensor:
        if buffer is None:
            return torch.empty(self._input_shapes[index], dtype=self.diff.dtype, device=self.diff.device)
        if legacy_shape(buffer.shape) != tuple(self.diff.shape):
            raise ShapeMismatch(
                f"Gradient buffer {index} has shape {tuple(buffer.shape)}, expected {tuple(self.diff.shape)}")
        return buffer
