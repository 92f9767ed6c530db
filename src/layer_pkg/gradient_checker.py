# layer_pkg/gradient_checker.py
import logging
from dataclasses import dataclass, field
from typing import List, Tuple

import torch

from .contrastive_loss_layer import ContrastiveLossLayer

log = logging.getLogger(__name__)


@dataclass
class GradientCheckResult:
    max_error: float = 0.0
    # (input index, flat element index, analytic, numeric)
    failures: List[Tuple[int, int, float, float]] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.failures


class GradientChecker:
    """
    Compares ContrastiveLossLayer.backward against central finite differences of forward.

    An element passes when |analytic - numeric| <= threshold * max(|analytic|, |numeric|, 1).
    The check runs in the dtype of the inputs, so use float64 inputs for tight thresholds.
    """
    def __init__(self, stepsize: float = 1e-3, threshold: float = 1e-3, top_diff: float = 1.0):
        self.stepsize = stepsize
        self.threshold = threshold
        self.top_diff = top_diff

    def check(self, layer: ContrastiveLossLayer, feature_a: torch.Tensor, feature_b: torch.Tensor,
              label: torch.Tensor) -> GradientCheckResult:
        inputs = (feature_a.detach().clone(memory_format=torch.contiguous_format),
                  feature_b.detach().clone(memory_format=torch.contiguous_format))

        layer.forward(inputs[0], inputs[1], label)
        analytic = [g.clone() for g in layer.backward(self.top_diff, (True, True))]

        result = GradientCheckResult()
        for i, (blob, grad) in enumerate(zip(inputs, analytic)):
            flat = blob.view(-1)
            flat_grad = grad.reshape(-1)
            for j in range(flat.numel()):
                original = flat[j].item()
                flat[j] = original + self.stepsize
                positive = self.top_diff * layer.forward(inputs[0], inputs[1], label).item()
                flat[j] = original - self.stepsize
                negative = self.top_diff * layer.forward(inputs[0], inputs[1], label).item()
                flat[j] = original

                numeric = (positive - negative) / (2.0 * self.stepsize)
                estimated = flat_grad[j].item()
                scale = max(abs(estimated), abs(numeric), 1.0)
                error = abs(estimated - numeric) / scale
                result.max_error = max(result.max_error, error)
                if error > self.threshold:
                    log.warning(f"Gradient mismatch on input {i}, element {j}: "
                                f"analytic {estimated:.6g} vs numeric {numeric:.6g}")
                    result.failures.append((i, j, estimated, numeric))

        # Leave the layer holding the unperturbed forward
        layer.forward(inputs[0], inputs[1], label)
        return result
