# training_pkg/losses.py
import torch
import torch.nn as nn

from layer_pkg.config import ContrastiveLossConfig
from layer_pkg.contrastive_loss_layer import ContrastiveLossLayer


class ContrastiveLossFunction(torch.autograd.Function):
    """
    Autograd bridge over ContrastiveLossLayer.

    Each call builds its own layer and keeps it on ctx, so the scratch buffers
    backward reads belong to this graph node only.
    """
    @staticmethod
    def forward(ctx, output1: torch.Tensor, output2: torch.Tensor, label: torch.Tensor,
                config: ContrastiveLossConfig) -> torch.Tensor:
        layer = ContrastiveLossLayer(config)
        loss = layer.forward(output1, output2, label)
        ctx.layer = layer
        return loss

    @staticmethod
    def backward(ctx, grad_output: torch.Tensor):
        propagate_down = ctx.needs_input_grad[:2]
        grad1, grad2 = ctx.layer.backward(grad_output, propagate_down)
        # No gradient for the label or the config
        return grad1, grad2, None, None


class ContrastiveLoss(nn.Module):
    """
    Contrastive loss function.
    Based on: http://yann.lecun.com/exdb/publis/pdf/hadsell-chopra-lecun-06.pdf
    """
    def __init__(self, margin: float = 1.0, alpha_dissimilar: float = 1.0, legacy_version: bool = False):
        super(ContrastiveLoss, self).__init__()
        self.config = ContrastiveLossConfig(margin=margin,
                                            alpha_dissimilar=alpha_dissimilar,
                                            legacy_version=legacy_version)

    def forward(self, output1: torch.Tensor, output2: torch.Tensor, label: torch.Tensor) -> torch.Tensor:
        # output1 and output2 are the embeddings of the two inputs, (B, D) or (B, C, H, W)
        # label is 1 if similar, 0 if dissimilar, (B,) or (B, 1, H, W)
        # Similar pairs cost d^2, dissimilar pairs alpha_dissimilar * max(0, margin - d)^2
        # (max(0, margin - d^2) with legacy_version), averaged over pairs and halved
        return ContrastiveLossFunction.apply(output1, output2, label, self.config)

    def extra_repr(self) -> str:
        return (f"margin={self.config.margin}, alpha_dissimilar={self.config.alpha_dissimilar}, "
                f"legacy_version={self.config.legacy_version}")
