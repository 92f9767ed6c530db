import pytest
import torch
import torch.nn.functional as F

from layer_pkg.config import ContrastiveLossConfig
from layer_pkg.contrastive_loss_layer import ContrastiveLossLayer
from training_pkg.losses import ContrastiveLoss, ContrastiveLossFunction


def embeddings():
    output1 = torch.tensor([[0.3, -0.2, 0.1], [1.0, 0.5, -0.5], [0.2, 0.2, 0.2]], dtype=torch.float64)
    output2 = torch.tensor([[0.0, 0.1, 0.2], [0.2, -0.3, 0.4], [-0.4, 0.1, 0.0]], dtype=torch.float64)
    label = torch.tensor([0.0, 0.0, 1.0], dtype=torch.float64)
    return output1, output2, label


def test_module_matches_layer():
    output1, output2, label = embeddings()
    output1.requires_grad_(True)
    output2.requires_grad_(True)

    loss = ContrastiveLoss(margin=1.0)(output1, output2, label)
    loss.backward()

    layer = ContrastiveLossLayer(ContrastiveLossConfig(margin=1.0))
    expected_loss = layer.forward(output1.detach(), output2.detach(), label)
    grad1, grad2 = layer.backward(1.0)

    assert torch.equal(loss.detach(), expected_loss)
    assert output1.grad.shape == output1.shape
    assert torch.equal(output1.grad, grad1)
    assert torch.equal(output2.grad, grad2)


def test_module_matches_functional_reference():
    output1, output2, label = embeddings()
    output1.requires_grad_(True)
    margin = 1.0

    loss = ContrastiveLoss(margin=margin)(output1, output2, label)
    loss.backward()
    grad = output1.grad.clone()
    output1.grad = None

    distance = F.pairwise_distance(output1, output2, eps=0.0)
    reference = torch.mean(
        (1 - label) * torch.pow(torch.clamp(margin - distance, min=0.0), 2) +
        label * torch.pow(distance, 2)
    ) / 2
    reference.backward()

    assert torch.allclose(loss, reference)
    assert torch.allclose(grad, output1.grad, atol=1e-3)


def test_only_requested_inputs_get_gradients():
    output1, output2, label = embeddings()
    output1.requires_grad_(True)

    ContrastiveLoss()(output1, output2, label).backward()

    assert output1.grad is not None
    assert output2.grad is None


@pytest.mark.parametrize("legacy_version", [True, False])
def test_gradcheck(legacy_version):
    output1, output2, label = embeddings()
    output1.requires_grad_(True)
    output2.requires_grad_(True)
    config = ContrastiveLossConfig(margin=1.0, legacy_version=legacy_version)

    assert torch.autograd.gradcheck(
        lambda a, b: ContrastiveLossFunction.apply(a, b, label, config),
        (output1, output2), atol=1e-3, rtol=1e-3)


def test_each_call_owns_its_state():
    output1, output2, label = embeddings()
    output1.requires_grad_(True)
    loss_fn = ContrastiveLoss()

    first = loss_fn(output1, output2, label)
    loss_fn(output1 * 2, output2, torch.ones(3, dtype=torch.float64))
    first.backward()

    layer = ContrastiveLossLayer(ContrastiveLossConfig())
    layer.forward(output1.detach(), output2, label)
    expected, _ = layer.backward(1.0, (True, False))
    assert torch.equal(output1.grad, expected)


def test_extra_repr():
    assert "legacy_version=True" in repr(ContrastiveLoss(legacy_version=True))
