from pathlib import Path

import pytest
import torch
from hydra import compose, initialize_config_dir
from omegaconf import OmegaConf

import check_contrastive_loss
from check_contrastive_loss import random_batch, run_check
from layer_pkg.config import ContrastiveLossConfig
from layer_pkg.contrastive_loss_layer import ContrastiveLossLayer


def make_cfg(csv_path=None, legacy_version=False):
    return OmegaConf.create({
        "seed": 42,
        "loss": {"margin": 1.0, "alpha_dissimilar": 1.0, "legacy_version": legacy_version},
        "check": {"shape": [2, 3, 1, 1], "stepsize": 1e-3, "threshold": 1e-2},
        "data": {"csv_path": csv_path, "batch_size": 2, "num_workers": 0},
    })


@pytest.mark.parametrize("legacy_version", [True, False])
def test_run_check_passes_on_random_batch(legacy_version):
    summary = run_check(make_cfg(legacy_version=legacy_version))

    assert summary["passed"]
    assert summary["loss"] >= 0.0
    assert "dataset_loss" not in summary


def test_run_check_evaluates_dataset(tmp_path):
    csv_file = tmp_path / "pairs.csv"
    # Two similar pairs at d^2 = 1, then one dissimilar pair beyond the margin
    csv_file.write_text("label,a_0,a_1,b_0,b_1\n"
                        "1,1.0,0.0,0.0,0.0\n"
                        "1,0.0,1.0,0.0,0.0\n"
                        "0,3.0,0.0,0.0,0.0\n")

    summary = run_check(make_cfg(csv_path=str(csv_file)))

    # Batch losses 2 / 4 = 0.5 and 0 / 2 = 0
    assert summary["dataset_loss"] == pytest.approx(0.25)


def test_random_batch_follows_the_generator():
    first = random_batch((2, 3, 1, 1), generator=torch.Generator().manual_seed(7))
    second = random_batch((2, 3, 1, 1), generator=torch.Generator().manual_seed(7))

    for x, y in zip(first, second):
        assert torch.equal(x, y)


def test_run_check_draws_its_batch_from_the_seeded_generator():
    cfg = make_cfg()
    feature_a, feature_b, label = random_batch((2, 3, 1, 1), generator=torch.Generator().manual_seed(cfg.seed))
    expected = ContrastiveLossLayer(ContrastiveLossConfig()).forward(feature_a, feature_b, label).item()

    torch.manual_seed(1234)
    summary = run_check(cfg)

    assert summary["loss"] == expected


def test_config_ships_beside_the_entry_script():
    conf_dir = Path(check_contrastive_loss.__file__).parent / "conf"

    with initialize_config_dir(config_dir=str(conf_dir), version_base=None):
        cfg = compose(config_name="config")

    assert cfg.loss.margin == 1.0
    assert list(cfg.check.shape) == [2, 3, 1, 1]
    assert cfg.data.csv_path is None
    assert run_check(cfg)["passed"]
