# check_contrastive_loss.py
import hydra
from omegaconf import DictConfig, OmegaConf
import torch
from torch.utils.data import DataLoader
import logging # For Hydra logging

log = logging.getLogger(__name__)


from layer_pkg.config import ContrastiveLossConfig
from layer_pkg.contrastive_loss_layer import ContrastiveLossLayer
from layer_pkg.gradient_checker import GradientChecker
from data_pkg.datasets import PairedFeatureDataset


def evaluate_dataset(layer, dataloader):
    """ Mean of the per-batch losses over a dataloader of PairedFeatureDataset samples. """
    total_loss = 0.0
    for batch in dataloader:
        loss = layer.forward(batch['features1'], batch['features2'], batch['label'])
        total_loss += loss.item()
    avg_loss = total_loss / len(dataloader)
    log.info(f"Dataset loss: {avg_loss:.6f} over {len(dataloader)} batches")
    return avg_loss


def random_batch(shape, generator=None):
    """ Gaussian float64 feature pair of the given (N, C, H, W) shape with random 0/1 labels. """
    num, _, height, width = shape
    feature_a = torch.randn(*shape, dtype=torch.float64, generator=generator)
    feature_b = torch.randn(*shape, dtype=torch.float64, generator=generator)
    label = torch.randint(0, 2, (num, 1, height, width), generator=generator).to(torch.float64)
    return feature_a, feature_b, label


def run_check(cfg: DictConfig) -> dict:
    torch.manual_seed(cfg.seed)
    generator = torch.Generator().manual_seed(cfg.seed)

    loss_config = ContrastiveLossConfig(**OmegaConf.to_container(cfg.loss, resolve=True))
    layer = ContrastiveLossLayer(loss_config)
    log.info(f"Layer config: {loss_config}")

    summary = {}
    if cfg.data.get("csv_path"):
        log.info(f"Loading pairs from {cfg.data.csv_path}...")
        dataset = PairedFeatureDataset(cfg.data.csv_path)
        dataloader = DataLoader(dataset, batch_size=cfg.data.batch_size, shuffle=False,
                                num_workers=cfg.data.num_workers)
        summary["dataset_loss"] = evaluate_dataset(layer, dataloader)

    shape = tuple(cfg.check.shape)
    feature_a, feature_b, label = random_batch(shape, generator=generator)
    summary["loss"] = layer.forward(feature_a, feature_b, label).item()
    log.info(f"Random batch {shape}: loss {summary['loss']:.6f}")

    checker = GradientChecker(stepsize=cfg.check.stepsize, threshold=cfg.check.threshold)
    result = checker.check(layer, feature_a, feature_b, label)
    summary["max_error"] = result.max_error
    summary["passed"] = result.passed
    if result.passed:
        log.info(f"Gradient check passed (max scaled error {result.max_error:.3e})")
    else:
        log.error(f"Gradient check failed on {len(result.failures)} elements "
                  f"(max scaled error {result.max_error:.3e})")
    return summary


@hydra.main(config_path="conf", config_name="config", version_base=None)
def main(cfg: DictConfig) -> None:
    log.info("--- Configuration ---")
    log.info(OmegaConf.to_yaml(cfg))
    log.info("---------------------")

    summary = run_check(cfg)
    if not summary["passed"]:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
