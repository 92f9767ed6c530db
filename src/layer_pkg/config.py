# layer_pkg/config.py
from dataclasses import dataclass

@dataclass
class ContrastiveLossConfig:
    """
    Configuration for the ContrastiveLossLayer.
    """
    margin: float = 1.0            # Distance beyond which dissimilar pairs stop contributing
    alpha_dissimilar: float = 1.0  # Weight of the dissimilar-pair term and its gradient
    legacy_version: bool = False   # True: max(margin - d^2, 0). False: max(margin - d, 0)^2

    def __post_init__(self):
        if self.margin <= 0:
            raise ValueError(f"margin must be positive, got {self.margin}")
        if self.alpha_dissimilar <= 0:
            raise ValueError(f"alpha_dissimilar must be positive, got {self.alpha_dissimilar}")
