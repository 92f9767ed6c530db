# data_pkg/datasets.py
import logging
import re
from typing import Dict, List

import pandas as pd
import torch
from torch.utils.data import Dataset

log = logging.getLogger(__name__)

FEATURE_COLUMN = re.compile(r'^([ab])_(\d+)$')


def _feature_columns(columns, prefix: str) -> List[str]:
    """ Returns the '<prefix>_<i>' columns ordered by i. """
    indexed = []
    for col in columns:
        m = FEATURE_COLUMN.match(str(col))
        if m and m.group(1) == prefix:
            indexed.append((int(m.group(2)), col))
    return [col for _, col in sorted(indexed)]


class PairedFeatureDataset(Dataset):
    def __init__(self, csv_file: str):
        """
        Args:
            csv_file (string): Path to a csv file with a 'label' column and feature columns
                               'a_0'..'a_{C-1}' and 'b_0'..'b_{C-1}'.
                               label is 1 for similar pairs, 0 for dissimilar ones.
        """
        try:
            self.data_frame = pd.read_csv(csv_file)
            log.info(f"Successfully loaded {len(self.data_frame)} rows from {csv_file}")
        except FileNotFoundError:
            log.error(f"CSV file not found at {csv_file}")
            raise
        except pd.errors.EmptyDataError:
            log.error(f"CSV file at {csv_file} is empty.")
            raise

        if 'label' not in self.data_frame.columns:
            raise ValueError("CSV file must contain a 'label' column.")

        self.columns_a = _feature_columns(self.data_frame.columns, 'a')
        self.columns_b = _feature_columns(self.data_frame.columns, 'b')
        if not self.columns_a or not self.columns_b:
            raise ValueError("CSV file must contain feature columns 'a_0'.. and 'b_0'..")
        if len(self.columns_a) != len(self.columns_b):
            raise ValueError(f"Feature column count mismatch: {len(self.columns_a)} 'a_*' "
                             f"vs {len(self.columns_b)} 'b_*' columns.")

        self.features1 = torch.tensor(self.data_frame[self.columns_a].to_numpy(), dtype=torch.float)
        self.features2 = torch.tensor(self.data_frame[self.columns_b].to_numpy(), dtype=torch.float)
        self.labels = torch.tensor(self.data_frame['label'].to_numpy(), dtype=torch.float)

    @property
    def feature_dim(self) -> int:
        return len(self.columns_a)

    def __len__(self) -> int:
        return len(self.data_frame)

    def __getitem__(self, idx: int) -> Dict[str, torch.Tensor]:
        if torch.is_tensor(idx):
            idx = idx.tolist()

        sample = {
            'features1': self.features1[idx],
            'features2': self.features2[idx],
            'label': self.labels[idx]
        }
        return sample
