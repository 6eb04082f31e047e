"""
Brain persistence backends.

A backend stores a flat ``name -> ndarray`` parameter dict. Failures are
logged and reported through the return value; callers keep running with their
in-memory parameters.
"""

import logging
import os
from typing import Dict, Optional

import numpy as np

logger = logging.getLogger(__name__)


class BrainStore:
    """Interface: ``save(params, path) -> bool`` and ``load(path) -> params | None``."""

    def save(self, params: Dict[str, np.ndarray], path: str) -> bool:
        raise NotImplementedError

    def load(self, path: str) -> Optional[Dict[str, np.ndarray]]:
        raise NotImplementedError


class NpzBrainStore(BrainStore):
    """Stores parameters as a single uncompressed ``.npz`` archive."""

    @staticmethod
    def _resolve(path: str) -> str:
        return path if path.endswith('.npz') else path + '.npz'

    def save(self, params: Dict[str, np.ndarray], path: str) -> bool:
        path = self._resolve(path)
        try:
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            np.savez(path, **params)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to save brain to {path}: {e}")
            return False
        logger.info(f"Saved brain to {path}")
        return True

    def load(self, path: str) -> Optional[Dict[str, np.ndarray]]:
        path = self._resolve(path)
        if not os.path.exists(path):
            logger.info(f"No saved brain at {path}")
            return None
        try:
            with np.load(path) as data:
                params = {key: data[key] for key in data.files}
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load brain from {path}: {e}")
            return None
        logger.info(f"Loaded brain from {path}")
        return params
