"""Farm data IO helpers."""

from .loaders import BatchSpec, FarmData, apply_farm_data, expand_batch, load_farm_data

__all__ = ["BatchSpec", "FarmData", "apply_farm_data", "expand_batch", "load_farm_data"]
