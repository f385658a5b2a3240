"""
Model types, loaded variants and the model catalog.
"""

from vlm_caption_serving.models.catalog import CatalogEntry, ModelCatalog
from vlm_caption_serving.models.variants import ModelRegistry, ModelType, ModelVariant, VariantKind

__all__ = [
    "CatalogEntry",
    "ModelCatalog",
    "ModelRegistry",
    "ModelType",
    "ModelVariant",
    "VariantKind",
]
