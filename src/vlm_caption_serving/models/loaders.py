"""
Load BLIP captioning variants and the tokenizer into a model registry.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union
import logging

import torch
from transformers import AutoTokenizer, BlipForConditionalGeneration

from vlm_caption_serving.config import ServiceConfig, select_device
from vlm_caption_serving.models.catalog import CatalogEntry, ModelCatalog
from vlm_caption_serving.models.variants import ModelRegistry, ModelType, ModelVariant, VariantKind

logger = logging.getLogger(__name__)


def quantize_model(model: torch.nn.Module) -> torch.nn.Module:
    """Apply int8 dynamic quantization to every ``nn.Linear`` (CPU only)."""
    return torch.ao.quantization.quantize_dynamic(model, {torch.nn.Linear}, dtype=torch.qint8)


def load_variant(
    entry: CatalogEntry,
    model_dir: Union[str, Path],
    device: torch.device,
    torch_dtype: Optional[torch.dtype] = None,
) -> ModelVariant:
    """
    Load one BLIP checkpoint as a model variant.

    Args:
        entry: Catalog entry describing the variant.
        model_dir: Local snapshot directory with config and weights.
        device: Target device for full-precision variants.
        torch_dtype: Weight dtype for full-precision variants (default float32).

    Returns:
        ModelVariant in eval mode with an empty cache.
    """
    if entry.quantize:
        model = BlipForConditionalGeneration.from_pretrained(str(model_dir), torch_dtype=torch.float32)
        model.eval()
        model = quantize_model(model)
        variant = ModelVariant(kind=VariantKind.QUANTIZED, model=model, device=torch.device("cpu"))
    else:
        model = BlipForConditionalGeneration.from_pretrained(
            str(model_dir), torch_dtype=torch_dtype or torch.float32,
        )
        model.to(device)
        model.eval()
        variant = ModelVariant(kind=VariantKind.FULL, model=model, device=device)

    total_params = sum(p.numel() for p in model.parameters())
    logger.info(
        "Loaded %s (%s) from %s: %d float params on %s",
        entry.variant.name, variant.kind.value, model_dir, total_params, variant.input_device,
    )
    return variant


def load_registry(
    config: ServiceConfig,
    catalog: Optional[ModelCatalog] = None,
) -> Tuple[ModelRegistry, Any]:
    """
    Resolve every catalog entry, load the variants and the tokenizer.

    The tokenizer comes from the first full-precision entry (all BLIP
    captioning checkpoints share the same vocabulary).

    Returns:
        (registry, tokenizer)

    Raises:
        CatalogError: If a snapshot cannot be resolved.
        RegistryError: If a required variant is not configured.
    """
    catalog = catalog or ModelCatalog.from_config(config)
    device = select_device(config.device)
    logger.info("Loading %d model variants on %s", len(catalog.entries), device)

    resolved = catalog.resolve_all()
    variants: Dict[ModelType, ModelVariant] = {
        entry.variant: load_variant(entry, model_dir, device)
        for entry, model_dir in resolved.items()
    }
    registry = ModelRegistry(variants)

    tokenizer_dir = next(
        (d for e, d in resolved.items() if not e.quantize),
        next(iter(resolved.values())),
    )
    tokenizer = AutoTokenizer.from_pretrained(str(tokenizer_dir))
    return registry, tokenizer
