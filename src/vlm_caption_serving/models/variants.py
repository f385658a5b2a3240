"""
Model variants and the read-only registry that maps model types to them.
"""

from __future__ import annotations

import dataclasses
import logging
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Any, Iterator, Mapping

import torch

from vlm_caption_serving.errors import ModelNotLoaded, RegistryError, ValidationError

logger = logging.getLogger(__name__)


class ModelType(IntEnum):
    """Public model identifiers accepted by the service."""

    BLIP = 0
    BLIP_QUANTIZED = 1

    @classmethod
    def parse(cls, value: Any) -> "ModelType":
        """Accept an enum member, its integer value, a decimal string or a name.

        Raises:
            ValidationError: If the value names no known model type.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValidationError("Invalid model type")
        if isinstance(value, str):
            name = value.strip()
            if name.lstrip("-").isdigit():
                value = int(name)
            elif name.upper() in cls.__members__:
                return cls[name.upper()]
            else:
                raise ValidationError("Invalid model type")
        try:
            return cls(value)
        except (ValueError, TypeError):
            raise ValidationError("Invalid model type") from None


class VariantKind(str, Enum):
    FULL = "full"
    QUANTIZED = "quantized"


# Dynamically quantized int8 kernels only exist on CPU.
_CPU = torch.device("cpu")


@dataclasses.dataclass
class ModelVariant:
    """
    One loaded BLIP captioning model exposing the three decoding capabilities.

    ``model`` is a ``BlipForConditionalGeneration`` (or anything with the same
    ``vision_model`` / ``text_decoder`` surface). The weights are shared and
    never written; ``cache`` holds the text decoder's ``past_key_values`` and
    is the only mutable state, so generation must run on a :meth:`clone`.
    """

    kind: VariantKind
    model: Any
    device: torch.device = _CPU
    cache: Any = dataclasses.field(default=None, repr=False, compare=False)

    @property
    def input_device(self) -> torch.device:
        if self.kind is VariantKind.QUANTIZED:
            return _CPU
        return self.device

    @property
    def input_dtype(self) -> torch.dtype:
        if self.kind is VariantKind.QUANTIZED:
            return torch.float32
        return getattr(self.model, "dtype", torch.float32)

    def vision_encode(self, pixel_values: torch.Tensor) -> torch.Tensor:
        """Encode a (1, 3, H, W) image tensor into patch embeddings."""
        pixel_values = pixel_values.to(device=self.input_device, dtype=self.input_dtype)
        outputs = self.model.vision_model(pixel_values=pixel_values)
        return outputs[0]

    def decode_step(self, input_ids: torch.Tensor, image_embeds: torch.Tensor) -> torch.Tensor:
        """
        Run the text decoder on ``input_ids`` and return the logits.

        Prior context comes from the cache, so after the first step only the
        newest token needs to be passed in.
        """
        outputs = self.model.text_decoder(
            input_ids=input_ids.to(self.input_device),
            encoder_hidden_states=image_embeds,
            past_key_values=self.cache,
            use_cache=True,
            return_dict=True,
        )
        self.cache = outputs.past_key_values
        return outputs.logits

    def reset_cache(self) -> None:
        self.cache = None

    def clone(self) -> "ModelVariant":
        """Return a copy sharing the weights with an empty, private cache."""
        return dataclasses.replace(self, cache=None)


class ModelRegistry(Mapping[ModelType, ModelVariant]):
    """
    Frozen mapping from :class:`ModelType` to a loaded :class:`ModelVariant`.

    Built once at startup and shared by every request without locking.
    Construction fails unless all ``required`` types are present.
    """

    REQUIRED = (ModelType.BLIP, ModelType.BLIP_QUANTIZED)

    def __init__(
        self,
        variants: Mapping[ModelType, ModelVariant],
        required: tuple = REQUIRED,
    ) -> None:
        missing = [t.name for t in required if t not in variants]
        if missing:
            raise RegistryError(f"Missing required model variants: {', '.join(missing)}")
        for model_type, variant in variants.items():
            if variant.cache is not None:
                raise RegistryError(f"Registry entry {model_type.name} must not carry a cache")
        self._variants = MappingProxyType(dict(variants))
        logger.info(
            "Model registry ready: %s",
            ", ".join(f"{t.name}={v.kind.value}@{v.input_device}" for t, v in self._variants.items()),
        )

    def __getitem__(self, model_type: ModelType) -> ModelVariant:
        return self._variants[model_type]

    def __iter__(self) -> Iterator[ModelType]:
        return iter(self._variants)

    def __len__(self) -> int:
        return len(self._variants)

    def get_variant(self, model_type: ModelType) -> ModelVariant:
        try:
            return self._variants[model_type]
        except KeyError:
            raise ModelNotLoaded(getattr(model_type, "name", str(model_type))) from None
