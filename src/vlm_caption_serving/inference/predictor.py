"""
Caption engine: greedy autoregressive BLIP decoding over a shared model registry.
"""

import logging
import time
from typing import Any, Iterator, List

import torch

from vlm_caption_serving.config import BOS_TOKEN_ID, EOS_TOKEN_ID
from vlm_caption_serving.data.preprocessing import preprocess
from vlm_caption_serving.data.tokenization import TokenStreamDecoder, decode_tokens
from vlm_caption_serving.errors import CaptionServiceError, ProcessingFailure
from vlm_caption_serving.models.variants import ModelRegistry, ModelType, ModelVariant

logger = logging.getLogger(__name__)

MAX_STEPS = 1000


class CaptionEngine:
    """
    Generate captions for images with one of the registry's model variants.

    The engine itself holds no per-request state and is shared by all worker
    threads. Each call clones the chosen variant so the decoder cache it
    fills is private to that call.

    Args:
        registry: Frozen model registry.
        tokenizer: Tokenizer matching the models' vocabulary.
        bos_token_id: Token that starts every caption.
        eos_token_id: Token that ends a caption (never included in the output).
        max_steps: Hard cap on decode steps; reaching it truncates the caption.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        tokenizer: Any,
        bos_token_id: int = BOS_TOKEN_ID,
        eos_token_id: int = EOS_TOKEN_ID,
        max_steps: int = MAX_STEPS,
    ) -> None:
        self.registry = registry
        self.tokenizer = tokenizer
        self.bos_token_id = bos_token_id
        self.eos_token_id = eos_token_id
        self.max_steps = max_steps

    def generate(self, model_type: ModelType, image_bytes: bytes) -> str:
        """
        Generate a caption for a single image.

        Args:
            model_type: Which registry variant to use.
            image_bytes: Encoded image in any supported format.

        Returns:
            Generated caption string.

        Raises:
            ImageError: If the bytes cannot be decoded as an image.
            ProcessingFailure: If tensor or model arithmetic fails.
        """
        start = time.perf_counter()
        token_ids = [self.bos_token_id]
        token_ids.extend(self._run(model_type, image_bytes))
        caption = decode_tokens(self.tokenizer, token_ids).strip()
        logger.debug(
            "Generated %d tokens with %s in %.1fms",
            len(token_ids) - 1, model_type.name, (time.perf_counter() - start) * 1000.0,
        )
        return caption

    def stream(self, model_type: ModelType, image_bytes: bytes) -> Iterator[str]:
        """Generate a caption, yielding text fragments as soon as they are stable."""
        decoder = TokenStreamDecoder(self.tokenizer)
        decoder.push(self.bos_token_id)
        for token in self._run(model_type, image_bytes):
            fragment = decoder.push(token)
            if fragment:
                yield fragment
        rest = decoder.flush()
        if rest:
            yield rest

    def _run(self, model_type: ModelType, image_bytes: bytes) -> Iterator[int]:
        variant = self.registry.get_variant(model_type)
        tensor = preprocess(image_bytes).unsqueeze(0)
        try:
            with torch.inference_mode():
                image_embeds = variant.vision_encode(tensor)
            logger.debug("Image embeddings for %s: %s", model_type.name, tuple(image_embeds.shape))
            yield from self._decode(variant.clone(), image_embeds)
        except CaptionServiceError:
            raise
        except (RuntimeError, ValueError, TypeError, IndexError) as e:
            raise ProcessingFailure(str(e), model_id=model_type.name) from e

    def _decode(self, session: ModelVariant, image_embeds: torch.Tensor) -> Iterator[int]:
        """
        Greedy decode loop over a request-private variant.

        Step 0 feeds the whole sequence (just BOS); later steps feed only the
        newest token and rely on the session cache for the prefix. Inference
        mode is entered per step so it is never active across a ``yield``.
        """
        token_ids: List[int] = [self.bos_token_id]
        for step in range(self.max_steps):
            context = token_ids if step == 0 else token_ids[-1:]
            input_ids = torch.tensor([context], dtype=torch.long)
            with torch.inference_mode():
                logits = session.decode_step(input_ids, image_embeds)
                token = int(torch.argmax(logits[0, -1]).item())
            if token == self.eos_token_id:
                return
            token_ids.append(token)
            yield token
        logger.info("Caption truncated at %d decode steps", self.max_steps)
