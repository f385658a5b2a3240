"""
Image preprocessing and token decoding for BLIP captioning.
"""

from vlm_caption_serving.data.preprocessing import create_tensor, load_image, preprocess
from vlm_caption_serving.data.tokenization import TokenStreamDecoder, decode_tokens

__all__ = [
    "create_tensor",
    "load_image",
    "preprocess",
    "TokenStreamDecoder",
    "decode_tokens",
]
