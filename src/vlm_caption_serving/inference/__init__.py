"""
Caption generation over the model registry.
"""

from vlm_caption_serving.inference.predictor import CaptionEngine

__all__ = [
    "CaptionEngine",
]
