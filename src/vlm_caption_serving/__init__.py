"""
vlm-caption-serving: Serve BLIP image captions with bounded concurrency.

Subpackages:
- data: image preprocessing and incremental token decoding
- models: model types, variants, registry, catalog and loading
- inference: greedy caption generation engine
- serving: admission gate, request service, FastAPI transport
"""

__version__ = "0.1.0"
