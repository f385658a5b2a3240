"""
Shared fixtures: a word-level tokenizer, scripted BLIP stand-ins and a fake engine.
"""

import asyncio
import io
import threading
import time
from types import SimpleNamespace

import pytest
import torch
from PIL import Image
from tokenizers import Tokenizer
from tokenizers.models import WordLevel

from vlm_caption_serving.data.preprocessing import preprocess
from vlm_caption_serving.errors import ProcessingFailure
from vlm_caption_serving.models.variants import ModelRegistry, ModelType, ModelVariant, VariantKind

# Small caption vocabulary; BOS/EOS/UNK are registered as special tokens.
CAPTION_VOCAB = {"[BOS]": 0, "[EOS]": 1, "a": 2, "dog": 3, "on": 4, "grass": 5, "[UNK]": 6}
BOS, EOS = 0, 1

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def make_tokenizer(vocab, special=()):
    tokenizer = Tokenizer(WordLevel(vocab=dict(vocab), unk_token="[UNK]"))
    if special:
        tokenizer.add_special_tokens(list(special))
    return tokenizer


@pytest.fixture
def caption_tokenizer():
    return make_tokenizer(CAPTION_VOCAB, special=["[BOS]", "[EOS]", "[UNK]"])


def png_bytes(size=(64, 48), color=(0, 128, 255)):
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def image_bytes():
    return png_bytes()


class ScriptedDecoder:
    """Text decoder stand-in emitting a fixed token script, one token per step."""

    def __init__(self, script, vocab_size=len(CAPTION_VOCAB), fail_at=None):
        self.script = list(script)
        self.vocab_size = vocab_size
        self.fail_at = fail_at
        self.calls = []

    def __call__(self, input_ids, encoder_hidden_states, past_key_values=None, use_cache=True, return_dict=True):
        step = len(self.calls)
        past = past_key_values or 0
        self.calls.append({
            "length": input_ids.shape[1],
            "past": past,
            "inference_mode": torch.is_inference_mode_enabled(),
        })
        if self.fail_at is not None and step == self.fail_at:
            raise RuntimeError("mat1 and mat2 shapes cannot be multiplied")
        token = self.script[min(step, len(self.script) - 1)]
        logits = torch.zeros(1, input_ids.shape[1], self.vocab_size)
        logits[0, -1, token] = 1.0
        # The "cache" is the number of positions seen so far.
        return SimpleNamespace(logits=logits, past_key_values=past + input_ids.shape[1])


class ScriptedBlip:
    """Minimal object with the ``vision_model`` / ``text_decoder`` surface of BLIP."""

    dtype = torch.float32

    def __init__(self, decoder):
        self.text_decoder = decoder
        self.pixel_shapes = []

    def vision_model(self, pixel_values):
        self.pixel_shapes.append(tuple(pixel_values.shape))
        return (torch.zeros(1, 4, 8),)


def make_registry(script, fail_at=None):
    full = ScriptedBlip(ScriptedDecoder(script, fail_at=fail_at))
    quantized = ScriptedBlip(ScriptedDecoder(script, fail_at=fail_at))
    return ModelRegistry({
        ModelType.BLIP: ModelVariant(kind=VariantKind.FULL, model=full),
        ModelType.BLIP_QUANTIZED: ModelVariant(kind=VariantKind.QUANTIZED, model=quantized),
    })


class FakeEngine:
    """
    Engine stand-in that records concurrency.

    ``image`` bytes double as the caption, except ``b"boom"`` (processing
    failure), ``b"crash"`` (unexpected worker error) and anything starting
    with the PNG signature, which goes through real preprocessing. When
    ``block`` is set, workers wait on ``release`` before finishing; images
    starting with ``b"slow"`` also wait on ``slow``.
    """

    def __init__(self, block=False):
        self.calls = []
        self.running = 0
        self.max_running = 0
        self.release = threading.Event()
        if not block:
            self.release.set()
        self.slow = threading.Event()
        self._lock = threading.Lock()

    def generate(self, model_type, image):
        with self._lock:
            self.calls.append((model_type, image))
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            self.release.wait(timeout=5)
            if image.startswith(b"slow"):
                self.slow.wait(timeout=5)
            if image.startswith(PNG_SIGNATURE):
                preprocess(image)
            if image == b"boom":
                raise ProcessingFailure("bad tensor", model_id=model_type.name)
            if image == b"crash":
                raise KeyError("worker state")
            return f"caption for {image.decode()}"
        finally:
            with self._lock:
                self.running -= 1


@pytest.fixture
def engine():
    engine = FakeEngine()
    yield engine
    engine.slow.set()


@pytest.fixture
def blocking_engine():
    engine = FakeEngine(block=True)
    yield engine
    engine.release.set()


async def wait_for(predicate, timeout=5.0):
    """Poll ``predicate`` on the event loop until it holds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
