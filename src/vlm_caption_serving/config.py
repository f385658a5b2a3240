"""
Service configuration loaded from YAML with ``CAPTION_`` environment overrides.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import torch
import yaml

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "CONFIG_PATH"
DEFAULT_CONFIG_PATH = "configs/service.yaml"
ENV_PREFIX = "CAPTION_"

# BLIP text decoder special tokens: [DEC] starts generation, [SEP] ends it.
BOS_TOKEN_ID = 30522
EOS_TOKEN_ID = 102

_DEFAULT_MODELS: List[Dict[str, Any]] = [
    {
        "variant": "BLIP",
        "repository": "Salesforce/blip-image-captioning-large",
        "quantize": False,
    },
    {
        "variant": "BLIP_QUANTIZED",
        "repository": "Salesforce/blip-image-captioning-large",
        "quantize": True,
    },
]


@dataclass
class ServiceConfig:
    """
    Runtime configuration for the caption service.

    Every scalar field can be overridden with an environment variable named
    ``CAPTION_<FIELD_NAME_UPPERCASE>``.
    """

    host: str = "0.0.0.0"
    port: int = 50051
    device: str = "auto"
    log_level: str = "INFO"

    max_concurrent_requests: int = 16
    outbound_capacity: int = 128
    max_image_bytes: int = 12 * 1024 * 1024

    max_steps: int = 1000
    bos_token_id: int = BOS_TOKEN_ID
    eos_token_id: int = EOS_TOKEN_ID

    cache_dir: Optional[str] = None
    hf_token: Optional[str] = None
    models: List[Dict[str, Any]] = field(default_factory=lambda: [dict(m) for m in _DEFAULT_MODELS])

    def __post_init__(self):
        self._apply_env_overrides()
        if self.max_concurrent_requests < 1:
            raise ValueError("max_concurrent_requests must be at least 1")
        if self.outbound_capacity < 1:
            raise ValueError("outbound_capacity must be at least 1")

    def _apply_env_overrides(self):
        for f in fields(self):
            if f.name == "models":
                continue
            env_value = os.environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if env_value is None:
                continue
            current = getattr(self, f.name)
            if isinstance(current, int):
                setattr(self, f.name, int(env_value))
            else:
                setattr(self, f.name, env_value)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        return cls(**{k: v for k, v in data.items() if k in known})


def load_config(path: Optional[Union[str, Path]] = None) -> ServiceConfig:
    """
    Load the service config from YAML.

    Args:
        path: Config file. Defaults to ``$CONFIG_PATH`` or ``configs/service.yaml``.

    Returns:
        ServiceConfig with environment overrides applied. A missing file
        yields the defaults.
    """
    path = Path(path or os.getenv(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH))
    if not path.exists():
        logger.info("Config file %s not found, using defaults", path)
        return ServiceConfig()
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return ServiceConfig.from_dict(data)


def select_device(preference: str = "auto") -> torch.device:
    """
    Resolve a device preference to a torch.device.

    ``auto`` picks CUDA, then Apple MPS, then CPU.
    """
    preference = (preference or "auto").lower()
    if preference != "auto":
        return torch.device(preference)
    if torch.cuda.is_available():
        return torch.device("cuda", 0)
    if torch.backends.mps.is_available():
        return torch.device("mps")
    logger.info("No GPU available, running on CPU")
    return torch.device("cpu")
