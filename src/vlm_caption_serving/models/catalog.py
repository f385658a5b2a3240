"""
Model catalog: resolve configured Hugging Face repositories to local snapshots.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from huggingface_hub import snapshot_download

from vlm_caption_serving.errors import CatalogError, ValidationError
from vlm_caption_serving.models.variants import ModelType

logger = logging.getLogger(__name__)

# Only what from_pretrained needs: config, weights, tokenizer files.
_ALLOW_PATTERNS = ["*.json", "*.safetensors", "*.txt"]


@dataclass(frozen=True)
class CatalogEntry:
    """One ``models:`` entry of the service config."""

    variant: ModelType
    repository: str
    revision: Optional[str] = None
    quantize: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CatalogEntry":
        try:
            variant = ModelType.parse(data["variant"])
            repository = data["repository"]
        except KeyError as e:
            raise ValueError(f"Catalog entry is missing {e.args[0]!r}: {data}") from None
        except ValidationError:
            raise ValueError(f"Unknown model variant in catalog entry: {data['variant']!r}") from None
        return cls(
            variant=variant,
            repository=repository,
            revision=data.get("revision"),
            quantize=bool(data.get("quantize", False)),
        )


class ModelCatalog:
    """
    Download (or reuse cached) model snapshots for each catalog entry.

    Args:
        entries: Catalog entries, at most one per model variant.
        cache_dir: Hugging Face cache directory override.
        token: Hugging Face access token for gated repositories.
        downloader: Callable with the ``snapshot_download`` signature.
    """

    def __init__(
        self,
        entries: Iterable[CatalogEntry],
        cache_dir: Optional[str] = None,
        token: Optional[str] = None,
        downloader: Callable[..., str] = snapshot_download,
    ) -> None:
        self.entries: List[CatalogEntry] = list(entries)
        seen = set()
        for entry in self.entries:
            if entry.variant in seen:
                raise ValueError(f"Duplicate catalog entry for {entry.variant.name}")
            seen.add(entry.variant)
        self.cache_dir = cache_dir
        self.token = token
        self._downloader = downloader

    @classmethod
    def from_config(cls, config: Any) -> "ModelCatalog":
        """Build the catalog from a :class:`ServiceConfig`."""
        return cls(
            [CatalogEntry.from_dict(m) for m in config.models],
            cache_dir=config.cache_dir,
            token=config.hf_token,
        )

    def fetch(self, entry: CatalogEntry) -> Path:
        """
        Resolve one entry to a local directory.

        Raises:
            CatalogError: If the snapshot cannot be downloaded or found.
        """
        logger.info(
            "Resolving %s from %s (revision=%s)",
            entry.variant.name, entry.repository, entry.revision or "main",
        )
        try:
            path = self._downloader(
                repo_id=entry.repository,
                revision=entry.revision,
                cache_dir=self.cache_dir,
                token=self.token,
                allow_patterns=_ALLOW_PATTERNS,
            )
        except Exception as e:
            raise CatalogError(entry.repository, str(e)) from e
        return Path(path)

    def resolve_all(self) -> Dict[CatalogEntry, Path]:
        return {entry: self.fetch(entry) for entry in self.entries}
