"""
Local registry of previously derived palm codes.

Each first-seen hash is stored as a :class:`PalmSample` so that a later
capture with a similar hash is given the same palm code instead of a new
one.  The registry is append-only and scanned linearly in insertion
order; the first sample clearing the similarity threshold wins.

Storage is behind the small :class:`RegistryStore` interface (``load`` and
``append``).  The default store keeps the whole collection as one JSON
array in one file, read and rewritten as a unit.
"""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import List, Optional, Protocol, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .codes import MATCH_THRESHOLD, hash_similarity, mint_palm_code

logger = logging.getLogger(__name__)

ENV_REGISTRY_PATH = "PALM_PAY_REGISTRY"
IMAGE_DIGEST_CHARS = 1000


def _default_registry_file() -> Path:
    base = os.environ.get(ENV_REGISTRY_PATH)
    if base:
        return Path(base)
    return Path(".palm_pay") / "palm_data.json"


class RegistryIOFailure(RuntimeError):
    """The durable registry slot could not be read or written."""


class PalmSample(BaseModel):
    """One registered palm; immutable once created."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    code: str = Field(..., alias="palmCode")
    hash: str = Field(..., alias="palmHash")
    created_at: int = Field(..., alias="timestamp", description="Epoch milliseconds")
    frame_digest: str = Field("", alias="imageData", description="Truncated encoded frame")


class RegistryStore(Protocol):
    def load(self) -> List[PalmSample]: ...

    def append(self, sample: PalmSample) -> None: ...


class MemoryRegistryStore:
    """In-process store; nothing survives the process."""

    def __init__(self, samples: Optional[List[PalmSample]] = None) -> None:
        self._samples: List[PalmSample] = list(samples or [])

    def load(self) -> List[PalmSample]:
        return list(self._samples)

    def append(self, sample: PalmSample) -> None:
        self._samples.append(sample)


class JsonFileRegistryStore:
    """
    Registry persisted as a single JSON array in one file.

    - Missing file: empty registry.
    - Unreadable, corrupt or wrongly shaped content: logged and treated as
      empty.  The next ``append`` rewrites the file with valid content.
    """

    def __init__(self, path: Optional[os.PathLike[str] | str] = None) -> None:
        self._path = Path(path) if path else _default_registry_file()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> List[PalmSample]:
        try:
            return self._read()
        except RegistryIOFailure as exc:
            logger.warning("Palm registry unreadable, treating as empty: %s", exc)
            return []

    def append(self, sample: PalmSample) -> None:
        samples = self.load()
        samples.append(sample)
        payload = [s.model_dump(by_alias=True) for s in samples]
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("w", encoding="utf-8") as f:
                json.dump(payload, f)
        except OSError as exc:
            raise RegistryIOFailure(f"Cannot write {self._path}: {exc}") from exc

    def _read(self) -> List[PalmSample]:
        if not self._path.exists():
            return []
        try:
            with self._path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as exc:
            raise RegistryIOFailure(f"Cannot read {self._path}: {exc}") from exc
        if not isinstance(raw, list):
            raise RegistryIOFailure(f"{self._path} does not hold a JSON array")
        try:
            return [PalmSample.model_validate(item) for item in raw]
        except ValidationError as exc:
            raise RegistryIOFailure(f"Malformed palm sample in {self._path}") from exc


class PalmRegistry:
    """
    Duplicate recognition over a :class:`RegistryStore`.

    Parameters
    ----------
    store:
        Where samples live.  Defaults to :class:`JsonFileRegistryStore`.
    threshold:
        Minimum hash similarity for a capture to count as a returning palm.
    """

    def __init__(
        self,
        store: Optional[RegistryStore] = None,
        threshold: float = MATCH_THRESHOLD,
    ) -> None:
        self.store = store if store is not None else JsonFileRegistryStore()
        self.threshold = threshold

    def samples(self) -> List[PalmSample]:
        return self.store.load()

    def find_match(self, palm_hash: str) -> Optional[PalmSample]:
        """First registered sample whose hash similarity clears the threshold."""
        for sample in self.store.load():
            if hash_similarity(palm_hash, sample.hash) >= self.threshold:
                return sample
        return None

    def resolve(self, palm_hash: str, frame_digest: str = "") -> Tuple[str, bool]:
        """
        Return ``(palm_code, is_new)`` for a captured hash.

        A recognised hash yields the stored code and leaves the registry
        untouched.  Otherwise a new code is minted and appended.
        """
        existing = self.find_match(palm_hash)
        if existing is not None:
            logger.info("Palm recognised – reusing code %s…", existing.code[:10])
            return existing.code, False

        sample = PalmSample(
            code=mint_palm_code(),
            hash=palm_hash,
            created_at=int(time.time() * 1000),
            frame_digest=frame_digest[:IMAGE_DIGEST_CHARS],
        )
        try:
            self.store.append(sample)
        except RegistryIOFailure as exc:
            # The code is still valid for this checkout; it just won't be recognised later.
            logger.error("Could not persist new palm sample: %s", exc)
            return sample.code, True
        logger.info("New palm registered – code %s…", sample.code[:10])
        return sample.code, True
