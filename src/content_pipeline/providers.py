"""External AI and storage collaborators used by the built-in handlers.

The orchestrator never talks to providers directly; handlers do. A
deployment plugs in its own implementation through ``providers.factory``
in config (``"package.module:callable"``).
"""

import importlib
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .jobs.registry import FatalJobError

logger = logging.getLogger(__name__)


class Providers(ABC):
    """Interface to transcription, generation, embedding and storage services.

    Raise TransientJobError (or let network/timeout errors propagate) for
    failures worth retrying; raise FatalJobError for bad input.
    """

    @abstractmethod
    async def extract_audio(self, storage_path: str) -> str:
        """Extract the audio track of a video; returns the audio storage path."""

    @abstractmethod
    async def transcribe(self, audio_path: str) -> Dict[str, Any]:
        """Returns {'text': str, 'segments': [{'start', 'end', 'text'}, ...]}."""

    @abstractmethod
    async def extract_pdf_text(self, storage_path: str) -> str:
        ...

    @abstractmethod
    async def extract_docx_text(self, storage_path: str) -> str:
        ...

    @abstractmethod
    async def read_text(self, storage_path: str) -> str:
        ...

    @abstractmethod
    async def generate_document(self, transcript: str, title: Optional[str] = None) -> str:
        """Turn a transcript into a markdown document."""

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        """One embedding vector per input text, same order."""

    @abstractmethod
    async def extract_frames(self, storage_path: str) -> List[Dict[str, Any]]:
        """Returns [{'frame_number', 'time_sec', 'storage_path'}, ...]."""

    @abstractmethod
    async def describe_frame(self, frame_path: str) -> str:
        ...

    @abstractmethod
    async def run_integration(self, job_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Connector sync, imported document, webhook and export jobs."""


class UnconfiguredProviders(Providers):
    """Placeholder used when no provider factory is configured.

    Every call fails the job permanently with a configuration message.
    """

    def _fail(self, what: str):
        raise FatalJobError(f"No provider configured for {what} (set providers.factory)")

    async def extract_audio(self, storage_path: str) -> str:
        self._fail("audio extraction")

    async def transcribe(self, audio_path: str) -> Dict[str, Any]:
        self._fail("transcription")

    async def extract_pdf_text(self, storage_path: str) -> str:
        self._fail("PDF text extraction")

    async def extract_docx_text(self, storage_path: str) -> str:
        self._fail("DOCX text extraction")

    async def read_text(self, storage_path: str) -> str:
        self._fail("text storage")

    async def generate_document(self, transcript: str, title: Optional[str] = None) -> str:
        self._fail("document generation")

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self._fail("embeddings")

    async def extract_frames(self, storage_path: str) -> List[Dict[str, Any]]:
        self._fail("frame extraction")

    async def describe_frame(self, frame_path: str) -> str:
        self._fail("frame description")

    async def run_integration(self, job_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._fail(job_type)


def load_providers(factory: Optional[str]) -> Providers:
    """Build providers from a ``"module:callable"`` import string.

    Raises:
        ValueError: Malformed import string
        TypeError: Factory did not return a Providers instance
    """
    if not factory:
        logger.warning("No providers.factory configured; every handler will fail")
        return UnconfiguredProviders()

    module_name, sep, attr = factory.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"providers.factory must look like 'module:callable', got {factory!r}")

    module = importlib.import_module(module_name)
    providers = getattr(module, attr)()
    if not isinstance(providers, Providers):
        raise TypeError(f"{factory} returned {type(providers).__name__}, not Providers")

    logger.info("Loaded providers from %s", factory)
    return providers
