"""Built-in job handlers.

Each handler reads its inputs from the payload and the content store,
calls the providers, and writes derived artifacts back. Writes replace
earlier artifacts rather than appending, so a retried attempt leaves the
same state as a single successful one.
"""

import logging
from typing import Any, Dict, List

from .jobs.backends import ContentStore
from .jobs.models import JobType
from .jobs.registry import FatalJobError, HandlerRegistry, ProgressCallback, TransientJobError
from .models import PipelineConfig
from .providers import Providers

logger = logging.getLogger(__name__)

EMBED_BATCH_SIZE = 64


def chunk_text(text: str, chunk_size: int, overlap: int) -> List[str]:
    """Split text into overlapping character windows.

    Args:
        text: Source text
        chunk_size: Characters per chunk
        overlap: Characters shared by consecutive chunks (< chunk_size)

    Returns:
        Non-empty chunks in order; [] for blank text
    """
    text = text.strip()
    if not text:
        return []

    step = max(1, chunk_size - overlap)
    chunks = []
    for start in range(0, len(text), step):
        piece = text[start:start + chunk_size].strip()
        if piece:
            chunks.append(piece)
        if start + chunk_size >= len(text):
            break
    return chunks


def _require(payload: Dict[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value in (None, ""):
        raise FatalJobError(f"Payload is missing '{key}'")
    return value


class ContentHandlers:
    """Handlers for every JobType, bound to one content store and provider set."""

    def __init__(self, contents: ContentStore, providers: Providers, config: PipelineConfig):
        self.contents = contents
        self.providers = providers
        self.config = config

    def register_all(self, registry: HandlerRegistry) -> HandlerRegistry:
        registry.register(JobType.EXTRACT_AUDIO, self.extract_audio)
        registry.register(JobType.TRANSCRIBE, self.transcribe)
        registry.register(JobType.EXTRACT_TEXT_PDF, self.extract_text_pdf)
        registry.register(JobType.EXTRACT_TEXT_DOCX, self.extract_text_docx)
        registry.register(JobType.PROCESS_TEXT_NOTE, self.process_text_note)
        registry.register(JobType.DOC_GENERATE, self.doc_generate)
        registry.register(JobType.GENERATE_EMBEDDINGS, self.generate_embeddings)
        registry.register(JobType.EXTRACT_FRAMES, self.extract_frames)
        for job_type in (
            JobType.SYNC_CONNECTOR,
            JobType.PROCESS_IMPORTED_DOC,
            JobType.PROCESS_WEBHOOK,
            JobType.EXPORT_USER_DATA,
        ):
            registry.register(job_type, self._integration(job_type))
        return registry

    # --- media ---

    async def extract_audio(self, payload: Dict[str, Any], progress: ProgressCallback) -> Dict[str, Any]:
        content_id = _require(payload, "content_id")
        storage_path = _require(payload, "storage_path")

        progress(10, "Extracting audio track")
        audio_path = await self.providers.extract_audio(storage_path)
        self.contents.update_metadata(content_id, {"audio_path": audio_path})
        return {"audio_path": audio_path}

    async def transcribe(self, payload: Dict[str, Any], progress: ProgressCallback) -> Dict[str, Any]:
        content_id = _require(payload, "content_id")
        content = self.contents.get(content_id)
        if content is None:
            raise FatalJobError(f"Content {content_id} no longer exists")

        source = content.metadata.get("audio_path") or _require(payload, "storage_path")
        progress(10, "Transcribing audio")
        transcript = await self.providers.transcribe(source)

        text = (transcript or {}).get("text")
        if text is None:
            raise TransientJobError("Transcription returned no text")
        segments = transcript.get("segments") or []

        self.contents.save_transcript(content_id, text, segments)
        progress(90, f"Transcript saved ({len(segments)} segments)")
        return {"characters": len(text), "segments": len(segments)}

    # --- documents and notes ---

    async def _save_extracted(self, content_id: str, text: str, progress: ProgressCallback) -> Dict[str, Any]:
        if not text or not text.strip():
            raise FatalJobError("No text could be extracted")
        self.contents.save_transcript(content_id, text)
        progress(90, "Text saved")
        return {"characters": len(text)}

    async def extract_text_pdf(self, payload: Dict[str, Any], progress: ProgressCallback) -> Dict[str, Any]:
        content_id = _require(payload, "content_id")
        storage_path = _require(payload, "storage_path")
        progress(10, "Extracting PDF text")
        text = await self.providers.extract_pdf_text(storage_path)
        return await self._save_extracted(content_id, text, progress)

    async def extract_text_docx(self, payload: Dict[str, Any], progress: ProgressCallback) -> Dict[str, Any]:
        content_id = _require(payload, "content_id")
        storage_path = _require(payload, "storage_path")
        progress(10, "Extracting DOCX text")
        text = await self.providers.extract_docx_text(storage_path)
        return await self._save_extracted(content_id, text, progress)

    async def process_text_note(self, payload: Dict[str, Any], progress: ProgressCallback) -> Dict[str, Any]:
        content_id = _require(payload, "content_id")
        text = payload.get("text")
        if text is None:
            progress(10, "Loading note")
            text = await self.providers.read_text(_require(payload, "storage_path"))
        return await self._save_extracted(content_id, text, progress)

    async def doc_generate(self, payload: Dict[str, Any], progress: ProgressCallback) -> Dict[str, Any]:
        content_id = _require(payload, "content_id")
        transcript = self.contents.get_transcript(content_id)
        if transcript is None or not transcript["text"].strip():
            raise FatalJobError("No transcript available for document generation")

        content = self.contents.get(content_id)
        title = content.title if content else None

        progress(10, "Generating document")
        markdown = await self.providers.generate_document(transcript["text"], title)
        if not markdown or not markdown.strip():
            raise TransientJobError("Document generation returned an empty document")

        self.contents.save_document(content_id, markdown)
        return {"characters": len(markdown)}

    async def generate_embeddings(self, payload: Dict[str, Any], progress: ProgressCallback) -> Dict[str, Any]:
        content_id = _require(payload, "content_id")
        size = self.config.embeddings.chunk_size
        overlap = self.config.embeddings.chunk_overlap

        pieces = []
        transcript = self.contents.get_transcript(content_id)
        if transcript:
            pieces.extend(("transcript", c) for c in chunk_text(transcript["text"], size, overlap))
        document = self.contents.get_document(content_id)
        if document:
            pieces.extend(("document", c) for c in chunk_text(document["markdown"], size, overlap))

        if not pieces:
            raise FatalJobError("No transcript or document to embed")

        vectors: List[List[float]] = []
        for start in range(0, len(pieces), EMBED_BATCH_SIZE):
            batch = [text for _, text in pieces[start:start + EMBED_BATCH_SIZE]]
            batch_vectors = await self.providers.embed(batch)
            if len(batch_vectors) != len(batch):
                raise TransientJobError(
                    f"Embedding provider returned {len(batch_vectors)} vectors for {len(batch)} chunks"
                )
            vectors.extend(batch_vectors)
            done = start + len(batch)
            progress(int(90 * done / len(pieces)), f"Embedded {done}/{len(pieces)} chunks")

        stored = self.contents.replace_chunks(
            content_id,
            (
                {"source": source, "text": text, "embedding": vector}
                for (source, text), vector in zip(pieces, vectors)
            ),
        )
        return {"chunks": stored}

    async def extract_frames(self, payload: Dict[str, Any], progress: ProgressCallback) -> Dict[str, Any]:
        """Extract and describe frames.

        Description failures are per frame: the job succeeds with the
        frames it could describe and lists the rest under ``failures``.
        """
        content_id = _require(payload, "content_id")
        storage_path = _require(payload, "storage_path")

        progress(5, "Extracting frames")
        frames = await self.providers.extract_frames(storage_path)

        described = []
        failures = []
        for i, frame in enumerate(frames, start=1):
            row = dict(frame)
            try:
                row["description"] = await self.providers.describe_frame(frame["storage_path"])
            except Exception as e:
                logger.warning("Frame %s of %s could not be described: %s",
                               frame.get("frame_number"), content_id, e)
                failures.append({"frame_number": frame.get("frame_number"), "error": str(e)})
                row["description"] = None
            described.append(row)
            progress(5 + int(85 * i / len(frames)), f"Described {i}/{len(frames)} frames")

        stored = self.contents.replace_frames(content_id, described)
        return {
            "frames": stored,
            "described": stored - len(failures),
            "failures": failures,
        }

    # --- integrations ---

    def _integration(self, job_type: JobType):
        async def run(payload: Dict[str, Any], progress: ProgressCallback) -> Dict[str, Any]:
            progress(10, f"Running {job_type.value}")
            return await self.providers.run_integration(job_type.value, payload)

        run.__name__ = job_type.value
        return run
