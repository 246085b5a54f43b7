"""Pipeline planning: content type/format → ordered job stages.

Everything here is pure. ``plan_stages`` is total: unknown or mismatched
(content_type, file_type) pairs plan no stages instead of raising, and the
caller treats an empty plan as "ready with no further processing".
"""

from typing import Dict, List, Optional, Sequence, Tuple

from .models import ContentStatus, ContentType, FileType, JobType

VIDEO_FILE_TYPES = {FileType.MP4.value, FileType.MOV.value, FileType.WEBM.value, FileType.AVI.value}
AUDIO_FILE_TYPES = {FileType.MP3.value, FileType.WAV.value, FileType.M4A.value, FileType.OGG.value}
TEXT_FILE_TYPES = {FileType.TXT.value, FileType.MD.value}

MEDIA_STAGES = [JobType.TRANSCRIBE, JobType.DOC_GENERATE, JobType.GENERATE_EMBEDDINGS]

# Stage aliases accepted by the reprocess path
STAGE_ALIASES: Dict[str, Tuple[JobType, ...]] = {
    "transcript": (
        JobType.EXTRACT_AUDIO,
        JobType.TRANSCRIBE,
        JobType.EXTRACT_TEXT_PDF,
        JobType.EXTRACT_TEXT_DOCX,
        JobType.PROCESS_TEXT_NOTE,
    ),
    "document": (JobType.DOC_GENERATE,),
    "embeddings": (JobType.GENERATE_EMBEDDINGS,),
    "frames": (JobType.EXTRACT_FRAMES,),
}

STAGE_LABELS = {
    JobType.EXTRACT_AUDIO: "Audio extraction",
    JobType.TRANSCRIBE: "Transcription",
    JobType.EXTRACT_TEXT_PDF: "PDF text extraction",
    JobType.EXTRACT_TEXT_DOCX: "DOCX text extraction",
    JobType.PROCESS_TEXT_NOTE: "Text note processing",
    JobType.DOC_GENERATE: "Document generation",
    JobType.GENERATE_EMBEDDINGS: "Embedding generation",
    JobType.EXTRACT_FRAMES: "Frame extraction",
    JobType.SYNC_CONNECTOR: "Connector sync",
    JobType.PROCESS_IMPORTED_DOC: "Imported document processing",
    JobType.PROCESS_WEBHOOK: "Webhook processing",
    JobType.EXPORT_USER_DATA: "User data export",
}

_TEXT_PRODUCERS = (
    JobType.TRANSCRIBE,
    JobType.EXTRACT_TEXT_PDF,
    JobType.EXTRACT_TEXT_DOCX,
    JobType.PROCESS_TEXT_NOTE,
)


def _normalize(value) -> Optional[str]:
    if value is None:
        return None
    value = getattr(value, "value", value)
    return str(value).strip().lower().lstrip(".") or None


def plan_stages(content_type, file_type=None) -> List[JobType]:
    """Ordered stages for a content item.

    Args:
        content_type: recording, video, audio, document or text
        file_type: Optional file extension (mp4, pdf, md, ...)

    Returns:
        List of JobType in execution order; empty for unsupported input
    """
    kind = _normalize(content_type)
    ext = _normalize(file_type)

    if kind in (ContentType.RECORDING.value, ContentType.VIDEO.value):
        if ext is None or ext in VIDEO_FILE_TYPES:
            return [JobType.EXTRACT_AUDIO] + MEDIA_STAGES
        return []

    if kind == ContentType.AUDIO.value:
        if ext is None or ext in AUDIO_FILE_TYPES:
            return list(MEDIA_STAGES)
        return []

    if kind == ContentType.DOCUMENT.value:
        if ext is None or ext == FileType.PDF.value:
            return [JobType.EXTRACT_TEXT_PDF, JobType.GENERATE_EMBEDDINGS]
        if ext in (FileType.DOCX.value, FileType.DOC.value):
            return [JobType.EXTRACT_TEXT_DOCX, JobType.GENERATE_EMBEDDINGS]
        return []

    if kind == ContentType.TEXT.value:
        if ext is None or ext in TEXT_FILE_TYPES:
            return [JobType.PROCESS_TEXT_NOTE, JobType.GENERATE_EMBEDDINGS]
        return []

    return []


def stage_label(job_type: JobType) -> str:
    return STAGE_LABELS.get(JobType(job_type), str(job_type))


def stage_start_status(job_type: JobType) -> Optional[ContentStatus]:
    """Content status while ``job_type`` runs (None leaves it unchanged)."""
    job_type = JobType(job_type)
    if job_type == JobType.EXTRACT_AUDIO or job_type in _TEXT_PRODUCERS:
        return ContentStatus.TRANSCRIBING
    if job_type == JobType.DOC_GENERATE:
        return ContentStatus.DOC_GENERATING
    return None


def stage_done_status(job_type: JobType) -> Optional[ContentStatus]:
    """Content status once ``job_type`` completed (None leaves it unchanged)."""
    job_type = JobType(job_type)
    if job_type in _TEXT_PRODUCERS:
        return ContentStatus.TRANSCRIBED
    if job_type == JobType.DOC_GENERATE:
        return ContentStatus.COMPLETED
    return None


def derived_artifacts(job_type: JobType) -> List[str]:
    """Artifacts a re-run of ``job_type`` regenerates, including downstream ones."""
    job_type = JobType(job_type)
    if job_type == JobType.EXTRACT_AUDIO or job_type in _TEXT_PRODUCERS:
        return ["transcript", "document", "chunks"]
    if job_type == JobType.DOC_GENERATE:
        return ["document", "chunks"]
    if job_type == JobType.GENERATE_EMBEDDINGS:
        return ["chunks"]
    if job_type == JobType.EXTRACT_FRAMES:
        return ["frames"]
    return []


def resolve_reprocess_stages(plan: Sequence[JobType], from_stage: str = "all") -> List[JobType]:
    """Plan suffix starting at ``from_stage``.

    Args:
        plan: Full ordered plan for the content
        from_stage: "all", a JobType value, or an alias
            (transcript, document, embeddings, frames)

    Raises:
        ValueError: If the stage is unknown or not part of the plan
    """
    plan = list(plan)
    step = _normalize(from_stage) or "all"
    if step == "all":
        return plan

    if step in STAGE_ALIASES:
        candidates = STAGE_ALIASES[step]
    else:
        try:
            candidates = (JobType(step),)
        except ValueError:
            raise ValueError(f"Unknown reprocess step: {from_stage}") from None

    if candidates == (JobType.EXTRACT_FRAMES,):
        # Frame extraction is a standalone job outside the linear plans
        if JobType.EXTRACT_AUDIO not in plan:
            raise ValueError("Frames can only be extracted from video content")
        return [JobType.EXTRACT_FRAMES]

    for index, job_type in enumerate(plan):
        if job_type in candidates:
            return plan[index:]

    raise ValueError(f"Step '{from_stage}' is not part of this content's pipeline")
