import logging
import time
from typing import List, Optional

from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import ValidationError

from config import Settings
from errors import (
    AIInvalidRequestError,
    AIQuotaExceededError,
    AIRateLimitedError,
    AIResponseError,
    AIServiceError,
    AIServiceUnavailableError,
    ContentTooLongError,
)
from schemas import AISummaryPayload, TranscriptSegment, VideoMetadata

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = (
    "You are an AI assistant specialized in creating concise, insightful summaries of YouTube videos. "
    "You extract key points, themes, and actionable insights from video transcripts."
)
CHUNK_SYSTEM_PROMPT = "You are an AI assistant that creates concise summaries of video transcript chunks."
SYNTHESIS_SYSTEM_PROMPT = (
    "You are an AI assistant that creates final summaries from multiple text chunks, "
    "extracting key points and themes."
)

_JSON_SHAPE = """{
  "keyPoints": ["First key insight", "Second key insight", "Third key insight"],
  "fullSummary": "A comprehensive summary of the video",
  "tags": ["relevant-topic-1", "relevant-topic-2", "relevant-topic-3"]
}"""


def format_transcript_for_ai(transcript: List[TranscriptSegment]) -> str:
    """One ``[timestamp] text`` line per segment."""
    return "\n".join(f"[{segment.timestamp}] {segment.text}" for segment in transcript)


def chunk_transcript(transcript: List[TranscriptSegment], max_chunk_length: int) -> List[List[TranscriptSegment]]:
    """
    Split a transcript into contiguous chunks.

    A chunk is flushed when adding the next segment's text would push it past
    ``max_chunk_length``. Segments are never split, so a single oversized
    segment becomes a chunk of its own.
    """
    chunks: List[List[TranscriptSegment]] = []
    current: List[TranscriptSegment] = []
    current_length = 0

    for segment in transcript:
        segment_length = len(segment.text)
        if current and current_length + segment_length > max_chunk_length:
            chunks.append(current)
            current = []
            current_length = 0
        current.append(segment)
        current_length += segment_length

    if current:
        chunks.append(current)
    return chunks


def parse_summary_payload(raw: Optional[str]) -> AISummaryPayload:
    if not raw or not raw.strip():
        raise AIResponseError("Empty response from AI")
    try:
        return AISummaryPayload.model_validate_json(raw)
    except ValidationError as e:
        logger.error("AI response failed validation", extra={"errors": e.errors(include_url=False)})
        raise AIResponseError() from e


def translate_api_error(status_code: Optional[int], message: str) -> AIServiceError:
    """Map an upstream API failure onto the AI error family."""
    lowered = (message or "").lower()
    if status_code == 429:
        if "quota" in lowered:
            return AIQuotaExceededError()
        return AIRateLimitedError()
    if status_code == 400:
        if "token" in lowered or "exceed" in lowered or "too long" in lowered:
            return ContentTooLongError()
        return AIInvalidRequestError()
    return AIServiceUnavailableError()


def _summary_prompt(transcript_text: str, metadata: VideoMetadata) -> str:
    return f"""
Please analyze this YouTube video transcript and create a comprehensive summary.

Video Title: "{metadata.title}"
Channel: {metadata.channel_name}
Duration: {metadata.duration or "Unknown"}

Transcript:
{transcript_text}

Respond with JSON of exactly this structure:
{_JSON_SHAPE}

Guidelines:
- Extract 3-5 key points that represent the most important insights
- The full summary should be 200-400 words
- Tags are short relevant keywords
""".strip()


def _chunk_prompt(chunk_text: str, number: int, total: int) -> str:
    return f"""
This is chunk {number} of {total} from a YouTube video transcript.

Transcript Chunk:
{chunk_text}

Summarize the main ideas, important details and any conclusions of this chunk
in 2-3 sentences.
""".strip()


def _synthesis_prompt(combined: str, metadata: VideoMetadata) -> str:
    return f"""
Please create a comprehensive summary from these chunk summaries of a YouTube video.

Video Title: "{metadata.title}"
Channel: {metadata.channel_name}

Chunk Summaries:
{combined}

Respond with JSON of exactly this structure:
{_JSON_SHAPE}

Synthesize the chunk summaries into 3-5 key points that cover the entire video.
""".strip()


class GeminiSummarizer:
    """Summary generation on top of the Gemini API."""

    def __init__(self, settings: Settings, client: Optional[genai.Client] = None):
        self.settings = settings
        self._client = client

    @property
    def is_configured(self) -> bool:
        return self._client is not None or bool(self.settings.gemini_api_key)

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            if not self.settings.gemini_api_key:
                raise AIServiceUnavailableError("AI service is not configured")
            self._client = genai.Client(api_key=self.settings.gemini_api_key)
        return self._client

    def chat_complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        structured: bool = False,
    ) -> str:
        config = types.GenerateContentConfig(
            system_instruction=system_prompt,
            max_output_tokens=max_tokens or self.settings.gemini_max_tokens,
            temperature=self.settings.gemini_temperature if temperature is None else temperature,
            response_mime_type="application/json" if structured else None,
        )
        try:
            response = self.client.models.generate_content(
                model=self.settings.gemini_model,
                contents=user_prompt,
                config=config,
            )
        except AIServiceError:
            raise
        except genai_errors.APIError as e:
            logger.error(
                "Gemini request failed",
                extra={"status_code": e.code, "error": e.message or str(e)},
            )
            raise translate_api_error(e.code, e.message or str(e)) from e
        except Exception as e:
            logger.error("Gemini request failed", extra={"error": str(e)})
            raise AIServiceUnavailableError() from e

        return response.text or ""

    def summarize(self, transcript: List[TranscriptSegment], metadata: VideoMetadata) -> AISummaryPayload:
        transcript_text = format_transcript_for_ai(transcript)
        if len(transcript_text) > self.settings.max_transcript_length:
            return self._summarize_chunks(transcript, metadata)

        raw = self.chat_complete(
            SUMMARY_SYSTEM_PROMPT,
            _summary_prompt(transcript_text, metadata),
            structured=True,
        )
        payload = parse_summary_payload(raw)
        logger.info(
            "Summary generated",
            extra={
                "video_id": metadata.video_id,
                "key_points": len(payload.key_points),
                "tags": len(payload.tags),
                "transcript_length": len(transcript_text),
            },
        )
        return payload

    def _summarize_chunks(self, transcript: List[TranscriptSegment], metadata: VideoMetadata) -> AISummaryPayload:
        chunks = chunk_transcript(transcript, self.settings.max_transcript_length // 3)
        chunk_summaries = []

        for index, chunk in enumerate(chunks):
            summary = self.chat_complete(
                CHUNK_SYSTEM_PROMPT,
                _chunk_prompt(format_transcript_for_ai(chunk), index + 1, len(chunks)),
                max_tokens=self.settings.chunk_max_tokens,
            )
            if summary.strip():
                chunk_summaries.append(summary)
            if index < len(chunks) - 1 and self.settings.chunk_delay_seconds > 0:
                time.sleep(self.settings.chunk_delay_seconds)

        raw = self.chat_complete(
            SYNTHESIS_SYSTEM_PROMPT,
            _synthesis_prompt("\n\n".join(chunk_summaries), metadata),
            structured=True,
        )
        payload = parse_summary_payload(raw)
        logger.info(
            "Summary generated from chunks",
            extra={"video_id": metadata.video_id, "chunks": len(chunks)},
        )
        return payload
