# OpenAI-backed classification, comparison and transcription oracles

import asyncio
import base64
import binascii
import json
import logging
from typing import Any, List, Optional, Sequence, Type, TypeVar, Union

import openai as openai_mod
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError as PydanticValidationError

from . import config
from .errors import OracleUnavailable
from .models import (CompletionAnalysis, IssueCategory, Priority, SeverityAssessment,
                     VoiceAnalysis, coerce_priority)
from .policy import estimate_resolution_days

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

RETRYABLE = (openai_mod.RateLimitError, openai_mod.APIConnectionError, asyncio.TimeoutError)
SUMMARY_MAX_WORDS = 20


def truncate_text(text: Optional[str], max_chars: int = 3000) -> str:
    text = text or ""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def first_words(text: str, limit: int = SUMMARY_MAX_WORDS) -> str:
    return " ".join(text.split()[:limit])


def decode_audio(audio: Union[bytes, str]) -> bytes:
    """Accept raw bytes or a ``data:<mime>;base64,...`` URI."""
    if isinstance(audio, bytes):
        return audio
    payload = audio.split(",", 1)[1] if audio.startswith("data:") else audio
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise OracleUnavailable(f"Audio payload is not valid base64: {e}") from e


def normalize_completion_analysis(raw: Any) -> CompletionAnalysis:
    """Fold a bare narrative string or a loosely keyed object into one structured shape."""
    if isinstance(raw, CompletionAnalysis):
        return raw
    if isinstance(raw, str):
        narrative = raw.strip()
        if not narrative:
            raise OracleUnavailable("Completion comparison returned an empty narrative")
        return CompletionAnalysis(narrative=narrative, is_satisfactory=False,
                                  summary=first_words(narrative))
    if isinstance(raw, dict):
        narrative = raw.get("narrative") or raw.get("analysis") or ""
        if isinstance(narrative, dict):
            return normalize_completion_analysis(narrative)
        satisfactory = raw.get("is_satisfactory", raw.get("isSatisfactory", False))
        if not isinstance(narrative, str) or not narrative.strip():
            raise OracleUnavailable("Completion comparison returned no narrative")
        summary = raw.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            summary = narrative
        return CompletionAnalysis(narrative=narrative.strip(),
                                  is_satisfactory=satisfactory is True,
                                  summary=first_words(summary))
    raise OracleUnavailable(f"Unusable completion comparison payload: {type(raw).__name__}")


def _image_parts(images: Sequence[str]) -> List[dict]:
    return [{"type": "image_url", "image_url": {"url": url}} for url in images]


CATEGORY_LIST = ", ".join(c.value for c in IssueCategory)

# ---------------------------------------------------------------------------
# Oracle adapter
# ---------------------------------------------------------------------------
class OpenAIOracle:
    """Every call either returns a validated result or raises ``OracleUnavailable``.

    Transient API failures (rate limits, connection drops, timeouts) are
    retried with exponential backoff; anything else, including a payload that
    does not match the expected contract, fails immediately.
    """

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: str = None,
                 transcribe_model: str = None, timeout: float = None,
                 max_retries: int = None, retry_base_delay: float = 1.0):
        self.client = client or AsyncOpenAI(api_key=config.OPENAI_API_KEY)
        self.model = model or config.OPENAI_MODEL
        self.transcribe_model = transcribe_model or config.OPENAI_TRANSCRIBE_MODEL
        self.timeout = timeout or config.ORACLE_TIMEOUT_SECONDS
        self.max_retries = max_retries or config.ORACLE_MAX_RETRIES
        self.retry_base_delay = retry_base_delay

    async def _call(self, label: str, make_request):
        for attempt in range(self.max_retries):
            try:
                return await asyncio.wait_for(make_request(), timeout=self.timeout)
            except RETRYABLE as e:
                logger.warning("Oracle %s retry %d: %s", label, attempt + 1, e or type(e).__name__)
                if attempt == self.max_retries - 1:
                    logger.error("Oracle %s unavailable after %d attempts", label, self.max_retries)
                    raise OracleUnavailable(f"{label} unavailable: {e or type(e).__name__}") from e
                await asyncio.sleep(self.retry_base_delay * 2 ** attempt)
            except openai_mod.OpenAIError as e:
                logger.error("Oracle %s error: %s", label, e)
                raise OracleUnavailable(f"{label} failed: {e}") from e
        raise OracleUnavailable(f"{label} unavailable")

    async def _chat_json(self, label: str, content: Union[str, List[dict]]) -> dict:
        async def request():
            return await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": content}],
                response_format={"type": "json_object"},
            )
        resp = await self._call(label, request)
        text = (resp.choices[0].message.content or "").strip()
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            logger.error("Oracle %s returned non-JSON output: %.200s", label, text)
            raise OracleUnavailable(f"{label} returned malformed output") from e
        if not isinstance(data, dict):
            raise OracleUnavailable(f"{label} returned {type(data).__name__}, expected object")
        return data

    @staticmethod
    def _validate(label: str, model: Type[M], data: dict) -> M:
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            logger.error("Oracle %s payload rejected: %s", label, e)
            raise OracleUnavailable(f"{label} returned an invalid payload") from e

    @staticmethod
    def estimate_resolution_days(priority, pending_count: int) -> int:
        return estimate_resolution_days(priority, pending_count)

    # -- image based --
    async def classify_severity(self, images: Sequence[str]) -> SeverityAssessment:
        if not images:
            raise OracleUnavailable("classify_severity needs at least one image")
        prompt = (
            "You review photos submitted to a municipal civic issue tracker.\n"
            "Decide whether the photos show a real civic problem (road damage, garbage, broken "
            "infrastructure, hazards, vandalism and similar). Selfies, memes, screenshots, indoor "
            "scenes and unrelated objects are not relevant.\n"
            "Return a JSON object with exactly these keys:\n"
            '- "is_relevant": true or false\n'
            '- "rejection_reason": short reason when not relevant, else null\n'
            '- "severity_score": integer 1-10 (10 = immediate danger to life or property)\n'
            '- "reasoning": one or two sentences explaining the score'
        )
        data = await self._chat_json("classify_severity",
                                     [{"type": "text", "text": prompt}] + _image_parts(images))
        return self._validate("classify_severity", SeverityAssessment, data)

    async def detect_fraudulent_image(self, images: Sequence[str]) -> bool:
        prompt = (
            "These photos were submitted as proof that repair work was completed. Determine whether "
            "any of them is AI-generated, digitally composited or otherwise synthetic.\n"
            'Return JSON: {"is_fraudulent": true or false, "reason": "..."}'
        )
        data = await self._chat_json("detect_fraudulent_image",
                                     [{"type": "text", "text": prompt}] + _image_parts(images))
        verdict = data.get("is_fraudulent", data.get("isFraudulent"))
        if not isinstance(verdict, bool):
            raise OracleUnavailable("detect_fraudulent_image returned no verdict")
        if verdict:
            logger.warning("Fraud detector flagged submission: %s", data.get("reason", ""))
        return verdict

    async def compare_completion(self, before_images: Sequence[str], before_notes: Optional[str],
                                 before_transcript: Optional[str], after_images: Sequence[str],
                                 after_notes: str) -> CompletionAnalysis:
        parts = [{"type": "text", "text": (
            "You verify civic work completion. Compare the original issue report with the field "
            "staff's completion report.\n\nOriginal issue photos follow.")}]
        parts += _image_parts(before_images)
        parts.append({"type": "text", "text": (
            f'Citizen notes: "{truncate_text(before_notes, 1500)}"\n'
            f'Citizen audio transcript: "{truncate_text(before_transcript, 1500)}"\n\n'
            "Photos of the completed work follow.")})
        parts += _image_parts(after_images)
        parts.append({"type": "text", "text": (
            f'Staff notes: "{truncate_text(after_notes, 1500)}"\n\n'
            "Return a JSON object with exactly these keys:\n"
            '- "narrative": describe the original issue, the claimed work, compare before and after '
            "photos and conclude\n"
            '- "is_satisfactory": true only if the photos clearly show the original problem is fixed\n'
            f'- "summary": one sentence, at most {SUMMARY_MAX_WORDS} words')})
        data = await self._chat_json("compare_completion", parts)
        return normalize_completion_analysis(data)

    # -- text based --
    async def classify_priority(self, severity_score: int, category: str,
                                notes: Optional[str] = None, transcript: Optional[str] = None) -> Priority:
        prompt = (
            "Assign a priority to a civic issue report.\n"
            f"Image severity score (1-10): {severity_score}\nCategory: {category}\n"
            f'Notes: "{truncate_text(notes, 1500)}"\nTranscript: "{truncate_text(transcript, 1500)}"\n\n'
            "Priority guide: High = severity 8-10 or any risk to life, Medium = standard disruption, "
            "Low = cosmetic or minor.\n"
            'Return JSON: {"priority": "Low" | "Medium" | "High"}'
        )
        data = await self._chat_json("classify_priority", prompt)
        value = data.get("priority")
        if not isinstance(value, str) or value.strip().lower() not in {p.value.lower() for p in Priority}:
            raise OracleUnavailable(f"classify_priority returned {value!r}")
        return coerce_priority(value)

    async def generate_title(self, category: str, notes: Optional[str] = None,
                             transcript: Optional[str] = None, reasoning: str = "") -> str:
        prompt = (
            "Write a short, specific title (at most 10 words) for a civic issue report.\n"
            f"Category: {category}\nNotes: \"{truncate_text(notes, 1500)}\"\n"
            f"Transcript: \"{truncate_text(transcript, 1500)}\"\nImage assessment: \"{truncate_text(reasoning, 800)}\"\n"
            'Return JSON: {"title": "..."}'
        )
        data = await self._chat_json("generate_title", prompt)
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            raise OracleUnavailable("generate_title returned no title")
        return title.strip().strip('"')[:120]

    # -- audio --
    async def transcribe_audio(self, audio: Union[bytes, str], filename: str = "report.wav") -> str:
        payload = decode_audio(audio)

        async def request():
            return await self.client.audio.transcriptions.create(
                model=self.transcribe_model, file=(filename, payload))
        resp = await self._call("transcribe_audio", request)
        text = getattr(resp, "text", None)
        if not isinstance(text, str):
            raise OracleUnavailable("transcribe_audio returned no text")
        return text.strip()

    async def process_voice_report(self, audio: Union[bytes, str]) -> VoiceAnalysis:
        transcript = await self.transcribe_audio(audio)
        if not transcript:
            raise OracleUnavailable("Voice recording contained no speech")
        prompt = (
            "You are a civic dispatcher. A citizen phoned in this report:\n"
            f'"{truncate_text(transcript, 4000)}"\n\n'
            "Return a JSON object with exactly these keys:\n"
            '- "title": short professional title\n'
            f'- "category": one of [{CATEGORY_LIST}]\n'
            '- "address": location or landmark mentioned, else ""\n'
            '- "postal_code": 6-digit PIN code if spoken, else null\n'
            '- "priority": one of [Low, Medium, High] based on urgency\n'
            '- "severity_score": integer 1-10\n'
            '- "reasoning": why you chose this classification\n'
            "If the audio is unclear, use your best interpretation of the hazard described."
        )
        data = await self._chat_json("process_voice_report", prompt)
        data["transcript"] = transcript
        postal = data.get("postal_code")
        data["postal_code"] = str(postal) if postal not in (None, "") else None
        return self._validate("process_voice_report", VoiceAnalysis, data)
