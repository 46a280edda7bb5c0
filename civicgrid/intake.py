# Intake gateway: turns form submissions and phone recordings into create commands

import asyncio
import logging
from typing import List, Optional
from xml.sax.saxutils import escape, quoteattr

import httpx

from . import config
from .errors import OracleUnavailable, ValidationError
from .lifecycle import CreateResult, LifecycleEngine
from .models import CreateIssueCommand, Geolocation, VoiceCreateIssueCommand

logger = logging.getLogger(__name__)

VOICE = "Polly.Amy"
POSTAL_CODE_DIGITS = 6
MAX_RECORDING_SECONDS = 60
RECORDING_FETCH_TIMEOUT = 30.0


def recording_wav_url(recording_url: str) -> str:
    url = recording_url.strip()
    if not url.startswith("http"):
        url = "https://" + url
    if not url.endswith(".wav"):
        url += ".wav"
    return url


def normalize_dtmf(digits: Optional[str]) -> str:
    digits = (digits or "").strip()
    return digits if digits.isdigit() else "unknown"

# ---------------------------------------------------------------------------
# TwiML
# ---------------------------------------------------------------------------
def _say(text: str) -> str:
    return f"<Say voice={quoteattr(VOICE)}>{escape(text)}</Say>"


def twiml(*verbs: str) -> str:
    return '<?xml version="1.0" encoding="UTF-8"?><Response>' + "".join(verbs) + "</Response>"


def twiml_greeting(record_action: str) -> str:
    return twiml(
        _say("Welcome to the civic issue reporting line."),
        f"<Gather action={quoteattr(record_action)} method=\"POST\" "
        f"numDigits=\"{POSTAL_CODE_DIGITS}\" timeout=\"10\">"
        + _say("Please enter your six digit postal code using your keypad.")
        + "</Gather>",
        _say("We did not receive any input. Please try again later. Goodbye."),
    )


def twiml_record(callback_action: str) -> str:
    return twiml(
        _say("Thank you. Now please describe the issue clearly. Press star when finished."),
        f"<Record action={quoteattr(callback_action)} method=\"POST\" "
        f"maxLength=\"{MAX_RECORDING_SECONDS}\" finishOnKey=\"*\" playBeep=\"true\"/>",
        _say("We could not hear you. Goodbye."),
    )


def twiml_confirmation(postal_code: str, days: int) -> str:
    return twiml(_say(f"Thank you. Your report for postal code {' '.join(postal_code)} is now live. "
                      f"Resolution is estimated in {days} days. Goodbye."))


def twiml_failure() -> str:
    return twiml(_say("Sorry, we could not register your report. Please call again later."))

# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------
class IntakeGateway:
    def __init__(self, engine: LifecycleEngine, oracle=None,
                 http_client: Optional[httpx.AsyncClient] = None,
                 settle_seconds: float = None):
        self.engine = engine
        self.oracle = oracle or engine.oracle
        self.http_client = http_client
        self.settle_seconds = config.RECORDING_SETTLE_SECONDS if settle_seconds is None else settle_seconds

    async def submit_form(self, actor_id: str, images: List[str], notes: Optional[str] = None,
                          audio_transcript: Optional[str] = None, audio_url: Optional[str] = None,
                          location: Optional[Geolocation] = None, address: str = "",
                          postal_code: Optional[str] = None, category: str = "Other") -> CreateResult:
        """Interactive path: the authenticated citizen supplies evidence directly."""
        if not (notes or "").strip() and not audio_transcript and not audio_url:
            raise ValidationError("Notes or an audio recording are required")
        cmd = CreateIssueCommand(
            actor_id=actor_id, images=images, notes=notes, audio_transcript=audio_transcript,
            audio_url=audio_url, location=location, address=address or "",
            postal_code=postal_code, category=category,
        )
        return await self.engine.create_issue(cmd)

    async def fetch_recording(self, recording_url: str) -> bytes:
        url = recording_wav_url(recording_url)
        if self.settle_seconds:
            # recordings are not downloadable the instant the callback fires
            await asyncio.sleep(self.settle_seconds)
        auth = None
        if config.TWILIO_ACCOUNT_SID and config.TWILIO_AUTH_TOKEN:
            auth = (config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN)
        client = self.http_client or httpx.AsyncClient(timeout=RECORDING_FETCH_TIMEOUT)
        try:
            resp = await client.get(url, auth=auth, follow_redirects=True)
        except httpx.HTTPError as e:
            raise OracleUnavailable(f"Recording fetch failed: {e}") from e
        finally:
            if client is not self.http_client:
                await client.aclose()
        if resp.status_code != 200:
            raise OracleUnavailable(f"Recording fetch failed: HTTP {resp.status_code}")
        return resp.content

    async def submit_voice(self, recording_url: str, from_number: str,
                           dtmf_postal_code: Optional[str] = None) -> CreateResult:
        """Phone path: fetch the recording, structure it, then run the standard create."""
        if not recording_url:
            raise ValidationError("No recording URL in callback")
        if not any(ch.isdigit() for ch in from_number or ""):
            raise ValidationError("Caller number missing from callback")
        cmd = VoiceCreateIssueCommand(
            caller_phone_number=from_number.strip(),
            audio_data_ref=recording_wav_url(recording_url),
            dtmf_postal_code=dtmf_postal_code,
        )
        audio = await self.fetch_recording(recording_url)
        analysis = await self.oracle.process_voice_report(audio)
        return await self.engine.create_voice_issue(cmd, analysis)
