"""HTTP client for the AllTalk-style TTS generation server.

One POST per paragraph to ``/api/tts-generate``; the server answers with
JSON carrying ``status`` and a server-relative ``output_file_url``. The
client never batches and never retries; retry policy belongs to the
generation controller.
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import asdict, dataclass
from typing import Any, Optional

import httpx

from .errors import BackendError, BackendUnavailableError, GenerationError
from .logging import get_logger, log_context

_log = get_logger("readaloud.backend")

TTS_GENERATE_PATH = "/api/tts-generate"
READY_PATH = "/api/ready"
VOICES_PATH = "/api/voices"

# Offered when the server cannot list its voices
FALLBACK_VOICES = ("female_01.wav", "female_02.wav", "male_01.wav", "male_02.wav")

DEFAULT_MAX_CHARACTERS = 4096
DEFAULT_TIMEOUT = 60.0


@dataclass(frozen=True)
class GenerationParams:
    """Per-session generation settings.

    Changing any of these invalidates every generated paragraph.
    """

    voice: str = "female_01.wav"
    language: str = "en"
    speed: Optional[float] = None
    pitch: Optional[float] = None
    temperature: Optional[float] = None
    repetition_penalty: Optional[float] = None
    text_filtering: str = "standard"
    narrator_enabled: bool = False
    narrator_voice: str = ""
    text_not_inside: str = "character"

    def to_form(self, text: str, output_name: str) -> dict[str, str]:
        form = {
            "text_input": text,
            "text_filtering": self.text_filtering,
            "character_voice_gen": self.voice,
            "narrator_enabled": "true" if self.narrator_enabled else "false",
            "narrator_voice_gen": self.narrator_voice,
            "text_not_inside": self.text_not_inside,
            "language": self.language,
            "output_file_name": output_name,
            "output_file_timestamp": "true",
            "autoplay": "false",
        }
        # Optional numeric knobs are only sent when set
        for key, value in (
            ("speed", self.speed),
            ("pitch", self.pitch),
            ("temperature", self.temperature),
            ("repetition_penalty", self.repetition_penalty),
        ):
            if value is not None:
                form[key] = str(value)
        return form


def document_key(paragraphs: list[str], params: GenerationParams) -> str:
    """Stable id for a paragraph list read with particular generation settings."""
    h = hashlib.sha256()
    for p in paragraphs:
        h.update(p.encode("utf-8"))
        h.update(b"\x00")
    h.update(json.dumps(asdict(params), sort_keys=True).encode())
    return h.hexdigest()[:16]


def voice_label(voice: str) -> str:
    """``female_01.wav`` -> ``female 01``."""
    return voice.rsplit(".wav", 1)[0].replace("_", " ")


class TtsClient:
    """Async client for the generation server.

    Pass ``transport`` (e.g. ``httpx.MockTransport``) in tests.
    """

    def __init__(self, base_url: str, *,
                 max_characters: int = DEFAULT_MAX_CHARACTERS,
                 timeout: float = DEFAULT_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.max_characters = max_characters
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport,
        )

    async def generate(self, text: str, params: GenerationParams,
                       output_name: Optional[str] = None) -> str:
        """Generate audio for *text* and return its resource locator.

        Raises BackendUnavailableError when the server cannot be reached
        and GenerationError for any other failure.
        """
        if len(text) > self.max_characters:
            _log.warning(
                "Text length %d exceeds %d characters, truncating",
                len(text), self.max_characters,
                extra={"context": log_context(text_preview=text)},
            )
            text = text[:self.max_characters]

        name = output_name or f"readaloud_{int(time.time() * 1000)}"
        started = time.monotonic()
        try:
            resp = await self._client.post(TTS_GENERATE_PATH, data=params.to_form(text, name))
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise BackendUnavailableError(f"cannot connect to {self.base_url}: {e}") from e
        except httpx.HTTPError as e:
            raise GenerationError(f"request failed: {e}") from e

        if resp.status_code != 200:
            raise GenerationError(
                f"HTTP error {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        try:
            result: dict[str, Any] = resp.json()
        except ValueError as e:
            raise GenerationError(f"invalid JSON from server: {resp.text[:200]}") from e

        if result.get("status") != "generate-success" or not result.get("output_file_url"):
            raise GenerationError(f"TTS generation failed: {result.get('status')}")

        _log.debug(
            "Generated %s", result["output_file_url"],
            extra={"context": log_context(
                text_preview=text,
                duration_ms=(time.monotonic() - started) * 1000,
            )},
        )
        return result["output_file_url"]

    async def ready(self) -> bool:
        """Return True when the server reports it is ready to generate."""
        try:
            resp = await self._client.get(READY_PATH)
        except httpx.HTTPError:
            return False
        return resp.status_code == 200 and resp.text.strip().lower() == "ready"

    async def voices(self) -> list[str]:
        """List the character voices the server can generate with.

        Raises BackendUnavailableError when the server cannot be reached
        and BackendError when it answers with something unusable.
        """
        try:
            resp = await self._client.get(VOICES_PATH)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise BackendUnavailableError(f"cannot connect to {self.base_url}: {e}") from e
        except httpx.HTTPError as e:
            raise BackendError(f"voice list request failed: {e}") from e
        if resp.status_code != 200:
            raise BackendError(f"HTTP error {resp.status_code} listing voices")
        try:
            data = resp.json()
        except ValueError as e:
            raise BackendError(f"invalid JSON from server: {resp.text[:200]}") from e
        voices = data.get("voices") if isinstance(data, dict) else None
        if not isinstance(voices, list):
            return []
        return [v for v in voices if isinstance(v, str)]

    async def aclose(self) -> None:
        await self._client.aclose()


def probe_ready(base_url: str, timeout: float = 5.0) -> bool:
    """Blocking readiness check, for use before an event loop is running."""
    try:
        resp = httpx.get(base_url.rstrip("/") + READY_PATH, timeout=timeout)
    except httpx.HTTPError as e:
        _log.warning("Server at %s not reachable: %s", base_url, e)
        return False
    return resp.status_code == 200 and resp.text.strip().lower() == "ready"
