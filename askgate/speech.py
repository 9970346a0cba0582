"""Speech synthesis providers behind one capability interface.

Provides:
- VoiceOptions: voice id, language code, gender and speaking rate, with defaults
  filled in for omitted fields.
- AudioStream: lazy, finite, single-use producer of audio byte chunks.
- OpenAISpeechRenderer: streams /v1/audio/speech; the HTTP status is checked before
  the stream is handed back, so provider rejections surface before response headers.
- GoogleSpeechRenderer: Cloud Text-to-Speech REST; one completed buffer wrapped as a
  one-shot stream.
- FakeSpeechRenderer: deterministic bytes for tests and local runs.
- build_speech_renderer: picks a provider from settings.TTS_PROVIDER.

No retry or chunking logic lives here beyond what the provider offers.
"""
import base64
import logging
from dataclasses import asdict, dataclass, replace
from typing import Callable, Dict, Iterator, List, Optional, Protocol

import httpx

from askgate.config import ProviderConfig, Settings
from askgate.errors import UpstreamError

logger = logging.getLogger(__name__)

OPENAI_SPEECH_URL = "https://api.openai.com/v1/audio/speech"
GOOGLE_TTS_BASE = "https://texttospeech.googleapis.com/v1"
OPENAI_VOICES = ("alloy", "ash", "coral", "echo", "fable", "nova", "onyx", "sage", "shimmer")
CHUNK_SIZE = 4096


@dataclass(frozen=True)
class VoiceOptions:
    """Voice/style parameters; None means "use the configured default"."""
    voice: Optional[str] = None
    language_code: Optional[str] = None
    gender: Optional[str] = None
    speaking_rate: Optional[float] = None

    def with_defaults(self, defaults: "VoiceOptions") -> "VoiceOptions":
        filled = {k: v if v is not None else getattr(defaults, k) for k, v in asdict(self).items()}
        return replace(self, **filled)


class AudioStream:
    """Audio bytes produced incrementally.

    Iterating starts consuming the provider response; a second iteration raises
    RuntimeError because the underlying response cannot be replayed.
    """

    def __init__(
        self,
        chunks: Iterator[bytes],
        media_type: str = "audio/mpeg",
        on_close: Optional[Callable[[], None]] = None,
    ):
        self.media_type = media_type
        self._chunks = chunks
        self._on_close = on_close
        self._consumed = False
        self._closed = False

    @classmethod
    def one_shot(cls, data: bytes, media_type: str = "audio/mpeg") -> "AudioStream":
        return cls(iter([data]), media_type=media_type)

    def __iter__(self) -> Iterator[bytes]:
        if self._consumed:
            raise RuntimeError("AudioStream cannot be restarted")
        self._consumed = True
        return self._produce()

    def _produce(self) -> Iterator[bytes]:
        try:
            for chunk in self._chunks:
                if chunk:
                    yield chunk
        finally:
            self.close()

    def read(self) -> bytes:
        return b"".join(self)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close()


class SpeechRenderer(Protocol):
    def synthesize(self, text: str, options: Optional[VoiceOptions] = None) -> AudioStream:
        ...

    def list_voices(self) -> List[Dict]:
        ...


class OpenAISpeechRenderer:
    """OpenAI text-to-speech with a streamed response body.

    Only voice and speaking_rate apply to this provider; language and gender are
    inferred by the model from the text.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        defaults: VoiceOptions,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.model = model
        self.defaults = defaults
        self._client = client or httpx.Client(timeout=timeout)

    def synthesize(self, text: str, options: Optional[VoiceOptions] = None) -> AudioStream:
        opts = (options or VoiceOptions()).with_defaults(self.defaults)
        if not self.api_key:
            raise UpstreamError("Speech provider credential is not configured")
        logger.info("Audio generation started: voice=%s text_length=%d", opts.voice, len(text))
        payload = {
            "model": self.model,
            "voice": opts.voice,
            "input": text,
            "response_format": "mp3",
            "speed": opts.speaking_rate,
        }
        request = self._client.build_request(
            "POST",
            OPENAI_SPEECH_URL,
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        try:
            response = self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"OpenAI speech request failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                detail = response.read().decode("utf-8", errors="replace")[:300]
            finally:
                response.close()
            raise UpstreamError(f"OpenAI speech error: {response.status_code} - {detail}")

        logger.info("OpenAI speech streaming started: voice=%s", opts.voice)
        return AudioStream(self._iter(response), media_type="audio/mpeg", on_close=response.close)

    def _iter(self, response: httpx.Response) -> Iterator[bytes]:
        try:
            yield from response.iter_bytes(chunk_size=CHUNK_SIZE)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Audio stream interrupted: {exc}") from exc

    def list_voices(self) -> List[Dict]:
        return [{"id": v, "name": v.title(), "provider": "openai"} for v in OPENAI_VOICES]


class GoogleSpeechRenderer:
    """Google Cloud Text-to-Speech (REST, API-key auth); returns a completed buffer."""

    def __init__(
        self,
        api_key: str,
        defaults: VoiceOptions,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.defaults = defaults
        self._client = client or httpx.Client(timeout=timeout)

    def _call(self, method: str, path: str, **kwargs) -> Dict:
        params = dict(kwargs.pop("params", None) or {})
        params["key"] = self.api_key
        try:
            resp = self._client.request(method, f"{GOOGLE_TTS_BASE}/{path}", params=params, **kwargs)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(f"Google speech error: {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Google speech request failed: {exc}") from exc
        except ValueError as exc:
            raise UpstreamError("Google speech returned malformed JSON") from exc

    def synthesize(self, text: str, options: Optional[VoiceOptions] = None) -> AudioStream:
        opts = (options or VoiceOptions()).with_defaults(self.defaults)
        logger.info("Audio generation started: voice=%s text_length=%d", opts.voice, len(text))
        voice = {"languageCode": opts.language_code, "ssmlGender": (opts.gender or "").upper() or None}
        if opts.voice:
            voice["name"] = opts.voice
        body = {
            "input": {"text": text},
            "voice": {k: v for k, v in voice.items() if v},
            "audioConfig": {"audioEncoding": "MP3", "speakingRate": opts.speaking_rate},
        }
        data = self._call("POST", "text:synthesize", json=body)
        content = data.get("audioContent") if isinstance(data, dict) else None
        if not content:
            raise UpstreamError("Google speech response has no audioContent")
        try:
            audio = base64.b64decode(content, validate=True)
        except ValueError as exc:
            raise UpstreamError("Google speech audioContent is not valid base64") from exc
        return AudioStream.one_shot(audio, media_type="audio/mpeg")

    def list_voices(self) -> List[Dict]:
        data = self._call("GET", "voices", params={"languageCode": self.defaults.language_code})
        return [
            {
                "id": v.get("name"),
                "languageCodes": v.get("languageCodes", []),
                "gender": v.get("ssmlGender"),
                "provider": "google",
            }
            for v in data.get("voices", [])
        ]


class FakeSpeechRenderer:
    """Deterministic renderer; keeps the last options it resolved for assertions."""

    payload = b"FAKE_MP3_BYTES"

    def __init__(self, defaults: Optional[VoiceOptions] = None):
        self.defaults = defaults or VoiceOptions(voice="fake", language_code="en-US", gender="NEUTRAL", speaking_rate=1.0)
        self.last_options: Optional[VoiceOptions] = None
        self.last_text: Optional[str] = None

    def synthesize(self, text: str, options: Optional[VoiceOptions] = None) -> AudioStream:
        self.last_options = (options or VoiceOptions()).with_defaults(self.defaults)
        self.last_text = text
        return AudioStream.one_shot(self.payload)

    def list_voices(self) -> List[Dict]:
        return [{"id": "fake", "name": "Fake", "provider": "fake"}]


def default_voice_options(s: Settings) -> VoiceOptions:
    return VoiceOptions(
        voice=s.TTS_VOICE,
        language_code=s.TTS_LANGUAGE_CODE,
        gender=s.TTS_GENDER,
        speaking_rate=s.TTS_SPEAKING_RATE,
    )


def build_speech_renderer(s: Settings, config: ProviderConfig) -> SpeechRenderer:
    provider = (s.TTS_PROVIDER or "openai").lower()
    defaults = default_voice_options(s)
    if provider == "openai":
        return OpenAISpeechRenderer(
            config.speech_provider_credential, s.OPENAI_TTS_MODEL, defaults, timeout=s.TTS_TIMEOUT_SECONDS
        )
    if provider == "google":
        return GoogleSpeechRenderer(config.speech_provider_credential, defaults, timeout=s.TTS_TIMEOUT_SECONDS)
    if provider == "fake":
        return FakeSpeechRenderer(defaults)
    raise ValueError(f"Unsupported TTS provider: {provider}")
