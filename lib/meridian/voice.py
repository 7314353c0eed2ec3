"""Voice capture and speech playback for the Meridian core.

Capture: ``toggle_voice`` flips between Listening and Not Listening.  While
listening, a 500 ms poll drains the microphone buffer, sends it to the
voice pipeline for transcription and appends *final* transcriptions to the
prompt buffer.  The poll and its microphone live in one
:class:`CaptureSession`; stopping it cancels the poll and discards any
audio that has not been sent.

Playback: ``speak`` asks the voice pipeline to synthesize a reply and plays
the returned audio with ``sounddevice`` + ``soundfile``.  Voice style and
rate come from the self-model's voice identity when it is available.

Usage::

    voice = VoiceBridge(backend, prompt, config, affect=affect)
    await voice.toggle_voice()          # start listening
    await voice.toggle_voice()          # stop, drop pending audio
    await voice.speak("Hello there")
"""

from __future__ import annotations

import asyncio
import base64
import io
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, List, Mapping, Optional, Tuple

from lib.meridian.backend import Backend
from lib.meridian.config import SELF_MODEL_PIPELINE, VOICE_PIPELINE, StudioConfig
from lib.meridian.conversation import PromptBuffer
from lib.meridian.pollers import PeriodicPoller

if TYPE_CHECKING:
    from lib.meridian.affect import AffectStateBridge

logger = logging.getLogger("meridian.voice")

_CAPTURE_SAMPLE_RATE = 16000
_CAPTURE_CHANNELS = 1

HIGH_THRESHOLD = 0.6
LOW_THRESHOLD = 0.4
MEASURED_RATE = 0.9
CASUAL_RATE = 1.1

# Optional audio libraries; PortAudio may be missing even when the wheel is installed.
_SOUNDDEVICE_AVAILABLE = False
try:
    import sounddevice as sd  # type: ignore[import-untyped]
    import soundfile as sf  # type: ignore[import-untyped]
    _SOUNDDEVICE_AVAILABLE = True
except (ImportError, OSError):
    sd = None  # type: ignore[assignment]
    sf = None  # type: ignore[assignment]


# ===================================================================
# Voice identity -> TTS parameters
# ===================================================================

@dataclass(frozen=True)
class VoiceIdentity:
    tone: str = "balanced"
    formality: float = 0.5
    warmth: float = 0.5
    directness: float = 0.5
    humor_level: float = 0.3
    vocabulary_style: str = "conversational"

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> VoiceIdentity:
        voice = payload.get("voice") if isinstance(payload.get("voice"), Mapping) else payload
        return cls(
            tone=str(voice.get("tone") or "balanced"),
            formality=float(voice.get("formality", 0.5)),
            warmth=float(voice.get("warmth", 0.5)),
            directness=float(voice.get("directness", 0.5)),
            humor_level=float(voice.get("humor_level", 0.3)),
            vocabulary_style=str(voice.get("vocabulary_style") or "conversational"),
        )


def select_voice_style(warmth: float, default: str = "neutral") -> str:
    if warmth > HIGH_THRESHOLD:
        return "warm"
    if warmth < LOW_THRESHOLD:
        return "neutral"
    return default


def select_speech_rate(formality: float, default: float = 1.0) -> float:
    if formality > HIGH_THRESHOLD:
        return MEASURED_RATE
    if formality < LOW_THRESHOLD:
        return CASUAL_RATE
    return default


# ===================================================================
# Audio sources and playback
# ===================================================================

class AudioSource(ABC):
    """Buffered microphone input.  ``read`` drains what has accumulated."""

    format = "wav"

    @abstractmethod
    def open(self) -> None:
        ...

    @abstractmethod
    def read(self) -> bytes:
        ...

    @abstractmethod
    def discard(self) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...


class SilentSource(AudioSource):
    """Source that never produces audio (no input device available)."""

    def open(self) -> None:
        return None

    def read(self) -> bytes:
        return b""

    def discard(self) -> None:
        return None

    def close(self) -> None:
        return None


class MicrophoneSource(AudioSource):
    """Default input device via a ``sounddevice.InputStream``.

    The stream callback runs on PortAudio's thread and only appends
    frames; ``read`` hands them out as a 16-bit WAV clip.
    """

    def __init__(self, sample_rate: int = _CAPTURE_SAMPLE_RATE) -> None:
        self._sample_rate = sample_rate
        self._frames: List[Any] = []
        self._lock = threading.Lock()
        self._stream: Any = None

    def open(self) -> None:
        if not _SOUNDDEVICE_AVAILABLE:
            raise RuntimeError("sounddevice is not available")
        self._stream = sd.InputStream(
            samplerate=self._sample_rate,
            channels=_CAPTURE_CHANNELS,
            dtype="int16",
            callback=self._on_audio,
        )
        self._stream.start()

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.debug("Input stream status: %s", status)
        with self._lock:
            self._frames.append(indata.copy())

    def read(self) -> bytes:
        with self._lock:
            frames, self._frames = self._frames, []
        if not frames:
            return b""
        import numpy as np  # type: ignore[import-untyped]
        data = np.concatenate(frames)
        buf = io.BytesIO()
        sf.write(buf, data, self._sample_rate, format="WAV", subtype="PCM_16")
        return buf.getvalue()

    def discard(self) -> None:
        with self._lock:
            self._frames.clear()

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()


def default_audio_source() -> AudioSource:
    return MicrophoneSource() if _SOUNDDEVICE_AVAILABLE else SilentSource()


class AudioPlayer:
    """Plays encoded audio clips without blocking the event loop."""

    def __init__(self) -> None:
        self._playing = False

    @property
    def available(self) -> bool:
        return _SOUNDDEVICE_AVAILABLE

    @property
    def playing(self) -> bool:
        return self._playing

    async def play(self, audio_bytes: bytes) -> None:
        """Play until the clip ends (or fails); returns afterwards either way."""
        if not audio_bytes:
            return
        if not self.available:
            logger.info("No audio output available; skipping playback")
            return
        self._playing = True
        try:
            await asyncio.to_thread(self._play_blocking, audio_bytes)
        except Exception as exc:
            logger.warning("Audio playback failed: %s", exc)
        finally:
            self._playing = False

    def stop(self) -> None:
        if self._playing and _SOUNDDEVICE_AVAILABLE:
            sd.stop()
        self._playing = False

    @staticmethod
    def _play_blocking(audio_bytes: bytes) -> None:
        data, sample_rate = sf.read(io.BytesIO(audio_bytes), dtype="float32")
        sd.play(data, samplerate=sample_rate)
        sd.wait()


# ===================================================================
# Capture session
# ===================================================================

_session_ids = itertools.count(1)


@dataclass
class CaptureSession:
    """One Listening period: its audio source and its transcription poll."""

    source: AudioSource
    id: int = field(default_factory=lambda: next(_session_ids))
    started_at: float = field(default_factory=time.monotonic)
    chunks_sent: int = 0
    transcriptions: int = 0
    poller: Optional[PeriodicPoller] = None
    closed: bool = False

    @property
    def active(self) -> bool:
        return not self.closed

    async def cancel(self) -> None:
        """Stop polling and drop buffered audio without sending it."""
        if self.closed:
            return
        self.closed = True
        if self.poller is not None:
            await self.poller.stop()
        self.source.discard()
        try:
            self.source.close()
        except Exception as exc:
            logger.warning("Closing audio source failed: %s", exc)


# ===================================================================
# VoiceBridge
# ===================================================================

class VoiceBridge:
    """Microphone capture, transcription merge and speech playback."""

    def __init__(
        self,
        backend: Backend,
        prompt: PromptBuffer,
        config: StudioConfig,
        *,
        affect: Optional[AffectStateBridge] = None,
        source_factory: Callable[[], AudioSource] = default_audio_source,
        player: Optional[AudioPlayer] = None,
    ) -> None:
        self._backend = backend
        self._prompt = prompt
        self._config = config
        self._affect = affect
        self._source_factory = source_factory
        self._player = player or AudioPlayer()
        self._session: Optional[CaptureSession] = None
        self._speaking = False

    @property
    def listening(self) -> bool:
        return self._session is not None and self._session.active

    @property
    def session(self) -> Optional[CaptureSession]:
        return self._session

    @property
    def speaking(self) -> bool:
        return self._speaking

    # ---- capture -----------------------------------------------------------

    async def toggle_voice(self) -> bool:
        """Flip Listening on or off; returns the new state."""
        if self.listening:
            await self.stop_listening()
        else:
            await self.start_listening()
        return self.listening

    async def start_listening(self) -> Optional[CaptureSession]:
        if self.listening:
            return self._session
        try:
            await self._backend.execute(VOICE_PIPELINE, {"action": "start"})
        except Exception as exc:
            logger.warning("Voice start failed: %s", exc)
            return None

        source = self._source_factory()
        try:
            source.open()
        except Exception as exc:
            logger.warning("Cannot open audio input: %s", exc)
            await self._send_stop()
            return None

        session = CaptureSession(source=source)
        session.poller = PeriodicPoller(
            "voice",
            self._config.voice_poll_s,
            lambda: self._poll_session(session),
            immediate=False,
        )
        self._session = session
        session.poller.start()
        logger.info("Voice capture started (session %d)", session.id)
        return session

    async def stop_listening(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        await session.cancel()
        await self._send_stop()
        logger.info(
            "Voice capture stopped (session %d, %d chunks sent)",
            session.id, session.chunks_sent,
        )

    async def _send_stop(self) -> None:
        try:
            await self._backend.execute(VOICE_PIPELINE, {"action": "stop"})
        except Exception as exc:
            logger.warning("Voice stop failed: %s", exc)

    async def _poll_session(self, session: CaptureSession) -> None:
        if session.closed:
            return
        audio = session.source.read()
        if not audio:
            return
        session.chunks_sent += 1
        result = await self._backend.execute(
            VOICE_PIPELINE,
            {
                "action": "process",
                "audio_base64": base64.b64encode(audio).decode("ascii"),
                "format": session.source.format,
            },
        )
        if session.closed:
            return
        text = str(result.get("transcription") or "").strip()
        if result.get("is_final") and text:
            session.transcriptions += 1
            self._prompt.append_transcription(text)

    # ---- speech ------------------------------------------------------------

    async def speak(self, text: str) -> bool:
        """Synthesize and play *text*.  Returns whether audio was played.

        Holds the Speaking state until playback ends; silently does nothing
        unless affect features and speech output are both enabled.
        """
        if not text.strip():
            return False
        if self._affect is None or not self._affect.enabled:
            return False
        if not self._config.speech_output or not await self.speech_output_enabled():
            return False

        voice, rate = await self.voice_parameters()
        self._speaking = True
        try:
            result = await self._backend.execute(
                VOICE_PIPELINE,
                {"action": "speak", "text": text, "voice": voice, "speed": rate},
            )
            audio = _decode_audio(result.get("audio_base64"))
            if not audio:
                return False
            await self._player.play(audio)
            return True
        except Exception as exc:
            logger.warning("Speech synthesis failed: %s", exc)
            return False
        finally:
            self._speaking = False

    async def speech_output_enabled(self) -> bool:
        try:
            config = await self._backend.config_get()
        except Exception as exc:
            logger.debug("Speech settings unavailable: %s", exc)
            return False
        voice = config.get("voice") or {}
        if not isinstance(voice, dict):
            return False
        return bool(voice.get("output_enabled", voice.get("enabled", False)))

    async def voice_parameters(self) -> Tuple[str, float]:
        """Voice style and rate from the self-model, or the configured defaults."""
        default_voice = self._config.default_voice
        default_rate = self._config.default_speech_rate
        try:
            result = await self._backend.execute(SELF_MODEL_PIPELINE, {"action": "GetVoice"})
            identity = VoiceIdentity.from_payload(result)
        except Exception as exc:
            logger.debug("Voice identity unavailable, using defaults: %s", exc)
            return default_voice, default_rate
        return (
            select_voice_style(identity.warmth, default_voice),
            select_speech_rate(identity.formality, default_rate),
        )

    async def stop(self) -> None:
        await self.stop_listening()
        self._player.stop()


def _decode_audio(value: Any) -> bytes:
    if not value:
        return b""
    try:
        return base64.b64decode(value)
    except (TypeError, ValueError) as exc:
        logger.warning("Malformed audio payload: %s", exc)
        return b""
