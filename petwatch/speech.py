"""
Speech Announcer - overlap-safe text-to-speech

A new announcement cancels whatever is still playing (last write wins,
nothing is queued). Muting only stops future announcements.

Engines:
- espeak (Linux, subprocess)
- say (macOS, subprocess)
- pyttsx3 (cross-platform, Python)

Usage:
    from petwatch.speech import SpeechAnnouncer

    announcer = SpeechAnnouncer()
    announcer.announce("Your dog looks relaxed", locale="en-US", rate=1.0)
    announcer.cancel()
"""

import logging
import platform
import re
import shutil
import subprocess
import threading
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Protocol

from .config import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Voice:
    """A voice offered by an engine."""
    id: str
    name: str
    locale: str
    default: bool = False


def normalize_locale(tag: str) -> str:
    """'en_us' -> 'en-US'."""
    parts = tag.replace("_", "-").split("-")
    if not parts or not parts[0]:
        return ""
    head = parts[0].lower()
    rest = [p.upper() if len(p) == 2 else p for p in parts[1:] if p]
    return "-".join([head] + rest)


def select_voice(voices: List[Voice], locale: str) -> Optional[Voice]:
    """Pick a voice for ``locale``.

    Exact match flagged as default, then any exact match, then any voice
    sharing the language subtag. None means use the engine default.
    """
    wanted = normalize_locale(locale)
    if not wanted:
        return None

    exact = [v for v in voices if normalize_locale(v.locale) == wanted]
    for voice in exact:
        if voice.default:
            return voice
    if exact:
        return exact[0]

    language = wanted.split("-")[0]
    for voice in voices:
        if normalize_locale(voice.locale).split("-")[0] == language:
            return voice
    return None


def clean_for_speech(text: str) -> str:
    """Strip markdown and quoting so engines read plain prose."""
    if not text:
        return ""
    text = re.sub(r'\*+', '', text)
    text = re.sub(r'`+', '', text)
    text = re.sub(r'#+\s*', '', text)
    text = re.sub(r'https?://\S+', '', text)
    text = text.replace('"', '')
    text = re.sub(r'\s+', ' ', text).strip()
    return text[:500]


class SpeechEngine(Protocol):
    """What the announcer needs from a TTS backend."""

    def list_voices(self) -> List[Voice]: ...

    def start(self, text: str, voice: Optional[Voice], rate: float) -> Any: ...

    def stop(self, playback: Any) -> None: ...

    def is_active(self, playback: Any) -> bool: ...


class SubprocessSpeechEngine:
    """espeak / say driven through a child process per utterance."""

    def __init__(self, command: str = "espeak", base_wpm: Optional[int] = None):
        self.command = command
        self.base_wpm = base_wpm or config.get_int("PW_TTS_BASE_WPM", 160)
        self._voices: Optional[List[Voice]] = None

    def list_voices(self) -> List[Voice]:
        if self._voices is not None:
            return self._voices

        args = ["espeak", "--voices"] if self.command == "espeak" else ["say", "-v", "?"]
        try:
            result = subprocess.run(args, capture_output=True, text=True, timeout=5)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Listing {self.command} voices failed: {e}")
            self._voices = []
            return self._voices

        if self.command == "espeak":
            self._voices = self._parse_espeak(result.stdout)
        else:
            self._voices = self._parse_say(result.stdout)
        return self._voices

    @staticmethod
    def _parse_espeak(output: str) -> List[Voice]:
        # Pty Language Age/Gender VoiceName File Other Languages
        voices = []
        for line in output.splitlines()[1:]:
            cols = line.split()
            if len(cols) < 4:
                continue
            voices.append(Voice(id=cols[1], name=cols[3], locale=cols[1]))
        return voices

    @staticmethod
    def _parse_say(output: str) -> List[Voice]:
        # Alex                en_US    # Most people recognize me by my voice.
        voices = []
        for line in output.splitlines():
            match = re.match(r"^(.+?)\s+([a-z]{2,3}[_-][A-Za-z0-9]+)\s+#", line)
            if match:
                name = match.group(1).strip()
                voices.append(Voice(id=name, name=name, locale=match.group(2)))
        return voices

    def start(self, text: str, voice: Optional[Voice], rate: float) -> subprocess.Popen:
        wpm = str(max(40, int(self.base_wpm * rate)))
        if self.command == "espeak":
            cmd = ["espeak", "-s", wpm]
        else:
            cmd = ["say", "-r", wpm]
        if voice is not None:
            cmd.extend(["-v", voice.id])
        cmd.append(text)
        return subprocess.Popen(
            cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, stdin=subprocess.DEVNULL
        )

    def stop(self, playback: subprocess.Popen) -> None:
        if playback.poll() is not None:
            return
        playback.terminate()
        try:
            playback.wait(timeout=1.0)
        except subprocess.TimeoutExpired:
            playback.kill()

    def is_active(self, playback: subprocess.Popen) -> bool:
        return playback.poll() is None


class _Pyttsx3Playback:
    def __init__(self, engine, thread: threading.Thread):
        self.engine = engine
        self.thread = thread


class Pyttsx3SpeechEngine:
    """pyttsx3 driver; each utterance runs its own engine on a worker thread."""

    def __init__(self, base_wpm: Optional[int] = None):
        import pyttsx3

        self._pyttsx3 = pyttsx3
        self.base_wpm = base_wpm or config.get_int("PW_TTS_BASE_WPM", 160)
        self._voices: Optional[List[Voice]] = None

    def list_voices(self) -> List[Voice]:
        if self._voices is not None:
            return self._voices

        engine = self._pyttsx3.init()
        default_id = engine.getProperty('voice')
        voices = []
        for v in engine.getProperty('voices'):
            languages = getattr(v, "languages", None) or [""]
            lang = languages[0]
            if isinstance(lang, bytes):
                lang = lang.decode(errors="ignore").lstrip("\x05")
            voices.append(Voice(id=v.id, name=v.name, locale=lang, default=(v.id == default_id)))
        engine.stop()
        self._voices = voices
        return voices

    def start(self, text: str, voice: Optional[Voice], rate: float) -> _Pyttsx3Playback:
        engine = self._pyttsx3.init()
        engine.setProperty('rate', max(40, int(self.base_wpm * rate)))
        if voice is not None:
            engine.setProperty('voice', voice.id)

        def _run():
            try:
                engine.say(text)
                engine.runAndWait()
            except RuntimeError as e:
                logger.debug(f"pyttsx3 playback failed: {e}")

        thread = threading.Thread(target=_run, name="petwatch-tts", daemon=True)
        thread.start()
        return _Pyttsx3Playback(engine, thread)

    def stop(self, playback: _Pyttsx3Playback) -> None:
        if playback.thread.is_alive():
            playback.engine.stop()
            playback.thread.join(timeout=1.0)

    def is_active(self, playback: _Pyttsx3Playback) -> bool:
        return playback.thread.is_alive()


def create_engine(name: Optional[str] = None) -> Optional[SpeechEngine]:
    """Build the configured engine, falling back by platform priority."""
    name = (name or config.get("PW_TTS_ENGINE", "auto")).lower()

    system = platform.system().lower()
    if system == "darwin":
        priority = ["say", "pyttsx3"]
    elif system == "windows":
        priority = ["pyttsx3"]
    else:
        priority = ["espeak", "pyttsx3"]

    if name != "auto":
        priority = [name] + [p for p in priority if p != name]

    for candidate in priority:
        if candidate in ("espeak", "say"):
            if shutil.which(candidate):
                return SubprocessSpeechEngine(candidate)
        elif candidate == "pyttsx3":
            try:
                return Pyttsx3SpeechEngine()
            except ImportError:
                logger.debug("pyttsx3 not installed")
            except RuntimeError as e:
                logger.debug(f"pyttsx3 init failed: {e}")

    return None


class SpeechAnnouncer:
    """Speaks observations; one utterance at a time."""

    def __init__(self, engine_factory: Optional[Callable[[], Optional[SpeechEngine]]] = None):
        self._engine_factory = engine_factory or create_engine
        self._engine: Optional[SpeechEngine] = None
        self._engine_resolved = False
        self._playback: Any = None
        self._muted = False
        self._lock = Lock()
        self._voice_cache: Dict[str, Optional[Voice]] = {}

    @property
    def engine(self) -> Optional[SpeechEngine]:
        """Engine, constructed on first use."""
        if not self._engine_resolved:
            self._engine = self._engine_factory()
            self._engine_resolved = True
            if self._engine is None:
                logger.warning("No TTS engine available; announcements are disabled")
        return self._engine

    @property
    def muted(self) -> bool:
        return self._muted

    def mute(self):
        self._muted = True

    def unmute(self):
        self._muted = False

    def announce(self, text: str, locale: str = "en-US", rate: float = 1.0) -> bool:
        """Speak ``text``, cancelling anything still playing.

        Returns True if an utterance was started.
        """
        if self._muted:
            return False

        text = clean_for_speech(text)
        if not text:
            return False

        engine = self.engine
        if engine is None:
            return False

        rate = max(0.1, min(rate, 10.0))
        with self._lock:
            self._cancel_locked()
            voice = self._voice_for(engine, locale)
            try:
                self._playback = engine.start(text, voice, rate)
            except OSError as e:
                logger.warning(f"TTS playback failed: {e}")
                self._playback = None
                return False
        return True

    def _voice_for(self, engine: SpeechEngine, locale: str) -> Optional[Voice]:
        if locale not in self._voice_cache:
            self._voice_cache[locale] = select_voice(engine.list_voices(), locale)
        return self._voice_cache[locale]

    def cancel(self):
        """Stop the current utterance, if any."""
        with self._lock:
            self._cancel_locked()

    def _cancel_locked(self):
        if self._playback is None or self._engine is None:
            return
        self._engine.stop(self._playback)
        self._playback = None

    def is_speaking(self) -> bool:
        with self._lock:
            if self._playback is None or self._engine is None:
                return False
            return self._engine.is_active(self._playback)
