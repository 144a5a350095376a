# voice/tts_module.py

import uuid
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from config import Config
from voice.recognizer import SpeechSynthesizer
from voice.stt_module import post_with_retries

if TYPE_CHECKING:
    from audio.audio_module import AudioModule

logger = logging.getLogger(__name__)

class HttpSpeechSynthesizer(SpeechSynthesizer):
    """
    Sends text to the TTS service, saves the returned audio and plays it.
    speak() returns once playback has finished or been stopped.
    """

    def __init__(self, audio: "AudioModule", config: dict = None, output_dir: str = "tmp"):
        self.audio = audio
        self.config = config or Config.get_config()
        http = self.config["http"]
        self.timeout = float(http["timeout"])
        self.max_retries = int(http["max_retries"])
        self.backoff_factor = float(http["backoff_factor"])
        self.output_dir = output_dir

    @property
    def url(self) -> str:
        return self.config["host"]["url"].rstrip("/") + self.config["tts"]["endpoint"]

    async def synthesize(self, text: str, locale: str, rate: float = 1.0, pitch: float = 1.0) -> Path:
        payload = {"text": text, "language": locale, "rate": rate, "pitch": pitch}
        headers = {"Accept": "application/json"}

        # Ensure output directory exists
        Path(self.output_dir).mkdir(parents=True, exist_ok=True)
        out_path = Path(self.output_dir) / f"tts_{uuid.uuid4().hex}.mp3"

        logger.debug("TTS request → %s %r", self.url, payload)
        resp = await post_with_retries(
            self.url, self.timeout, self.max_retries, self.backoff_factor,
            json=payload, headers=headers,
        )
        out_path.write_bytes(resp.content)
        logger.info("TTS audio saved to %s", out_path)
        return out_path

    async def speak(self, text: str, locale: str, rate: float = 1.0, pitch: float = 1.0) -> None:
        path = await self.synthesize(text, locale, rate=rate, pitch=pitch)
        try:
            await self.audio.play(str(path))
        finally:
            path.unlink(missing_ok=True)

    async def stop(self) -> None:
        self.audio.stop_playback()
