# voice/stt_module.py

import os
import logging
import asyncio
import httpx
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from audio.errors import UtteranceTimeout
from config import Config
from events.events import RecognizerEnded, RecognizerError, RecognizerResult, RecognizerStarted
from voice.command_vocabulary import CommandVocabulary, DEFAULT_VOCABULARY
from voice.language import detect_language
from voice.recognizer import Recognizer

if TYPE_CHECKING:
    # imports pasimple, which needs libpulse at import time
    from audio.audio_module import AudioModule

logger = logging.getLogger(__name__)

async def post_with_retries(url: str, timeout: float, max_retries: int,
                            backoff_factor: float, **kwargs) -> httpx.Response:
    """
    POST with retries on network errors/timeouts.
    """
    delay = backoff_factor
    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(url, **kwargs)
                resp.raise_for_status()
                return resp
        except (httpx.ConnectError, httpx.ReadTimeout, httpx.RemoteProtocolError) as e:
            logger.warning("Request to %s failed (attempt %d/%d): %s",
                           url, attempt, max_retries, e)
            if attempt == max_retries:
                logger.error("Max retries reached for %s", url)
                raise
            await asyncio.sleep(delay)
            delay *= 2
        except httpx.HTTPStatusError as e:
            # 4xx or 5xx: no point retrying
            logger.error("Server returned error for %s: %s", url, e)
            raise

class HttpRecognizer(Recognizer):
    """
    Single-utterance recognizer: one VAD-delimited utterance per session,
    transcribed by the ASR service. Continuous listening is the engine's job.
    """

    def __init__(self,
                 audio: "AudioModule",
                 config: dict = None,
                 tmp_dir: str = "tmp",
                 vocabulary: CommandVocabulary = DEFAULT_VOCABULARY):
        super().__init__()
        self.audio = audio
        self.config = config or Config.get_config()
        http = self.config["http"]
        voice = self.config["voice"]
        self.timeout = float(http["timeout"])
        self.max_retries = int(http["max_retries"])
        self.backoff_factor = float(http["backoff_factor"])
        self.silence_duration = float(voice["silence_duration"])
        self.max_utterance = float(voice["max_utterance"])
        self.tmp_dir = tmp_dir
        self.vocabulary = vocabulary
        self._task: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        return self.config["host"]["url"].rstrip("/") + self.config["asr"]["endpoint"]

    async def start(self, locale: str, continuous: bool) -> None:
        if self._task is not None and not self._task.done():
            raise RuntimeError("a recognition session is already running")
        self._task = asyncio.create_task(self._run(locale))

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def destroy(self) -> None:
        self.audio.stop_vad_stream()

    async def _run(self, locale: str) -> None:
        self._dispatch(RecognizerStarted())
        try:
            audio_path = await self.audio.record(
                silence_duration=self.silence_duration,
                tmp_dir=self.tmp_dir,
                max_duration=self.max_utterance,
            )
            captured_at = self.audio.speech_started_at
            text = await self.transcribe(audio_path, locale)
            if text:
                self._dispatch(RecognizerResult(transcript=text, captured_at=captured_at))
            else:
                self._dispatch(RecognizerError(code="no-match"))
        except UtteranceTimeout as e:
            self._dispatch(RecognizerError(code="speech-timeout", message=str(e)))
        except httpx.HTTPError as e:
            self._dispatch(RecognizerError(code="network", message=str(e)))
        except asyncio.CancelledError:
            logger.debug("Recognition session cancelled")
            raise
        except Exception as e:
            logger.error("Recognition session failed: %s", e, exc_info=True)
            self._dispatch(RecognizerError(code="audio-capture", message=str(e)))
        finally:
            self._dispatch(RecognizerEnded())

    async def transcribe(self, audio_path: str, locale: str = "") -> str:
        if not os.path.isfile(audio_path):
            logger.warning("transcribe: file not found %s", audio_path)
            return ""

        url = self.url
        logger.debug("Transcribing %s → %s", audio_path, url)
        filename = Path(audio_path).name
        headers = {"Accept": "application/json"}
        try:
            with open(audio_path, "rb") as f:
                files = {"audio_file": (filename, f, "audio/wav")}
                resp = await post_with_retries(
                    url, self.timeout, self.max_retries, self.backoff_factor,
                    files=files, data=self.form_data(locale), headers=headers,
                )
            return resp.json().get("transcript", "").strip()
        finally:
            try:
                os.remove(audio_path)
            except OSError:
                logger.debug("Could not remove %s", audio_path)

    def form_data(self, locale: str) -> dict:
        data = {"language": locale}
        phrases = self.context_phrases(locale)
        if phrases:
            # biases the ASR towards the command words
            data["context"] = ",".join(phrases)
        return data

    def context_phrases(self, locale: str) -> List[str]:
        if not locale:
            return []
        return self.vocabulary.context_phrases(detect_language(locale))
