import pasimple
import webrtcvad
import wave
import asyncio
import logging
import subprocess
import threading
import uuid
import os
import time
from typing import Dict, Optional

from audio.errors import UtteranceTimeout

logger = logging.getLogger(__name__)

# ── AudioModule: VAD utterance capture & paplay playback ──────────────
class AudioModule:
    def __init__(
        self,
        format=pasimple.PA_SAMPLE_S16LE,
        channels=1,
        sample_rate=16000,
        frame_ms=30,
        vad_aggressiveness=1,
    ):
        # Recording/VAD config
        self.FORMAT = format
        self.CHANNELS = channels
        self.SAMPLE_RATE = sample_rate
        self.SAMPLE_WIDTH = pasimple.format2width(format)
        self.FRAME_MS = frame_ms
        self.FRAME_BYTES = int(sample_rate * frame_ms / 1000) * self.SAMPLE_WIDTH * channels

        # VAD
        self.vad = webrtcvad.Vad(vad_aggressiveness)
        self._vad_running = False
        self._vad_thread: Optional[threading.Thread] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.frame_queue: Optional[asyncio.Queue] = None
        # time.monotonic() of the first speech frame of the last utterance
        self.speech_started_at: Optional[float] = None

        # Playback
        self._playback: Optional[subprocess.Popen] = None
        self._playback_lock = threading.Lock()
        self._concurrent: Dict[str, subprocess.Popen] = {}
        self._concurrent_lock = threading.Lock()

    ##### VAD-based record #####
    async def record(self, silence_duration: float = 1.0, tmp_dir: str = 'tmp',
                     min_speech_duration=0.3, max_duration: float = None) -> str:
        """
        Capture one utterance and return the path of the written WAV file.
        Raises UtteranceTimeout if speech does not end within max_duration.
        """
        self.start_vad_stream()
        try:
            if max_duration:
                try:
                    buffer = await asyncio.wait_for(
                        self._collect(silence_duration, min_speech_duration), timeout=max_duration
                    )
                except asyncio.TimeoutError:
                    raise UtteranceTimeout(f"no utterance within {max_duration:.1f}s")
            else:
                buffer = await self._collect(silence_duration, min_speech_duration)
        finally:
            self.stop_vad_stream()

        file_id = str(uuid.uuid4())
        path = os.path.join(tmp_dir, f"{file_id}.wav")
        os.makedirs(tmp_dir, exist_ok=True)
        with wave.open(path, 'wb') as wf:
            wf.setnchannels(self.CHANNELS)
            wf.setsampwidth(self.SAMPLE_WIDTH)
            wf.setframerate(self.SAMPLE_RATE)
            wf.writeframes(bytes(buffer))
        logger.debug("Utterance written to %s (%d bytes)", path, len(buffer))
        return path

    async def _collect(self, silence_duration: float, min_speech_duration: float) -> bytearray:
        buffer = bytearray()
        self.speech_started_at = None
        in_speech = 0
        silence_count = 0
        threshold = int((silence_duration * 1000) / self.FRAME_MS)
        speech_threshold = int((min_speech_duration * 1000) / self.FRAME_MS)
        while True:
            frame, is_speech = await self.frame_queue.get()
            if is_speech:
                if self.speech_started_at is None:
                    self.speech_started_at = time.monotonic()
                in_speech += 1
                buffer.extend(frame)
                silence_count = 0
            elif in_speech > speech_threshold:
                buffer.extend(frame)
                silence_count += 1
                if silence_count >= threshold:
                    return buffer

    def start_vad_stream(self):
        if self._vad_running:
            return
        self.loop = asyncio.get_running_loop()
        self.frame_queue = asyncio.Queue()
        self._vad_running = True
        self._vad_thread = threading.Thread(target=self._vad_reader, daemon=True)
        self._vad_thread.start()

    def stop_vad_stream(self):
        self._vad_running = False
        if self.frame_queue is not None:
            while not self.frame_queue.empty():
                self.frame_queue.get_nowait()

    def _vad_reader(self):
        try:
            with pasimple.PaSimple(pasimple.PA_STREAM_RECORD, self.FORMAT, self.CHANNELS, self.SAMPLE_RATE) as pa:
                while self._vad_running:
                    frame = pa.read(self.FRAME_BYTES)
                    if len(frame) < self.FRAME_BYTES:
                        break
                    is_speech = self.vad.is_speech(frame, self.SAMPLE_RATE)
                    self.loop.call_soon_threadsafe(self.frame_queue.put_nowait, (frame, is_speech))
        except Exception as e:
            logger.error("Microphone capture failed: %s", e, exc_info=True)
        finally:
            self._vad_running = False

    ##### Awaitable playback #####
    async def play(self, path: str) -> int:
        """Play `path` through paplay, replacing anything already playing."""
        with self._playback_lock:
            if self._playback and self._playback.poll() is None:
                self._playback.kill()
            proc = subprocess.Popen(["paplay", path])
            self._playback = proc
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, proc.wait)
        finally:
            with self._playback_lock:
                if self._playback is proc:
                    self._playback = None

    def stop_playback(self):
        with self._playback_lock:
            if self._playback and self._playback.poll() is None:
                self._playback.kill()
            self._playback = None

    ##### Concurrent playback #####
    def play_concurrent(self, path: str) -> str:
        pid = str(uuid.uuid4())
        proc = subprocess.Popen(["paplay", path])
        with self._concurrent_lock:
            # drop finished players
            for old in [k for k, p in self._concurrent.items() if p.poll() is not None]:
                del self._concurrent[old]
            self._concurrent[pid] = proc
        return pid
