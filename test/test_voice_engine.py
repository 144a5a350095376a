import asyncio
import time

import pytest

from conftest import FAST_VOICE, FakeRecognizer, FakeSynthesizer, settle
from events.events import CommandDetected, ListeningChanged, RecognitionError, TranscriptRecognized
from voice.command_vocabulary import Command
from voice.language import Language
from voice.voice_engine import RestartPolicy, VoiceCommandEngine

@pytest.fixture
def heard(bus):
    received = {"transcripts": [], "commands": [], "errors": [], "listening": []}
    bus.subscribe(TranscriptRecognized, lambda ev: received["transcripts"].append(ev.text))
    bus.subscribe(CommandDetected, lambda ev: received["commands"].append(ev.command))
    bus.subscribe(RecognitionError, lambda ev: received["errors"].append(ev.code))
    bus.subscribe(ListeningChanged, lambda ev: received["listening"].append(ev.listening))
    return received

async def test_start_opens_session(engine, recognizer):
    assert await engine.start(continuous=True, language=Language.SECONDARY)
    assert recognizer.starts == [("en-US", True)]
    session = engine.session
    assert session.continuous_requested
    assert session.language is Language.SECONDARY
    assert engine.is_listening
    assert engine.is_active

async def test_listening_follows_recognizer_events(engine, recognizer, heard):
    recognizer.auto_started = False
    await engine.start()
    assert not engine.is_listening
    recognizer.started()
    assert engine.is_listening
    recognizer.ended()
    assert not engine.is_listening
    assert heard["listening"] == [True, False]

async def test_result_restart_end_to_end(engine, recognizer, heard):
    await engine.start(continuous=True)
    recognizer.result("quiero evaluar por favor")
    recognizer.ended()

    assert heard["transcripts"] == ["quiero evaluar por favor"]
    assert heard["commands"] == [Command.EVALUATE]
    assert engine.last_transcript == "quiero evaluar por favor"
    assert len(recognizer.starts) == 1

    await settle(engine.bus, delay=0.05)
    assert recognizer.starts == [("es-ES", True), ("es-ES", True)]
    assert engine.is_listening

async def test_transcript_without_command(engine, recognizer, heard):
    await engine.start()
    recognizer.result("hola que tal")
    assert heard["transcripts"] == ["hola que tal"]
    assert heard["commands"] == []

async def test_last_transcript_is_overwritten(engine, recognizer):
    await engine.start()
    recognizer.result("uno")
    recognizer.result("foto")
    assert engine.last_transcript == "foto"

async def test_no_restart_without_continuous(engine, recognizer):
    await engine.start(continuous=False)
    recognizer.ended()
    await settle(engine.bus, delay=0.05)
    assert len(recognizer.starts) == 1

async def test_error_is_reported_and_retried(engine, recognizer, heard):
    await engine.start(continuous=True)
    recognizer.error("no-match")
    assert heard["errors"] == ["no-match"]
    assert not engine.is_listening
    await settle(engine.bus, delay=0.05)
    assert len(recognizer.starts) == 2

async def test_error_then_end_restarts_once(engine, recognizer):
    await engine.start(continuous=True)
    recognizer.error("network")
    recognizer.ended()
    await settle(engine.bus, delay=0.05)
    assert len(recognizer.starts) == 2

async def test_stop_cancels_pending_restart(engine, recognizer):
    await engine.start(continuous=True)
    recognizer.ended()          # restart now scheduled
    await engine.stop()
    await settle(engine.bus, delay=0.05)
    assert len(recognizer.starts) == 1
    assert engine.session is None
    assert not engine.is_listening

async def test_end_arriving_after_stop_does_not_restart(engine, recognizer):
    await engine.start(continuous=True)
    await engine.stop()
    recognizer.ended()
    recognizer.error("aborted")
    await settle(engine.bus, delay=0.05)
    assert len(recognizer.starts) == 1

async def test_stop_clears_continuous_before_recognizer_stop(bus, synthesizer):
    seen = []

    class Watching(FakeRecognizer):
        async def stop(self):
            seen.append(engine.session)
            # terminal event racing with the stop call
            self.ended()
            await super().stop()

    recognizer = Watching()
    engine = VoiceCommandEngine(bus, recognizer, synthesizer, timings=FAST_VOICE)
    await engine.start(continuous=True)
    session = engine.session
    await engine.stop()
    await settle(bus, delay=0.05)

    assert not session.continuous_requested
    assert seen == [None]
    assert len(recognizer.starts) == 1

async def test_stop_during_restart_start_releases_recognizer(engine, recognizer):
    await engine.start(continuous=True)
    recognizer.gate = asyncio.Event()
    recognizer.ended()
    await asyncio.sleep(0.05)   # restart is now blocked inside recognizer.start
    assert len(recognizer.starts) == 2

    stopping = asyncio.create_task(engine.stop())
    await asyncio.sleep(0)
    assert not engine.session.continuous_requested
    assert not stopping.done()   # waits for the opening session

    recognizer.gate.set()
    await stopping
    await settle(engine.bus, delay=0.02)

    assert engine.session is None
    assert not engine.is_listening
    assert recognizer.stops == 1
    assert recognizer.destroys == 1
    assert len(recognizer.starts) == 2

async def test_overlapping_starts_keep_the_newest_session(engine, recognizer, journal):
    recognizer.gate = asyncio.Event()
    first = asyncio.create_task(engine.start(continuous=True))
    await asyncio.sleep(0)
    second = asyncio.create_task(engine.start(continuous=True))
    await asyncio.sleep(0)

    recognizer.gate.set()
    assert await first
    assert await second
    await settle(engine.bus, delay=0.02)

    assert journal == [
        "recognizer.start", "recognizer.stop", "recognizer.destroy", "recognizer.start",
    ]
    assert engine.is_listening
    assert engine.session.outstanding

async def test_start_while_active_forces_stop_first(engine, recognizer, journal):
    await engine.start(continuous=True)
    assert await engine.start(continuous=False)
    assert journal == ["recognizer.start", "recognizer.stop", "recognizer.destroy", "recognizer.start"]
    assert recognizer.destroys == 1
    assert not engine.session.continuous_requested

async def test_forced_stop_swallows_errors(engine, recognizer, heard):
    await engine.start()
    recognizer.fail_stop = True
    assert await engine.start()
    assert heard["errors"] == []

async def test_only_one_engine_holds_the_recognizer(bus, engine, recognizer):
    other_recognizer = FakeRecognizer()
    other = VoiceCommandEngine(bus, other_recognizer, FakeSynthesizer(), timings=FAST_VOICE)

    await engine.start(continuous=True)
    await other.start(continuous=True)

    assert recognizer.stops == 1
    assert engine.session is None
    assert not engine.is_active
    assert other.is_active

    recognizer.ended()
    await settle(bus, delay=0.05)
    assert len(recognizer.starts) == 1

async def test_start_failure_is_reported_not_raised(engine, recognizer, heard):
    recognizer.fail_start = True
    assert await engine.start() is False
    assert not engine.is_listening
    assert heard["errors"] == ["start-failed"]

async def test_failed_continuous_start_keeps_retrying(engine, recognizer):
    recognizer.fail_start = True
    assert await engine.start(continuous=True) is False
    await settle(engine.bus, delay=0.05)
    assert len(recognizer.starts) >= 2

    recognizer.fail_start = False
    await settle(engine.bus, delay=0.05)
    assert engine.is_listening

async def test_stop_failure_is_reported_not_raised(engine, recognizer, heard):
    await engine.start(continuous=True)
    recognizer.fail_stop = True
    await engine.stop()
    assert heard["errors"] == ["stop-failed"]
    assert not engine.is_listening
    assert recognizer.destroys == 1
    assert not engine.is_active

async def test_restart_policy_can_end_the_loop(bus, recognizer, synthesizer):
    class Capped(RestartPolicy):
        def delay_for(self, attempt):
            return 0.01 if attempt <= 1 else None

    engine = VoiceCommandEngine(bus, recognizer, synthesizer, timings=FAST_VOICE, restart_policy=Capped())
    await engine.start(continuous=True)
    recognizer.ended()
    await settle(bus, delay=0.05)
    recognizer.ended()
    await settle(bus, delay=0.05)
    assert len(recognizer.starts) == 2

async def test_listeners_fan_out_and_unsubscribe(engine, recognizer):
    first, second = [], []
    sub = engine.on_command(lambda ev: first.append(ev.command))
    engine.on_command(lambda ev: second.append(ev.command))

    await engine.start()
    recognizer.result("salir")
    sub.cancel()
    recognizer.result("enviar")

    assert first == [Command.EXIT]
    assert second == [Command.EXIT, Command.SEND]

async def test_speak_uses_session_language(engine, synthesizer):
    engine.language = Language.SECONDARY
    assert await engine.speak("hello")
    assert synthesizer.spoken == [("hello", "en-US", 1.0)]

async def test_speak_failure_returns_false(engine, synthesizer):
    synthesizer.fail = True
    assert await engine.speak("hola") is False
    assert not engine.is_speaking

async def test_results_during_speech_are_dropped(engine, recognizer, synthesizer, heard):
    await engine.start(continuous=True)
    synthesizer.gate = asyncio.Event()
    speaking = asyncio.create_task(engine.speak("Saliendo"))
    await asyncio.sleep(0)
    assert engine.is_speaking

    recognizer.result("saliendo")
    recognizer.result("salir")
    assert heard["commands"] == []

    synthesizer.gate.set()
    await speaking
    recognizer.result("salir")
    assert heard["commands"] == [Command.EXIT]

async def test_close_detaches_recognizer(engine, recognizer, synthesizer, heard):
    await engine.start(continuous=True)
    await engine.close()
    recognizer.result("salir")
    assert synthesizer.stops == 1
    assert heard["commands"] == []

async def test_results_recorded_over_speech_are_dropped(engine, recognizer, heard):
    await engine.start(continuous=True)
    before = time.monotonic()
    assert await engine.speak("Listo para evaluar")

    # delivered after the echo window, but the capture began during playback
    recognizer.result("listo para evaluar", captured_at=before)
    assert heard["commands"] == []

    recognizer.result("evaluar", captured_at=time.monotonic())
    assert heard["commands"] == [Command.EVALUATE]
