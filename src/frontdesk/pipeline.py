"""
Per-call voice pipeline.

One VoicePipeline serves one Twilio media stream. All turn state (the state
machine, the utterance buffer, the interrupt buffer) is owned by a single
consumer task that applies typed commands from an asyncio.Queue:

    WebSocket handler  -> InboundFrame
    boundary timer     -> BoundaryTick
    turn task          -> ReplyReady / TurnAborted
    playback task      -> PlaybackFinished

STT, dialogue and TTS run in a separate turn task so the owner never blocks
on the network. Every turn gets a generation id; results from a turn that is
no longer current are dropped. Playback is paced at 20ms per frame and checks
its generation before every frame, so a barge-in stops output immediately.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from src.frontdesk.audio import AudioFrame, chunk_audio_list, decode, tts_pcm_to_twilio_ulaw
from src.frontdesk.audit import AuditSink
from src.frontdesk.barge_in import BargeInController
from src.frontdesk.config import Config, get_config
from src.frontdesk.dialogue import RETRY_PROMPT, DialogueOrchestrator, ReplyComposer
from src.frontdesk.endpointing import BoundaryDecision, TurnBoundaryDetector, Utterance
from src.frontdesk.extract import Extractor, LLMExtractor, RuleBasedExtractor
from src.frontdesk.llm import OpenAIChat
from src.frontdesk.resilience import ExternalCallError
from src.frontdesk.rooms import RoomDirectory, RoomHandle, create_room_directory, room_name_for
from src.frontdesk.session import Session
from src.frontdesk.stt import OpenAITranscriber, Transcriber
from src.frontdesk.tools import ToolInvoker
from src.frontdesk.tts import OpenAISynthesizer, Synthesizer
from src.frontdesk.turn_state import (
    BoundaryTick,
    InboundFrame,
    InvalidTransition,
    PlaybackFinished,
    ReplyReady,
    Shutdown,
    TurnAborted,
    TurnState,
    TurnStateMachine,
)
from src.frontdesk.twilio_protocol import (
    Connected,
    Mark,
    Media,
    MediaStream,
    Start,
    Stop,
    mark_generation,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


@dataclass
class TurnMetrics:
    """Metrics for a single conversation turn."""
    turn_id: int = 0
    start_time: float = 0.0
    utterance_ms: float = 0.0
    stt_ms: float = 0.0
    dialogue_ms: float = 0.0
    tts_ms: float = 0.0
    total_turn_ms: float = 0.0
    tool_calls: int = 0
    outcome: str = ""
    was_interrupted: bool = False

    def finalize(self, outcome: str) -> None:
        """Calculate total turn time."""
        self.outcome = outcome
        if self.start_time > 0:
            self.total_turn_ms = (time.time() - self.start_time) * 1000


@dataclass
class CallMetrics:
    """Metrics for an entire call."""
    call_sid: str = ""
    stream_sid: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    turns: List[TurnMetrics] = field(default_factory=list)
    total_interruptions: int = 0
    discarded_utterances: int = 0
    dropped_frames: int = 0
    frames_received: int = 0
    frames_sent: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_sid": self.call_sid,
            "stream_sid": self.stream_sid,
            "duration_seconds": round(self.duration_seconds, 2),
            "total_turns": len(self.turns),
            "total_interruptions": self.total_interruptions,
            "discarded_utterances": self.discarded_utterances,
            "dropped_frames": self.dropped_frames,
            "frames_received": self.frames_received,
            "frames_sent": self.frames_sent,
            "avg_turn_ms": round(
                sum(t.total_turn_ms for t in self.turns) / len(self.turns), 2
            ) if self.turns else 0,
        }


@dataclass
class PipelineServices:
    """Process-scoped collaborators, built once at startup and shared by every call."""
    config: Config
    invoker: ToolInvoker
    audit: AuditSink
    rooms: RoomDirectory
    transcriber: Transcriber
    synthesizer: Synthesizer
    extractor: Extractor
    chat: Optional[OpenAIChat] = None

    async def close(self) -> None:
        await self.rooms.close()
        await self.synthesizer.close()


def build_services(config: Optional[Config] = None) -> PipelineServices:
    """Construct the production service set from configuration."""
    if config is None:
        config = get_config()

    rules = RuleBasedExtractor()
    chat = OpenAIChat(config) if config.uses_llm else None
    extractor: Extractor = LLMExtractor(chat, fallback=rules) if chat else rules

    return PipelineServices(
        config=config,
        invoker=ToolInvoker(),
        audit=AuditSink(config.audit_dir),
        rooms=create_room_directory(config),
        transcriber=OpenAITranscriber(config),
        synthesizer=OpenAISynthesizer(config),
        extractor=extractor,
        chat=chat,
    )


class VoicePipeline:
    """
    Turn-taking engine for one call.

    Manages the flow of audio and text between Twilio, STT, the dialogue
    orchestrator and TTS.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        services: PipelineServices,
        *,
        session_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the pipeline.

        Args:
            send_message: Async function to send WebSocket messages to Twilio
            services: Shared process-scoped services
            session_id: Optional fixed session id (random by default)
            clock: Monotonic clock used for frame timestamps and boundary ticks
        """
        self.config = services.config
        self.services = services
        self._send_message = send_message
        self._clock = clock

        self.session = Session(session_id=session_id or uuid.uuid4().hex[:16])

        # Components
        self._stream = MediaStream()
        self._fsm = TurnStateMachine(self.session.session_id)
        self._detector = TurnBoundaryDetector.from_config(self.config)
        self._barge_in = BargeInController.from_config(self.config)
        self._orchestrator = DialogueOrchestrator(
            services.extractor,
            services.invoker,
            chat=services.chat,
            composer=ReplyComposer(self.config.clinic_name),
            config=self.config,
        )

        # Command queue consumed by the state owner
        self._commands: asyncio.Queue = asyncio.Queue()
        self._owner_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._playback_task: Optional[asyncio.Task] = None

        # Turn generation: bumped on every finalized utterance
        self._generation = 0
        # Generation currently allowed to emit audio (None = nothing playing)
        self._playback_generation: Optional[int] = None
        self._frame_seq = 0
        self._current_turn_metrics: Optional[TurnMetrics] = None
        self._call_metrics = CallMetrics()

        self._started = False
        self._closed = False

    @property
    def state(self) -> TurnState:
        return self._fsm.state

    @property
    def call_sid(self) -> str:
        return self._stream.call_sid

    @property
    def stream_sid(self) -> str:
        return self._stream.stream_sid

    @property
    def metrics(self) -> CallMetrics:
        return self._call_metrics

    @property
    def is_closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Inbound Twilio messages
    # ------------------------------------------------------------------

    async def handle_message(self, raw_message: str) -> None:
        """
        Handle an incoming WebSocket message from Twilio.

        Args:
            raw_message: Raw JSON message string
        """
        try:
            event = parse_twilio_message(raw_message)
        except ValueError as e:
            logger.warning("Failed to parse Twilio message", error=str(e))
            return

        if isinstance(event, Media):
            self._handle_media(event)

        elif isinstance(event, Start):
            if self._stream.open(event):
                await self._handle_start()

        elif isinstance(event, Mark):
            generation = mark_generation(event.mark.name)
            logger.debug(
                "Twilio mark ack",
                mark_name=event.mark.name,
                playback_generation_id=generation,
                stale=generation != self._stream.generation,
            )

        elif isinstance(event, Stop):
            self._stream.close()
            await self.stop(reason="stream_stopped")

        elif isinstance(event, Connected):
            logger.debug("Twilio connected", protocol=event.protocol)

    async def _handle_start(self) -> None:
        """Handle call start: open the room, start listening, start the owner and timer."""
        call_sid = self._stream.call_sid
        self.session.call_sid = call_sid
        self._call_metrics.call_sid = call_sid
        self._call_metrics.stream_sid = self._stream.stream_sid

        self.session.room = await self._open_room()

        # The owner task does not exist yet, so this is the only writer.
        self._fsm.transition(TurnState.LISTENING, reason="call_start")
        self._started = True
        self._owner_task = asyncio.create_task(self._run_owner())
        self._timer_task = asyncio.create_task(self._run_boundary_timer())

        logger.info(
            "Call started",
            session_id=self.session.session_id,
            call_sid=call_sid,
            stream_sid=self._stream.stream_sid,
            room=self.session.room.name,
        )

    async def _open_room(self) -> RoomHandle:
        session_id = self.session.session_id
        try:
            return await self.services.rooms.create(session_id)
        except Exception:
            logger.exception("Room creation failed, using standalone room", session_id=session_id)
            return RoomHandle(name=room_name_for(session_id), session_id=session_id, standalone=True)

    def _handle_media(self, event: Media) -> None:
        if not self._stream.accepts(event):
            logger.debug("Media outside active stream discarded", phase=self._stream.phase.value)
            return

        self._frame_seq += 1
        self._call_metrics.frames_received += 1
        frame = AudioFrame(seq=self._frame_seq, samples=decode(event.media.payload), received_at=self._clock())
        self._post(InboundFrame(frame))

    def _post(self, command: Any) -> None:
        if self._closed:
            return
        self._commands.put_nowait(command)

    # ------------------------------------------------------------------
    # State owner
    # ------------------------------------------------------------------

    async def _run_owner(self) -> None:
        """Single consumer of the command queue; the only writer of turn state after start."""
        while True:
            command = await self._commands.get()
            if isinstance(command, Shutdown):
                break
            if self._closed:
                continue
            try:
                await self._apply(command)
            except InvalidTransition as e:
                logger.error("Rejected turn transition", session_id=self.session.session_id, error=str(e))
            except Exception:
                logger.exception("Command failed", command=type(command).__name__)

    async def _apply(self, command: Any) -> None:
        state = self._fsm.state

        if isinstance(command, InboundFrame):
            if state == TurnState.LISTENING:
                self._detector.on_frame(command.frame)
            elif state == TurnState.SPEAKING:
                if self._barge_in.on_frame(command.frame):
                    await self._handle_barge_in()
            else:
                self._call_metrics.dropped_frames += 1

        elif isinstance(command, BoundaryTick):
            if state != TurnState.LISTENING:
                return
            result = self._detector.poll(command.now)
            if result.decision == BoundaryDecision.DISCARD:
                self._call_metrics.discarded_utterances += 1
            elif result.decision == BoundaryDecision.FINALIZE and result.utterance is not None:
                self._fsm.transition(TurnState.THINKING, reason=f"end_of_turn:{result.reason}")
                self._start_turn(result.utterance)

        elif isinstance(command, ReplyReady):
            if command.generation != self._generation or state != TurnState.THINKING:
                logger.debug("Stale reply dropped", generation=command.generation, current=self._generation)
                return
            self._fsm.transition(TurnState.SPEAKING, reason="reply_ready")
            self._barge_in.discard()
            self._playback_generation = command.generation
            self._playback_task = asyncio.create_task(
                self._play(command.generation, tts_pcm_to_twilio_ulaw(command.samples, command.sample_rate))
            )

        elif isinstance(command, TurnAborted):
            if command.generation != self._generation or state != TurnState.THINKING:
                return
            self._end_turn(command.reason)
            self._fsm.transition(TurnState.LISTENING, reason=command.reason)

        elif isinstance(command, PlaybackFinished):
            if command.generation != self._playback_generation or state != TurnState.SPEAKING:
                return
            self._playback_generation = None
            self._barge_in.discard()
            self._end_turn("spoken")
            self._fsm.transition(TurnState.LISTENING, reason="playback_finished")

    async def _handle_barge_in(self) -> None:
        """Caller talked over the reply: stop playback, clear Twilio, keep the caller's audio."""
        interrupt = self._barge_in.take()
        self._cancel_playback()
        self._call_metrics.total_interruptions += 1
        if self._current_turn_metrics:
            self._current_turn_metrics.was_interrupted = True
        self._end_turn("interrupted")

        # Bump playback generation so any late mark acks are ignored after `clear`.
        playback_generation_id = self._stream.new_generation()
        clear_msg = self._stream.clear()
        if clear_msg:
            await self._send(clear_msg)

        self._fsm.transition(TurnState.LISTENING, reason="barge_in")
        self._detector.seed(
            interrupt.samples,
            started_at=interrupt.started_at,
            last_frame_at=interrupt.last_frame_at,
        )
        logger.info(
            "Barge-in",
            session_id=self.session.session_id,
            preserved_samples=int(interrupt.samples.shape[0]),
            playback_generation_id=playback_generation_id,
        )

    def _cancel_playback(self) -> None:
        self._playback_generation = None
        if self._playback_task and not self._playback_task.done():
            self._playback_task.cancel()
        self._playback_task = None

    # ------------------------------------------------------------------
    # Turn task
    # ------------------------------------------------------------------

    def _start_turn(self, utterance: Utterance) -> None:
        self._generation += 1
        self._current_turn_metrics = TurnMetrics(
            turn_id=self._generation,
            start_time=time.time(),
            utterance_ms=utterance.duration_ms,
        )
        self._turn_task = asyncio.create_task(
            self._run_turn(self._generation, utterance, self._current_turn_metrics)
        )

    async def _run_turn(self, generation: int, utterance: Utterance, metrics: TurnMetrics) -> None:
        """STT -> dialogue -> TTS. Reports back to the owner through the command queue."""
        try:
            started = time.time()
            try:
                transcription = await self.services.transcriber.transcribe(
                    utterance.samples, utterance.sample_rate
                )
            except ExternalCallError as e:
                logger.warning("STT failed, asking caller to repeat", error=str(e))
                reply = RETRY_PROMPT
                self.session.add_transcript("agent", reply)
            else:
                metrics.stt_ms = (time.time() - started) * 1000
                if transcription.is_empty:
                    self._post(TurnAborted(generation, "empty_transcript"))
                    return

                started = time.time()
                outcome = await self._orchestrator.handle_utterance(self.session, transcription.text)
                metrics.dialogue_ms = (time.time() - started) * 1000
                metrics.tool_calls = len(outcome.tool_results)
                reply = outcome.reply

            started = time.time()
            try:
                synthesis = await self.services.synthesizer.synthesize(reply)
            except ExternalCallError as e:
                logger.warning("TTS failed, reply not spoken", error=str(e))
                self._post(TurnAborted(generation, "tts_failed"))
                return
            metrics.tts_ms = (time.time() - started) * 1000

            if synthesis.samples.size == 0:
                self._post(TurnAborted(generation, "no_audio"))
                return

            self._post(ReplyReady(generation, synthesis.samples, synthesis.sample_rate, text=reply))

        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Turn failed", session_id=self.session.session_id, generation=generation)
            await self._ask_to_repeat(generation)

    async def _ask_to_repeat(self, generation: int) -> None:
        """Speak RETRY_PROMPT after a failed turn; abort silently if even that cannot be synthesized."""
        try:
            synthesis = await self.services.synthesizer.synthesize(RETRY_PROMPT)
        except Exception as e:
            logger.warning("Retry prompt not spoken", session_id=self.session.session_id, error=str(e))
            self._post(TurnAborted(generation, "error"))
            return

        if synthesis.samples.size == 0:
            self._post(TurnAborted(generation, "error"))
            return
        self.session.add_transcript("agent", RETRY_PROMPT)
        self._post(ReplyReady(generation, synthesis.samples, synthesis.sample_rate, text=RETRY_PROMPT))

    def _end_turn(self, outcome: str) -> None:
        """End the current conversation turn."""
        if self._current_turn_metrics:
            self._current_turn_metrics.finalize(outcome)
            self._call_metrics.turns.append(self._current_turn_metrics)

            logger.info(
                "Turn completed",
                turn_id=self._current_turn_metrics.turn_id,
                outcome=outcome,
                utterance_ms=round(self._current_turn_metrics.utterance_ms, 1),
                stt_ms=round(self._current_turn_metrics.stt_ms, 2),
                dialogue_ms=round(self._current_turn_metrics.dialogue_ms, 2),
                tts_ms=round(self._current_turn_metrics.tts_ms, 2),
                total_turn_ms=round(self._current_turn_metrics.total_turn_ms, 2),
                tool_calls=self._current_turn_metrics.tool_calls,
                was_interrupted=self._current_turn_metrics.was_interrupted,
            )

            self._current_turn_metrics = None

    # ------------------------------------------------------------------
    # Playback and timers
    # ------------------------------------------------------------------

    async def _play(self, generation: int, ulaw_audio: bytes) -> None:
        """Send the reply in paced 20ms frames, then report completion after the tail."""
        loop = asyncio.get_running_loop()
        pace_s = self.config.playback_pace_ms / 1000.0
        next_send_time = loop.time()

        for chunk in chunk_audio_list(ulaw_audio):
            if self._playback_generation != generation or self._closed:
                return
            messages = self._stream.media_frames(chunk)
            for message in messages:
                await self._send(message)
            self._call_metrics.frames_sent += len(messages)

            next_send_time += pace_s
            await asyncio.sleep(max(0.0, next_send_time - loop.time()))

        if self._playback_generation != generation:
            return
        mark = self._stream.next_mark()
        if mark:
            await self._send(mark)

        # Speech-finished timer: Twilio is still playing its last buffered frames.
        await asyncio.sleep(self.config.speech_tail_ms / 1000.0)
        if self._playback_generation == generation:
            self._post(PlaybackFinished(generation))

    async def _run_boundary_timer(self) -> None:
        interval_s = self.config.boundary_check_ms / 1000.0
        while not self._closed:
            await asyncio.sleep(interval_s)
            self._post(BoundaryTick(self._clock()))

    async def _send(self, message: str) -> None:
        try:
            await self._send_message(message)
        except Exception as e:
            logger.warning("Failed to send message to Twilio", error=str(e))

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def stop(self, reason: str = "teardown") -> None:
        """Tear down the call: cancel tasks, release buffers, write the audit record once."""
        if self._closed:
            return
        self._closed = True
        logger.info("Stopping voice pipeline", session_id=self.session.session_id, reason=reason)

        self._playback_generation = None
        tasks_to_cancel: List[asyncio.Task] = []
        for task in (self._timer_task, self._playback_task, self._turn_task):
            if task and not task.done():
                task.cancel()
                tasks_to_cancel.append(task)

        if self._owner_task and not self._owner_task.done():
            self._commands.put_nowait(Shutdown(reason))
            tasks_to_cancel.append(self._owner_task)

        if tasks_to_cancel:
            await asyncio.gather(*tasks_to_cancel, return_exceptions=True)

        if self._fsm.state != TurnState.IDLE:
            self._fsm.transition(TurnState.IDLE, reason=reason)
        self._detector.reset()
        self._barge_in.discard()
        self._end_turn("teardown")

        if self._started:
            try:
                await self.services.audit.write(self.session.to_record(self._fsm.state.value))
            except Exception:
                logger.exception("Audit write failed", session_id=self.session.session_id)

            if self.session.room is not None:
                await self.services.rooms.delete(self.session.room)

        self._call_metrics.end_time = time.time()
        logger.info("Voice pipeline stopped", metrics=self._call_metrics.to_dict())


async def create_pipeline(
    send_message: Callable[[str], Awaitable[None]],
    services: PipelineServices,
) -> VoicePipeline:
    """
    Create a pipeline for a new media stream.

    The pipeline starts listening when Twilio's `start` event arrives.
    """
    return VoicePipeline(send_message, services)
