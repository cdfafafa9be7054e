import asyncio
import logging

from pipecat.frames.frames import (
    EndFrame,
    Frame,
    TranscriptionFrame,
    TTSSpeakFrame,
)
from pipecat.processors.frame_processor import FrameDirection, FrameProcessor

from callpair import prompts
from callpair.state_machine import ConversationMachine

logger = logging.getLogger(__name__)


class PairingProcessor(FrameProcessor):
    """Pipecat processor that drives the call through the conversation machine.

    Sits between STT and TTS in the pipeline:
      transport.input() -> STT -> [PairingProcessor] -> TTS -> transport.output()

    Each final transcription is handed to the machine and the reply is
    spoken with a TTSSpeakFrame. Transcriptions are consumed here; nothing
    downstream needs them. When the machine ends the call, an EndFrame
    follows once the goodbye has had time to play.
    """

    END_CALL_DELAY_S = 4.0

    def __init__(
        self,
        machine: ConversationMachine,
        call_leg_id: str,
        caller_id: str = "",
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.machine = machine
        self.call_leg_id = call_leg_id
        self.caller_id = caller_id
        self._ending = False
        self._end_task: asyncio.Task | None = None

    def greeting(self) -> str:
        return self.machine.start_call(self.call_leg_id, self.caller_id).speak

    async def process_frame(self, frame: Frame, direction: FrameDirection):
        await super().process_frame(frame, direction)

        if isinstance(frame, TranscriptionFrame) and frame.text.strip():
            await self._handle_transcription(frame)
        else:
            # Interim fragments pass through; the final TranscriptionFrame carries the full utterance.
            await self.push_frame(frame, direction)

    async def _handle_transcription(self, frame: TranscriptionFrame):
        if self._ending:
            return

        text = frame.text.strip()
        logger.info(f"[{self.call_leg_id}] Caller: {text}")

        try:
            action = await self.machine.handle(self.call_leg_id, self.caller_id, None, text)
        except Exception:
            logger.exception(f"[{self.call_leg_id}] Conversation step failed")
            await self._speak(prompts.APOLOGY)
            self._schedule_end()
            return

        if action.speak:
            await self._speak(action.speak)
        if action.end_call:
            self._schedule_end()

    async def _speak(self, text: str):
        await self.push_frame(TTSSpeakFrame(text=text), FrameDirection.DOWNSTREAM)

    def _schedule_end(self):
        self._ending = True
        self._end_task = asyncio.create_task(self._delayed_end_call(delay=self.END_CALL_DELAY_S))

    async def _delayed_end_call(self, delay: float = 4.0):
        """Push EndFrame after a delay to allow TTS to finish speaking."""
        await asyncio.sleep(delay)
        await self.push_frame(EndFrame(), FrameDirection.DOWNSTREAM)
