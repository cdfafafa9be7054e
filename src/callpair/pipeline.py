import logging

import aiohttp
from fastapi import WebSocket
from pipecat.audio.vad.silero import SileroVADAnalyzer
from pipecat.audio.vad.vad_analyzer import VADParams
from pipecat.frames.frames import EndFrame, TTSSpeakFrame
from pipecat.pipeline.pipeline import Pipeline
from pipecat.pipeline.runner import PipelineRunner
from pipecat.pipeline.task import PipelineParams, PipelineTask
from pipecat.runner.utils import parse_telephony_websocket
from pipecat.serializers.twilio import TwilioFrameSerializer
from pipecat.services.deepgram.stt import DeepgramSTTService
from pipecat.services.deepgram.tts import DeepgramHttpTTSService
from pipecat.transports.websocket.fastapi import (
    FastAPIWebsocketParams,
    FastAPIWebsocketTransport,
)

from callpair.config import Settings
from callpair.normalizer import mask_phone
from callpair.processor import PairingProcessor
from callpair.state_machine import ConversationMachine

logger = logging.getLogger(__name__)

# Twilio media streams are 8kHz mulaw; asking TTS for 8kHz avoids resampling.
TWILIO_SAMPLE_RATE = 8000


async def create_pipeline(websocket: WebSocket, machine: ConversationMachine, settings: Settings):
    """Create and run the Pipecat pipeline for one inbound Twilio media stream."""

    _, call_data = await parse_telephony_websocket(websocket)
    stream_sid = call_data["stream_id"]
    call_sid = call_data["call_id"]
    caller_phone = call_data.get("body", {}).get("From", "")
    if not caller_phone:
        logger.warning(f"No caller phone in stream handshake, keys: {list(call_data.get('body', {}).keys())}")

    logger.info(f"Stream call started: {call_sid} from {mask_phone(caller_phone)}")

    serializer = TwilioFrameSerializer(
        stream_sid=stream_sid,
        call_sid=call_sid,
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
    )
    transport = FastAPIWebsocketTransport(
        websocket=websocket,
        params=FastAPIWebsocketParams(
            audio_in_enabled=True,
            audio_out_enabled=True,
            add_wav_header=False,
            vad_analyzer=SileroVADAnalyzer(
                params=VADParams(
                    confidence=0.8,
                    start_secs=0.3,
                    # Callers pause between digits; don't cut a code in half.
                    stop_secs=0.8,
                ),
            ),
            serializer=serializer,
        ),
    )

    stt = DeepgramSTTService(api_key=settings.deepgram_api_key)

    http_session = aiohttp.ClientSession()
    tts = DeepgramHttpTTSService(
        api_key=settings.deepgram_api_key,
        aiohttp_session=http_session,
        voice=settings.deepgram_tts_voice,
        sample_rate=TWILIO_SAMPLE_RATE,
        encoding="linear16",
    )

    pairing = PairingProcessor(machine=machine, call_leg_id=call_sid, caller_id=caller_phone)

    pipeline = Pipeline([
        transport.input(),
        stt,
        pairing,
        tts,
        transport.output(),
    ])

    task = PipelineTask(
        pipeline,
        params=PipelineParams(
            audio_in_sample_rate=TWILIO_SAMPLE_RATE,
            audio_out_sample_rate=TWILIO_SAMPLE_RATE,
            allow_interruptions=False,
        ),
    )

    @transport.event_handler("on_client_connected")
    async def on_connected(transport, client):
        await task.queue_frames([TTSSpeakFrame(pairing.greeting())])

    @transport.event_handler("on_client_disconnected")
    async def on_disconnected(transport, client):
        logger.info(f"Client disconnected, ending pipeline for {call_sid}")
        await task.queue_frames([EndFrame()])

    runner = PipelineRunner(handle_sigint=False)
    try:
        await runner.run(task)
    finally:
        await http_session.close()
        try:
            await machine.end_call(call_sid)
        except Exception as e:
            logger.error(f"Recording end of call {call_sid} failed: {e}")

    logger.info(f"Stream call ended: {call_sid}")
