import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response

from clinicdesk import config
from clinicdesk.alerts import FanoutFailureSink, RingBufferFailureSink, WebhookFailureSink
from clinicdesk.availability import AvailabilityAggregator
from clinicdesk.booking import BookingOrchestrator
from clinicdesk.cache import TTLCache
from clinicdesk.identity import IdentityResolver
from clinicdesk.interpreter import OpenAITurnInterpreter
from clinicdesk.knowledge import load_knowledge
from clinicdesk.notifications import LoggingNotifier, WebhookNotifier
from clinicdesk.processor import TurnProcessor
from clinicdesk.registry import CallRegistry
from clinicdesk.retry import RetryPolicy
from clinicdesk.scheduler import SchedulerClient
from clinicdesk.state_machine import ConversationStateMachine
from clinicdesk.transcript import call_outcome, to_timestamped_dump
from clinicdesk.twiml import render_action, render_error

load_dotenv()

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 60
FINAL_CALL_STATUSES = frozenset({"completed", "busy", "failed", "no-answer", "canceled"})
LOST_CALL_REPLY = "Sorry, something went wrong on our end. Please call back and we'll help you then. Goodbye."


@dataclass
class Runtime:
    registry: CallRegistry
    processor: TurnProcessor
    public_base_url: str = ""

    @property
    def continue_url(self) -> str:
        return f"{self.public_base_url}/voice/continue"


def build_runtime(settings: config.Settings) -> Runtime:
    """Wire the production object graph from settings."""
    policy = RetryPolicy(max_attempts=settings.retry_max_attempts, base_delay=settings.retry_base_delay)
    scheduler = SchedulerClient(settings.scheduler_base_url, settings.scheduler_api_key, settings.http_timeout)

    failures = RingBufferFailureSink()
    if settings.alerts_webhook_url:
        failures = FanoutFailureSink(
            failures,
            WebhookFailureSink(settings.alerts_webhook_url, settings.webhook_secret, settings.http_timeout),
        )

    identity = IdentityResolver(
        scheduler,
        threshold=settings.name_similarity_threshold,
        typo_distance=settings.name_typo_distance,
        retry_policy=policy,
    )
    availability = AvailabilityAggregator(
        scheduler,
        tenant_id=settings.tenant_id,
        timezone=settings.timezone,
        cache=TTLCache(ttl_seconds=settings.cache_ttl_seconds),
        business_id=settings.business_id,
        practitioner_id=settings.practitioner_id,
        appointment_type_id=settings.appointment_type_id,
        retry_policy=policy,
    )
    booking = BookingOrchestrator(scheduler, identity, availability, failures, policy)

    if settings.notify_webhook_url:
        notifier = WebhookNotifier(settings.notify_webhook_url, settings.webhook_secret, settings.http_timeout)
    else:
        notifier = LoggingNotifier()

    machine = ConversationStateMachine(
        clinic_name=settings.clinic_name,
        name_threshold=settings.name_similarity_threshold,
        typo_distance=settings.name_typo_distance,
    )
    interpreter = OpenAITurnInterpreter(
        settings.openai_api_key,
        model=settings.openai_model,
        clinic_name=settings.clinic_name,
        timeout=settings.http_timeout,
        knowledge=load_knowledge(settings.knowledge_file),
    )
    processor = TurnProcessor(machine, interpreter, identity, availability, booking, notifier)
    registry = CallRegistry(tenant_id=settings.tenant_id, timezone=settings.timezone)
    return Runtime(registry=registry, processor=processor, public_base_url=settings.public_base_url)


def _log_transcript(ctx) -> None:
    dump = to_timestamped_dump(
        ctx.history, ctx.started_at, ctx.call_sid, ctx.caller_phone[-4:], call_outcome(ctx.state),
    )
    logger.info("Call transcript %s: %s", ctx.call_sid, dump)


async def _sweep_forever(runtime: Runtime) -> None:
    while True:
        await asyncio.sleep(SWEEP_INTERVAL_SECONDS)
        for ctx in runtime.registry.sweep():
            runtime.processor.release(ctx.call_sid)
            _log_transcript(ctx)


def create_app(runtime: Runtime | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.runtime is None:
            config.validate_config()
            settings = config.load_settings()
            logging.basicConfig(
                level=settings.log_level.upper(),
                format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            )
            app.state.runtime = build_runtime(settings)
        sweeper = asyncio.create_task(_sweep_forever(app.state.runtime))
        try:
            yield
        finally:
            sweeper.cancel()
            await app.state.runtime.processor.flush()

    app = FastAPI(title="ClinicDesk Voice Receptionist", lifespan=lifespan)
    app.state.runtime = runtime

    def _twiml(xml: str) -> Response:
        return Response(content=xml, media_type="application/xml")

    @app.get("/health")
    async def health():
        return PlainTextResponse("ok")

    @app.post("/voice/incoming")
    async def voice_incoming(request: Request):
        """First webhook of a call: look the caller up and greet them."""
        rt: Runtime = request.app.state.runtime
        form = await request.form()
        call_sid = form.get("CallSid", "")
        if not call_sid:
            return _twiml(render_error(LOST_CALL_REPLY))
        ctx = rt.registry.get_or_create(call_sid, form.get("From", ""))
        action = await rt.processor.greet(ctx)
        return _twiml(render_action(action, rt.continue_url))

    @app.post("/voice/continue")
    async def voice_continue(request: Request):
        """Each speech result (or empty result) for an ongoing call."""
        rt: Runtime = request.app.state.runtime
        form = await request.form()
        call_sid = form.get("CallSid", "")
        if not call_sid:
            return _twiml(render_error(LOST_CALL_REPLY))
        ctx = rt.registry.get(call_sid)
        if ctx is None:
            logger.warning("No context for call %s, starting fresh", call_sid)
            ctx = rt.registry.get_or_create(call_sid, form.get("From", ""))
        action = await rt.processor.handle_turn(ctx, form.get("SpeechResult", ""))
        if action.end_call:
            _log_transcript(ctx)
            rt.registry.end(call_sid)
            rt.processor.release(call_sid)
        return _twiml(render_action(action, rt.continue_url))

    @app.post("/voice/status")
    async def voice_status(request: Request):
        rt: Runtime = request.app.state.runtime
        form = await request.form()
        call_sid = form.get("CallSid", "")
        status = form.get("CallStatus", "")
        if status in FINAL_CALL_STATUSES:
            ctx = rt.registry.end(call_sid)
            rt.processor.release(call_sid)
            if ctx is not None:
                _log_transcript(ctx)
        return PlainTextResponse("ok")

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.getenv("PORT", "8765"))
    uvicorn.run("clinicdesk.bot:app", host="0.0.0.0", port=port)
