"""
Process-wide collaborators, built once at startup and passed explicitly.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from chatdigest.clients import EvolutionTransport, GeminiClient, GenerationClient, TransportClient
from chatdigest.commands import CommandProcessor
from chatdigest.config import Settings
from chatdigest.report import ReportGenerator
from chatdigest.scheduler import Scheduler
from chatdigest.storage import create_db_engine, create_session_factory
from chatdigest.tick import TickLoop

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    transport: TransportClient
    generation_client: GenerationClient
    report_generator: ReportGenerator
    scheduler: Scheduler
    processor: CommandProcessor
    tick_loop: TickLoop

    async def aclose(self) -> None:
        close = getattr(self.transport, "aclose", None)
        if close is not None:
            await close()
        self.engine.dispose()


def build_services(
    settings: Settings,
    transport: Optional[TransportClient] = None,
    generation_client: Optional[GenerationClient] = None,
) -> Services:
    tz = ZoneInfo(settings.SCHEDULE_TIMEZONE)
    engine = create_db_engine(settings.DATABASE_URL)
    session_factory = create_session_factory(engine)

    if transport is None:
        transport = EvolutionTransport(
            base_url=settings.EVOLUTION_API_URL,
            api_key=settings.EVOLUTION_API_KEY,
            instance_name=settings.EVOLUTION_INSTANCE_NAME,
            self_id=settings.TRANSPORT_SELF_ID,
        )
    if generation_client is None:
        generation_client = GeminiClient(settings.GEMINI_MODEL)

    credentials = settings.gemini_credentials
    if not credentials:
        logger.warning("GEMINI_API_KEYS is empty; every report attempt will fail")

    report_generator = ReportGenerator(session_factory, transport, generation_client, credentials, tz)
    scheduler = Scheduler(session_factory, report_generator, tz)
    processor = CommandProcessor(
        session_factory,
        transport,
        report_generator,
        tz,
        status_id=settings.STATUS_ID,
        owner_id=settings.OWNER_ID,
    )
    tick_loop = TickLoop(
        processor,
        scheduler,
        interval_seconds=settings.TICK_INTERVAL_SECONDS,
    )

    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        transport=transport,
        generation_client=generation_client,
        report_generator=report_generator,
        scheduler=scheduler,
        processor=processor,
        tick_loop=tick_loop,
    )
