import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from scribeline.api.routes import router as api_router
from scribeline.config import settings
from scribeline.database import build_engine, build_session_factory, init_db
from scribeline.llm.registry import ProviderRegistry
from scribeline.observability.logger import get_logger, setup_logging
from scribeline.pipeline.dispatcher import JobDispatcher
from scribeline.pipeline.orchestrator import ProviderOrchestrator
from scribeline.security.keys import KeyVault
from scribeline.storage.audio import AudioStore
from scribeline.usage.ledger import UsageLedger
from scribeline.usage.policy import RateLimitPolicy
from scribeline.usage.tracker import UsageTracker

setup_logging(settings.log_level)
log = get_logger("main")

# Shared application state, accessed by API routes
app_state = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("scribeline_starting")

    # 1. Database
    engine = build_engine(settings)
    await init_db(engine)
    session_factory = build_session_factory(engine)
    log.info("database_initialized")

    # 2. Subsystems, wired explicitly
    ledger = UsageLedger(session_factory)
    policy = RateLimitPolicy(session_factory, ledger, config=settings)
    tracker = UsageTracker(ledger)
    vault = KeyVault(session_factory, config=settings)
    registry = ProviderRegistry(config=settings)
    audio_store = AudioStore(os.path.join(settings.data_dir, "audio"))
    dispatcher = JobDispatcher(session_factory, recover_orphans=settings.recover_orphaned_jobs)
    orchestrator = ProviderOrchestrator(
        session_factory,
        policy=policy,
        tracker=tracker,
        vault=vault,
        registry=registry,
        audio_store=audio_store,
        dispatcher=dispatcher,
        config=settings,
    )

    # 3. Store in shared state for API access
    app_state.update({
        "engine": engine,
        "session_factory": session_factory,
        "ledger": ledger,
        "policy": policy,
        "tracker": tracker,
        "vault": vault,
        "registry": registry,
        "audio_store": audio_store,
        "dispatcher": dispatcher,
        "orchestrator": orchestrator,
    })

    # 4. Pick up jobs orphaned by a previous process (off unless enabled)
    recovered = await dispatcher.recover()
    log.info("scribeline_ready", providers=registry.names(), recovered_jobs=recovered)

    yield

    # Shutdown
    log.info("scribeline_shutting_down", jobs_in_flight=dispatcher.in_flight)
    await dispatcher.drain(timeout=settings.shutdown_drain_seconds)
    await engine.dispose()
    app_state.clear()


app = FastAPI(title="Scribeline", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)
