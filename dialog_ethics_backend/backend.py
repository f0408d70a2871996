import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dialog_ethics_backend.analysis_api import router as analysis_router
from dialog_ethics_backend.config import CORS_ORIGINS, LOG_LEVEL
from dialog_ethics_backend.conversations_api import get_conversation_store
from dialog_ethics_backend.conversations_api import router as session_router
from dialog_ethics_backend.import_api import router as import_router
from dialog_ethics_backend.llm_api import router as llm_router
from dialog_ethics_backend.services.prompt_manager import get_prompt_manager

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger("dialog_ethics")


@asynccontextmanager
async def lifespan(app: FastAPI):
    prompts = get_prompt_manager().list_prompts()
    logger.info("Dialog ethics backend starting (prompts loaded: %s)", ", ".join(prompts))
    yield
    store = get_conversation_store()
    if store.pending_tasks:
        logger.info("Waiting for %s pending analyses before shutdown", store.pending_tasks)
        await store.wait_for_pending()
    logger.info("Dialog ethics backend stopped")


app = FastAPI(title="Dialog Ethics Backend", lifespan=lifespan)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(llm_router)
app.include_router(analysis_router)
app.include_router(session_router)
app.include_router(import_router)


@app.get("/health")
async def health():
    return {"status": "healthy", "service": "dialog_ethics_backend"}
