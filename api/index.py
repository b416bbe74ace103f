from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum
import logging
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ledger.api import router as ledger_router, engine_error_handler
from ledger.config import EngineSettings
from ledger.errors import EngineError
from benefits.api import router as benefits_router
from benefits.engine import BenefitsEngine


def create_app(engine: Optional[BenefitsEngine] = None, root_path: str = "") -> FastAPI:
    engine = engine or BenefitsEngine(EngineSettings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not engine.store.is_open:
            engine.open()
        yield
        engine.close()

    app = FastAPI(
        title="Benefits & Ledger Engine API",
        description="Wallets, transactions, sponsorship funds, plan enrollment and claim adjudication",
        version="1.0.0",
        root_path=root_path,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(EngineError, engine_error_handler)
    app.state.engine = engine

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy" if engine.store.is_open else "stopped", "service": "benefits-ledger"}

    app.include_router(ledger_router)
    app.include_router(benefits_router)
    return app


settings = EngineSettings.from_env()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app(BenefitsEngine(settings), root_path="/api")

handler = Mangum(app)
