import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from story_engine.llm import Generator
from story_engine.routes import router
from story_engine.runtime import Runtime

load_dotenv(Path(__file__).parent.parent / ".env")

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def create_app(data_dir: Path | None = None, generator: Generator | None = None) -> FastAPI:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))

    app = FastAPI(title="Story Engine")
    app.state.runtime = Runtime.from_data_dir(resolved, generator)
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
