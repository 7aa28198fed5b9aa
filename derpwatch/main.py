import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from derpwatch.api.probe import router as probe_router
from derpwatch.api.history import router as history_router
import derpwatch.config as config


app = FastAPI(title="derpwatch", version=config.VERSION)

app.include_router(probe_router, prefix="/api")
app.include_router(history_router, prefix="/api")

allowed_origins = config.ALLOWED_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
)


def run():
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=config.HOST_IP, port=config.PORT)


if __name__ == "__main__":
    run()
