import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from storefront.config import LOG_LEVEL
from storefront.database import Base, engine
from storefront.notifications import RoomRegistry
from storefront.routes import router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront Order Fulfillment")
app.state.rooms = RoomRegistry()

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal server error"},
    )


@app.get("/health")
async def health():
    return {"status": "healthy"}
