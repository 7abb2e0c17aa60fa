"""FastAPI application for node identity resolution."""

import logging

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI

from api.routes.nodes import router as nodes_router
from api.settings import settings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Cortex node identity",
    description="Resolves Kubernetes nodes to their EC2 instance identity, "
    "instance group and autoscaler template labels.",
    version="1.0.0",
)

app.include_router(nodes_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
