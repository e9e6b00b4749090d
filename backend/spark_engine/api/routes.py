from fastapi import APIRouter

from .v1 import workflows

api_router = APIRouter(prefix="/api", tags=["spark-engine"])

api_router.include_router(workflows.router, prefix="/v1", tags=["workflows"])


@api_router.get("/")
def read_root():
    return {"message": "Spark engine is running"}
