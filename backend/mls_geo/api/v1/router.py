from fastapi import APIRouter

from mls_geo.api.v1 import processing

api_router = APIRouter()

api_router.include_router(processing.router, prefix="/processing", tags=["processing"])
