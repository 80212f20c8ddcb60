from fastapi import Header, HTTPException

from mls_geo.config import settings
from mls_geo.pipeline.processor import Processor, create_processor

_processor: Processor | None = None


def get_processor() -> Processor:
    """The single in-process processor, created on first use."""
    global _processor
    if _processor is None:
        from mls_geo.database import async_session
        _processor = create_processor(session_factory=async_session)
    return _processor


def set_processor(processor: Processor | None) -> None:
    global _processor
    _processor = processor


async def verify_api_key(x_api_key: str | None = Header(default=None)):
    # Open in development when no key is configured
    if not settings.processor_api_key:
        if settings.app_env == "production":
            raise HTTPException(status_code=500, detail="PROCESSOR_API_KEY not configured")
        return
    if x_api_key != settings.processor_api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
