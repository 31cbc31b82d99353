"""Generation endpoint: one request, one walk of the fallback chain."""

import asyncio
import threading

from fastapi import APIRouter, Depends, Response

from dispatch.engine import DispatchEngine
from server.dependencies import get_api_key, get_engine
from server.schemas.requests import GenerateRequest
from server.schemas.responses import GenerateResponseDTO
from server.utils import status_code_for_result
from utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["Generate"])


@router.post("/generate", response_model=GenerateResponseDTO)
async def generate(
    request: GenerateRequest,
    response: Response,
    engine: DispatchEngine = Depends(get_engine),
    api_key: str = Depends(get_api_key),
):
    """
    Generate text, image, video or audio through the tier's fallback chain.

    200 on success, 202 when a provider accepted the job asynchronously (poll
    /v1/jobs), otherwise the failure code mapped to an HTTP status.
    """
    request_id = request.request_id
    cancel_event = threading.Event()

    try:
        result = await asyncio.to_thread(
            engine.generate,
            tier=request.tier,
            modality=request.modality,
            account_id=request.account_id,
            payload=request.payload,
            request_id=request_id,
            timeout_s=request.timeout_s,
            cancel_event=cancel_event,
        )
    except asyncio.CancelledError:
        # Client went away: stop the walk before the next candidate
        cancel_event.set()
        logger.info("Generation cancelled by client", extra={"extra_fields": {"request_id": request_id}})
        raise

    response.status_code = status_code_for_result(result)
    return GenerateResponseDTO.from_generation_result(result)
