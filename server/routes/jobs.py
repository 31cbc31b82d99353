"""Job status endpoint for providers that answer asynchronously."""

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Response, status

from dispatch.engine import DispatchEngine
from dispatch.errors import ModelNotFoundError
from server.dependencies import get_api_key, get_engine
from server.schemas.responses import JobStatusDTO
from server.utils import status_code_for_outcome

router = APIRouter(prefix="/v1", tags=["Jobs"])


@router.get("/jobs/{provider_id}/{model_id:path}/{job_id}", response_model=JobStatusDTO)
async def get_job(
    provider_id: str,
    model_id: str,
    job_id: str,
    response: Response,
    engine: DispatchEngine = Depends(get_engine),
    api_key: str = Depends(get_api_key),
):
    """Poll a pending generation. Polling never charges credits."""
    try:
        outcome = await asyncio.to_thread(engine.poll_job, provider_id, model_id, job_id)
    except ModelNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    response.status_code = status_code_for_outcome(outcome)
    return JobStatusDTO.from_outcome(job_id, outcome)
