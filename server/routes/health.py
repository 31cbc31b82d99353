"""Health check endpoint."""

from datetime import datetime, timezone

from fastapi import APIRouter

from config.config import Config
from server.schemas.responses import HealthResponseDTO

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponseDTO)
async def health_check():
    """Liveness plus the storage backend the service was configured with."""
    return HealthResponseDTO(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        version="1.0.0",
        storage=Config().get_storage_info(),
    )
