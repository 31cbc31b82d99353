"""Administrative endpoints for fallback chains and the model catalog."""

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from dispatch.admin import CatalogAdmin
from dispatch.errors import ChainConfigError, ModelNotFoundError
from dispatch.routing_types import Modality, Tier
from server.dependencies import get_admin, get_admin_key
from server.schemas.requests import (
    ChainEntryRequest,
    DefaultModelRequest,
    ModelActiveRequest,
    ReorderChainRequest,
    ReplaceChainRequest,
)
from server.schemas.responses import AdminAckDTO, ChainEntryDTO, ChainListDTO

router = APIRouter(prefix="/v1/admin", tags=["Admin"], dependencies=[Depends(get_admin_key)])


async def _run(fn, *args, **kwargs):
    try:
        return await asyncio.to_thread(fn, *args, **kwargs)
    except ModelNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (ChainConfigError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/fallback", response_model=ChainListDTO)
async def list_fallback(
    tier: Optional[Tier] = Query(None),
    modality: Optional[Modality] = Query(None),
    admin: CatalogAdmin = Depends(get_admin),
):
    grouped = await _run(admin.list_chains, tier=tier, modality=modality)
    return ChainListDTO(
        chains={
            tier_name: {mod: [ChainEntryDTO.from_entry(e) for e in entries] for mod, entries in by_modality.items()}
            for tier_name, by_modality in grouped.items()
        }
    )


@router.post("/fallback", response_model=ChainEntryDTO)
async def upsert_fallback(request: ChainEntryRequest, admin: CatalogAdmin = Depends(get_admin)):
    """Point a (tier, modality, priority) slot at a model."""
    entry = await _run(
        admin.upsert_chain_entry,
        request.tier,
        request.modality,
        request.priority,
        request.provider_id,
        request.model_id,
    )
    return ChainEntryDTO.from_entry(entry)


@router.put("/fallback", response_model=list[ChainEntryDTO])
async def replace_fallback(request: ReplaceChainRequest, admin: CatalogAdmin = Depends(get_admin)):
    """Replace a whole chain; list order becomes priority."""
    entries = await _run(
        admin.replace_chain,
        request.tier,
        request.modality,
        [(m.provider_id, m.model_id) for m in request.models],
    )
    return [ChainEntryDTO.from_entry(e) for e in entries]


@router.put("/fallback/order", response_model=list[ChainEntryDTO])
async def reorder_fallback(request: ReorderChainRequest, admin: CatalogAdmin = Depends(get_admin)):
    entries = await _run(admin.reorder_chain, request.tier, request.modality, request.priorities)
    return [ChainEntryDTO.from_entry(e) for e in entries]


@router.delete("/fallback/{entry_id}", response_model=AdminAckDTO)
async def remove_fallback(entry_id: str, admin: CatalogAdmin = Depends(get_admin)):
    removed = await _run(admin.remove_chain_entry, entry_id)
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Chain entry not found: {entry_id}")
    return AdminAckDTO()


@router.put("/models/default", response_model=AdminAckDTO)
async def set_default_model(request: DefaultModelRequest, admin: CatalogAdmin = Depends(get_admin)):
    await _run(admin.set_default_model, request.modality, request.provider_id, request.model_id)
    return AdminAckDTO()


@router.put("/models/active", response_model=AdminAckDTO)
async def set_model_active(request: ModelActiveRequest, admin: CatalogAdmin = Depends(get_admin)):
    changed = await _run(
        admin.set_model_active,
        request.provider_id,
        request.model_id,
        request.is_active,
        modality=request.modality,
    )
    return AdminAckDTO(changed=changed)
