"""Credit balance and top-up endpoints."""

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query, status

from dispatch.credit_ledger import CreditLedger
from dispatch.errors import AccountNotFoundError
from server.dependencies import get_admin_key, get_api_key, get_ledger
from server.schemas.requests import GrantCreditsRequest
from server.schemas.responses import CreditBalanceDTO, LedgerEntryDTO

router = APIRouter(prefix="/v1/credits", tags=["Credits"])


def _balance_with_history(ledger: CreditLedger, account_id: str, limit: int) -> CreditBalanceDTO:
    account = ledger.balance(account_id)
    return CreditBalanceDTO.from_account(account, ledger.history(account_id, limit=limit))


@router.get("/{account_id}", response_model=CreditBalanceDTO)
async def get_credits(
    account_id: str,
    limit: int = Query(20, ge=0, le=200),
    ledger: CreditLedger = Depends(get_ledger),
    api_key: str = Depends(get_api_key),
):
    """Current balance plus the most recent ledger entries."""
    try:
        return await asyncio.to_thread(_balance_with_history, ledger, account_id, limit)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/{account_id}/grant", response_model=LedgerEntryDTO)
async def grant_credits(
    account_id: str,
    request: GrantCreditsRequest,
    ledger: CreditLedger = Depends(get_ledger),
    api_key: str = Depends(get_admin_key),
):
    """Record a purchase, bonus, refund or adjustment. Idempotent per reference_id."""
    try:
        entry = await asyncio.to_thread(
            ledger.grant,
            account_id,
            request.amount,
            kind=request.kind,
            reference_id=request.reference_id,
            description=request.description,
        )
    except AccountNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return LedgerEntryDTO.from_entry(entry)
