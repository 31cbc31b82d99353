"""
Repository layer for dispatch database operations.
All CRUD functions using SQLAlchemy Core with reflected tables.

Design principles:
- Functions do NOT commit - caller commits for transaction control
- Balance changes are conditional UPDATEs; rowcount tells whether the
  precondition held at write time
- Uses SQLAlchemy Core (insert/select/update) not ORM
"""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, case, desc, insert, select, update
from sqlalchemy.orm import Session

from utils.logger import get_logger

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


def _row_dict(row) -> dict[str, Any] | None:
    return dict(row._mapping) if row is not None else None


# ============================================================================
# MODEL CATALOG
# ============================================================================


def list_ai_models(db: Session, modality: str) -> list[dict[str, Any]]:
    """
    All catalog rows for a modality, active or not.

    Args:
        db: Database session
        modality: text | image | video | audio

    Returns:
        list[dict]: ai_models rows
    """
    from db.tables import get_table

    ai_models = get_table("ai_models")

    stmt = select(ai_models).where(ai_models.c.modality == modality).order_by(ai_models.c.credit_cost)
    return [dict(r._mapping) for r in db.execute(stmt)]


def get_ai_model(db: Session, modality: str, provider_id: str, model_id: str) -> dict[str, Any] | None:
    from db.tables import get_table

    ai_models = get_table("ai_models")

    stmt = select(ai_models).where(
        and_(
            ai_models.c.modality == modality,
            ai_models.c.provider_id == provider_id,
            ai_models.c.model_id == model_id,
        )
    )
    return _row_dict(db.execute(stmt).first())


def find_ai_models(db: Session, provider_id: str, model_id: str) -> list[dict[str, Any]]:
    from db.tables import get_table

    ai_models = get_table("ai_models")

    stmt = select(ai_models).where(
        and_(ai_models.c.provider_id == provider_id, ai_models.c.model_id == model_id)
    )
    return [dict(r._mapping) for r in db.execute(stmt)]


def set_default_ai_model(db: Session, modality: str, provider_id: str, model_id: str) -> None:
    """
    Make one model the default for its modality and clear any other default.

    Note:
        Does NOT commit. Caller must commit.
    """
    from db.tables import get_table

    ai_models = get_table("ai_models")

    is_target = and_(ai_models.c.provider_id == provider_id, ai_models.c.model_id == model_id)
    db.execute(
        update(ai_models)
        .where(ai_models.c.modality == modality)
        .values(is_default=case((is_target, True), else_=False), updated_at=_now())
    )

    logger.info(f"Default {modality} model set to {provider_id}/{model_id}")


def set_ai_model_active(db: Session, modality: str, provider_id: str, model_id: str, is_active: bool) -> int:
    """
    Returns:
        int: Number of rows changed

    Note:
        Does NOT commit. Caller must commit.
    """
    from db.tables import get_table

    ai_models = get_table("ai_models")

    result = db.execute(
        update(ai_models)
        .where(
            and_(
                ai_models.c.modality == modality,
                ai_models.c.provider_id == provider_id,
                ai_models.c.model_id == model_id,
            )
        )
        .values(is_active=is_active, updated_at=_now())
    )
    return result.rowcount


# ============================================================================
# FALLBACK CHAINS
# ============================================================================


def list_fallback_entries(
    db: Session, tier: str | None = None, modality: str | None = None
) -> list[dict[str, Any]]:
    """
    Active chain rows ordered by priority, optionally filtered.

    Args:
        db: Database session
        tier: all | trial | creator | studio | enterprise (None = every tier)
        modality: text | image | video | audio (None = every modality)

    Returns:
        list[dict]: ai_fallback_configs rows
    """
    from db.tables import get_table

    chains = get_table("ai_fallback_configs")

    conditions = [chains.c.is_active.is_(True)]
    if tier is not None:
        conditions.append(chains.c.tier == tier)
    if modality is not None:
        conditions.append(chains.c.modality == modality)

    stmt = select(chains).where(and_(*conditions)).order_by(chains.c.priority)
    return [dict(r._mapping) for r in db.execute(stmt)]


def get_fallback_entry(db: Session, entry_id: str) -> dict[str, Any] | None:
    from db.tables import get_table

    chains = get_table("ai_fallback_configs")

    return _row_dict(db.execute(select(chains).where(chains.c.id == entry_id)).first())


def upsert_fallback_entry(
    db: Session, tier: str, modality: str, priority: int, provider_id: str, model_id: str
) -> dict[str, Any]:
    """
    Point the active (tier, modality, priority) slot at a model, creating the
    slot if it does not exist.

    Returns:
        dict: The stored row

    Note:
        Does NOT commit. Caller must commit.
    """
    from db.tables import get_table

    chains = get_table("ai_fallback_configs")

    slot = and_(
        chains.c.tier == tier,
        chains.c.modality == modality,
        chains.c.priority == priority,
        chains.c.is_active.is_(True),
    )
    existing_id = db.execute(select(chains.c.id).where(slot)).scalar_one_or_none()

    if existing_id is not None:
        db.execute(
            update(chains)
            .where(chains.c.id == existing_id)
            .values(provider_id=provider_id, model_id=model_id, updated_at=_now())
        )
        entry_id = existing_id
    else:
        entry_id = _new_id()
        db.execute(
            insert(chains).values(
                id=entry_id,
                tier=tier,
                modality=modality,
                priority=priority,
                provider_id=provider_id,
                model_id=model_id,
                is_active=True,
                created_at=_now(),
                updated_at=_now(),
            )
        )

    return get_fallback_entry(db, entry_id)


def replace_fallback_chain(
    db: Session, tier: str, modality: str, models: list[tuple[str, str]]
) -> list[dict[str, Any]]:
    """
    Soft-delete the current chain and insert the given models at priorities 1..n.

    Note:
        Does NOT commit. Caller must commit.
    """
    from db.tables import get_table

    chains = get_table("ai_fallback_configs")

    db.execute(
        update(chains)
        .where(and_(chains.c.tier == tier, chains.c.modality == modality, chains.c.is_active.is_(True)))
        .values(is_active=False, updated_at=_now())
    )

    for priority, (provider_id, model_id) in enumerate(models, start=1):
        db.execute(
            insert(chains).values(
                id=_new_id(),
                tier=tier,
                modality=modality,
                priority=priority,
                provider_id=provider_id,
                model_id=model_id,
                is_active=True,
                created_at=_now(),
                updated_at=_now(),
            )
        )

    return list_fallback_entries(db, tier, modality)


def set_fallback_priorities(db: Session, priorities: dict[str, int]) -> None:
    """
    Move active entries to new priorities.

    The moved rows are first taken out of the active slot index so that swaps
    never collide mid-update; a priority already held by an unmoved row still
    violates the unique index and raises IntegrityError.

    Note:
        Does NOT commit. Caller must commit.
    """
    from db.tables import get_table

    chains = get_table("ai_fallback_configs")

    if not priorities:
        return

    active = and_(chains.c.id.in_(list(priorities)), chains.c.is_active.is_(True))
    moved = set(db.execute(select(chains.c.id).where(active)).scalars())
    db.execute(update(chains).where(active).values(is_active=False))
    for entry_id, priority in priorities.items():
        if entry_id not in moved:
            continue
        db.execute(
            update(chains)
            .where(chains.c.id == entry_id)
            .values(priority=priority, is_active=True, updated_at=_now())
        )


def deactivate_fallback_entry(db: Session, entry_id: str) -> bool:
    """
    Returns:
        bool: False if the entry does not exist or is already inactive

    Note:
        Does NOT commit. Caller must commit.
    """
    from db.tables import get_table

    chains = get_table("ai_fallback_configs")

    result = db.execute(
        update(chains)
        .where(and_(chains.c.id == entry_id, chains.c.is_active.is_(True)))
        .values(is_active=False, updated_at=_now())
    )
    return result.rowcount > 0


# ============================================================================
# CREDIT BALANCES & TRANSACTIONS
# ============================================================================


def get_credit_balance(db: Session, account_id: str) -> dict[str, Any] | None:
    from db.tables import get_table

    balances = get_table("credit_balances")

    return _row_dict(db.execute(select(balances).where(balances.c.account_id == account_id)).first())


def create_credit_balance(db: Session, account_id: str, balance: int = 0, monthly_allowance: int = 0) -> None:
    """
    Note:
        Does NOT commit. Caller must commit.
    """
    from db.tables import get_table

    balances = get_table("credit_balances")

    db.execute(
        insert(balances).values(
            account_id=account_id,
            balance=balance,
            reserved=0,
            monthly_allowance=monthly_allowance,
            used_this_month=0,
            updated_at=_now(),
        )
    )


def reserve_credits(db: Session, account_id: str, amount: int) -> bool:
    """
    Hold `amount` credits if the unreserved balance covers it.

    Returns:
        bool: True if the hold was placed

    Note:
        Does NOT commit. Caller must commit.
    """
    from db.tables import get_table

    balances = get_table("credit_balances")

    result = db.execute(
        update(balances)
        .where(
            and_(
                balances.c.account_id == account_id,
                balances.c.balance - balances.c.reserved >= amount,
            )
        )
        .values(reserved=balances.c.reserved + amount, updated_at=_now())
    )
    return result.rowcount == 1


def release_credits(db: Session, account_id: str, amount: int) -> None:
    """
    Note:
        Does NOT commit. Caller must commit.
    """
    from db.tables import get_table

    balances = get_table("credit_balances")

    db.execute(
        update(balances)
        .where(balances.c.account_id == account_id)
        .values(
            reserved=case((balances.c.reserved > amount, balances.c.reserved - amount), else_=0),
            updated_at=_now(),
        )
    )


def debit_credits(db: Session, account_id: str, amount: int, held: int) -> bool:
    """
    Consume a hold of `held` credits and charge `amount`.

    The charge succeeds only if the balance not held by other requests still
    covers it.

    Note:
        Does NOT commit. Caller must commit.
    """
    from db.tables import get_table

    balances = get_table("credit_balances")

    result = db.execute(
        update(balances)
        .where(
            and_(
                balances.c.account_id == account_id,
                balances.c.balance - balances.c.reserved + held >= amount,
            )
        )
        .values(
            balance=balances.c.balance - amount,
            reserved=case((balances.c.reserved > held, balances.c.reserved - held), else_=0),
            used_this_month=balances.c.used_this_month + amount,
            updated_at=_now(),
        )
    )
    return result.rowcount == 1


def add_credits(db: Session, account_id: str, amount: int, reset_usage: bool = False) -> bool:
    """
    Add (or, for negative adjustments, remove) credits without overdrawing.

    Note:
        Does NOT commit. Caller must commit.
    """
    from db.tables import get_table

    balances = get_table("credit_balances")

    values: dict[str, Any] = {"balance": balances.c.balance + amount, "updated_at": _now()}
    if reset_usage:
        values["used_this_month"] = 0

    result = db.execute(
        update(balances)
        .where(and_(balances.c.account_id == account_id, balances.c.balance + amount >= 0))
        .values(**values)
    )
    return result.rowcount == 1


def get_credit_transaction(db: Session, account_id: str, kind: str, reference_id: str) -> dict[str, Any] | None:
    from db.tables import get_table

    transactions = get_table("credit_transactions")

    stmt = select(transactions).where(
        and_(
            transactions.c.account_id == account_id,
            transactions.c.kind == kind,
            transactions.c.reference_id == reference_id,
        )
    )
    return _row_dict(db.execute(stmt).first())


def create_credit_transaction(
    db: Session,
    account_id: str,
    kind: str,
    amount: int,
    balance_after: int,
    reference_id: str,
    reason: str | None = None,
    description: str | None = None,
) -> dict[str, Any]:
    """
    Append one immutable ledger row.

    Raises:
        sqlalchemy.exc.IntegrityError: (account_id, kind, reference_id) already recorded

    Note:
        Does NOT commit. Caller must commit.
    """
    from db.tables import get_table

    transactions = get_table("credit_transactions")

    values = {
        "id": _new_id(),
        "account_id": account_id,
        "kind": kind,
        "amount": amount,
        "balance_after": balance_after,
        "reference_id": reference_id,
        "reason": reason,
        "description": description,
        "created_at": _now(),
    }
    db.execute(insert(transactions).values(**values))

    logger.debug(f"Ledger {kind} {amount:+d} for {account_id} (ref {reference_id})")
    return values


def list_credit_transactions(db: Session, account_id: str, limit: int = 50) -> list[dict[str, Any]]:
    from db.tables import get_table

    transactions = get_table("credit_transactions")

    stmt = (
        select(transactions)
        .where(transactions.c.account_id == account_id)
        .order_by(desc(transactions.c.created_at))
        .limit(limit)
    )
    return [dict(r._mapping) for r in db.execute(stmt)]


# ============================================================================
# PROVIDER CREDENTIALS
# ============================================================================


def acquire_platform_api_key(db: Session, provider_id: str) -> str | None:
    """
    Pick the least recently used active platform key for a provider and
    record the use.

    Returns:
        str: Raw provider key, or None when the provider has no active key

    Note:
        Does NOT commit. Caller must commit.
    """
    from db.tables import get_table

    keys = get_table("platform_api_keys")

    stmt = (
        select(keys.c.id, keys.c.api_key)
        .where(and_(keys.c.provider_id == provider_id, keys.c.is_active.is_(True)))
        .order_by(keys.c.last_used_at.asc().nulls_first(), keys.c.usage_count.asc())
        .limit(1)
    )
    row = db.execute(stmt).first()
    if row is None:
        return None

    db.execute(
        update(keys)
        .where(keys.c.id == row.id)
        .values(usage_count=keys.c.usage_count + 1, last_used_at=_now())
    )
    return row.api_key


def get_user_api_key(db: Session, account_id: str, modality: str) -> dict[str, Any] | None:
    """Active bring-your-own-key configuration of an account for one modality."""
    from db.tables import get_table

    user_keys = get_table("user_api_keys")

    stmt = (
        select(user_keys)
        .where(
            and_(
                user_keys.c.account_id == account_id,
                user_keys.c.modality == modality,
                user_keys.c.is_active.is_(True),
            )
        )
        .limit(1)
    )
    return _row_dict(db.execute(stmt).first())


# ============================================================================
# GENERATION LOGS
# ============================================================================


def create_generation_log(
    db: Session,
    account_id: str,
    request_id: str,
    tier: str,
    modality: str,
    status: str,
    model_key: str | None,
    credit_cost: int,
    latency_ms: int,
    attempts: int,
    error_message: str | None = None,
    details: dict[str, Any] | None = None,
) -> str:
    """
    Returns:
        str: Log row id

    Note:
        Does NOT commit. Caller must commit.
    """
    from db.tables import get_table

    logs = get_table("ai_generation_logs")

    log_id = _new_id()
    db.execute(
        insert(logs).values(
            id=log_id,
            account_id=account_id,
            request_id=request_id,
            tier=tier,
            modality=modality,
            status=status,
            model_key=model_key,
            credit_cost=credit_cost,
            latency_ms=latency_ms,
            attempts=attempts,
            error_message=error_message,
            details=details or {},
            created_at=_now(),
        )
    )
    return log_id
