"""
=============================================================================
LEDGER.PY — Motor del Libro Mayor (Ledger) de puntos verdes
=============================================================================
Gestiona:
  - Asientos inmutables (append-only) de cada movimiento de puntos
  - El saldo desnormalizado en profiles.green_points
  - Ajustes manuales del admin y canjes
  - Auditoría: saldo == suma del ledger

Concurrencia (control optimista):
  1. Leer el saldo actual del perfil
  2. UPDATE profiles SET green_points = nuevo
        WHERE id = :user AND green_points = :leido
  3. Si no se actualizó ninguna fila, otro proceso escribió entre medias
     → releer y reintentar (LEDGER_MAX_RETRIES veces)
  4. Insertar el asiento con balance_after = nuevo

Este módulo NO hace commit. El handler que lo llama confirma (o deshace)
todo el evento de golpe: asiento + saldo son una sola unidad atómica.
"""

import os
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import NotFound, InvalidState, ConcurrencyConflict, ValidationError
from models import Profile, LedgerEntry, TransactionType, UserRole

logger = logging.getLogger("wastechain.ledger")

# ─────────────────────────────────────────────────────────────────────────────
# CONFIGURACIÓN
# ─────────────────────────────────────────────────────────────────────────────

LEDGER_MAX_RETRIES = int(os.getenv("LEDGER_MAX_RETRIES", "3"))

# Estos movimientos nunca pueden dejar el saldo en negativo
NON_NEGATIVE_TYPES = {
    TransactionType.pickup_created.value,
    TransactionType.pickup_completed.value,
    TransactionType.badge_earned.value,
}


# =============================================================================
# ===================== PRIMITIVAS ============================================
# =============================================================================

def _read_balance(db: Session, user_id: int) -> Optional[int]:
    """Saldo actual leído de la BD (no de la caché de la sesión)"""
    return db.query(Profile.green_points).filter(Profile.id == user_id).scalar()


def _compare_and_set_balance(db: Session, user_id: int, expected: int, new_balance: int) -> bool:
    """Actualiza el saldo solo si sigue siendo el que leímos"""
    updated = db.query(Profile).filter(
        Profile.id == user_id,
        Profile.green_points == expected
    ).update({Profile.green_points: new_balance}, synchronize_session="fetch")
    return updated == 1


def _normalize_type(transaction_type) -> str:
    value = transaction_type.value if isinstance(transaction_type, TransactionType) else transaction_type
    if value not in TransactionType.__members__:
        raise ValidationError(f"Unknown transaction type: {transaction_type!r}")
    return value


def _is_duplicate_pickup_step(error: IntegrityError) -> bool:
    message = str(error.orig)
    return "uq_ledger_pickup_type" in message or "ledger_entries.pickup_id" in message


def append_entry(
    db: Session,
    user_id: int,
    pickup_id: Optional[int],
    badge_id: Optional[int],
    transaction_type,
    points_delta: int,
    metadata: Optional[dict] = None,
    min_balance: Optional[int] = None,
) -> LedgerEntry:
    """
    Añade UN asiento al ledger y mueve el saldo del usuario.

    No valida reglas de negocio (umbrales, insignias...): es la primitiva
    mecánica que usan el resto de componentes.

    min_balance: saldo mínimo tras el asiento. Se comprueba en cada intento
    contra el saldo recién leído, no contra una lectura previa.

    Errores:
      NotFound            → el usuario no existe (no se escribe nada)
      InvalidState        → dejaría el saldo negativo en un tipo que no lo permite,
                            o por debajo de min_balance
      ConcurrencyConflict → se perdió la carrera LEDGER_MAX_RETRIES veces
      ValidationError     → tipo de movimiento o delta mal formados
    """
    tx_type = _normalize_type(transaction_type)
    if isinstance(points_delta, bool) or not isinstance(points_delta, int):
        raise ValidationError(f"points_delta must be an integer, got {points_delta!r}")

    for attempt in range(1, LEDGER_MAX_RETRIES + 1):
        current_balance = _read_balance(db, user_id)
        if current_balance is None:
            raise NotFound(f"User {user_id} not found")

        balance_after = current_balance + points_delta
        if tx_type in NON_NEGATIVE_TYPES and points_delta < 0 and balance_after < 0:
            raise InvalidState(
                f"{tx_type} of {points_delta} would leave user {user_id} at {balance_after}"
            )
        if min_balance is not None and balance_after < min_balance:
            raise InvalidState(
                f"Insufficient balance: user {user_id} has {current_balance}, "
                f"{tx_type} of {points_delta} needs at least {min_balance - points_delta}"
            )

        if _compare_and_set_balance(db, user_id, current_balance, balance_after):
            break

        logger.warning(
            f"⚔️ Saldo de usuario {user_id} cambiado durante el asiento "
            f"(intento {attempt}/{LEDGER_MAX_RETRIES})"
        )
    else:
        raise ConcurrencyConflict(
            f"Balance of user {user_id} kept changing, gave up after {LEDGER_MAX_RETRIES} attempts"
        )

    data = dict(metadata or {})
    data.setdefault("timestamp", datetime.utcnow().isoformat())

    entry = LedgerEntry(
        user_id=user_id,
        pickup_id=pickup_id,
        badge_id=badge_id,
        transaction_type=tx_type,
        points_change=points_delta,
        balance_after=balance_after,
        transaction_data=data,
    )
    db.add(entry)
    try:
        db.flush()
    except IntegrityError as e:
        if _is_duplicate_pickup_step(e):
            raise ConcurrencyConflict(
                f"Pickup {pickup_id} already has a {tx_type} entry"
            ) from e
        raise

    logger.debug(f"📒 {tx_type} {points_delta:+d} → usuario {user_id} (saldo {balance_after})")
    return entry


# =============================================================================
# ===================== CONSULTAS =============================================
# =============================================================================

def get_profile(db: Session, user_id: int) -> Profile:
    profile = db.query(Profile).filter(Profile.id == user_id).first()
    if profile is None:
        raise NotFound(f"User {user_id} not found")
    return profile


def lock_profile(db: Session, user_id: int) -> Profile:
    """
    Relee el perfil desde la BD (pisando la copia de la sesión) y bloquea
    la fila hasta el commit. Para tocar racha y contadores sin perder
    escrituras de otro evento del mismo usuario.
    """
    profile = db.query(Profile).filter(
        Profile.id == user_id
    ).populate_existing().with_for_update().first()
    if profile is None:
        raise NotFound(f"User {user_id} not found")
    return profile


def get_balance(db: Session, user_id: int) -> int:
    balance = _read_balance(db, user_id)
    if balance is None:
        raise NotFound(f"User {user_id} not found")
    return balance


def list_entries(
    db: Session,
    user_id: int,
    limit: int = 50,
    offset: int = 0,
    transaction_type: Optional[str] = None,
) -> list[LedgerEntry]:
    """Asientos del usuario en orden de creación"""
    get_profile(db, user_id)
    query = db.query(LedgerEntry).filter(LedgerEntry.user_id == user_id)
    if transaction_type:
        query = query.filter(LedgerEntry.transaction_type == _normalize_type(transaction_type))
    return query.order_by(LedgerEntry.id).offset(offset).limit(limit).all()


def verify_ledger(db: Session, user_id: int) -> dict:
    """
    Audita el ledger de un usuario.

    Comprueba:
      - balance_after[i] == balance_after[i-1] + points_change[i] (desde 0)
      - profiles.green_points == SUM(points_change)

    Retorna:
      {
        "user_id": 7, "entries": 12, "ledger_sum": 162, "profile_balance": 162,
        "consistent": True, "first_broken_entry_id": None
      }
    """
    profile = get_profile(db, user_id)
    entries = db.query(LedgerEntry).filter(
        LedgerEntry.user_id == user_id
    ).order_by(LedgerEntry.id).all()

    running = 0
    first_broken = None
    for entry in entries:
        running += entry.points_change
        if first_broken is None and entry.balance_after != running:
            first_broken = entry.id

    consistent = first_broken is None and running == profile.green_points
    if not consistent:
        logger.warning(
            f"⚠️ Ledger inconsistente para usuario {user_id}: "
            f"suma={running}, perfil={profile.green_points}, primer asiento roto={first_broken}"
        )

    return {
        "user_id": user_id,
        "entries": len(entries),
        "ledger_sum": running,
        "profile_balance": profile.green_points,
        "consistent": consistent,
        "first_broken_entry_id": first_broken,
    }


def ledger_totals_by_type(db: Session, user_id: int) -> dict:
    """Puntos ganados/gastados agrupados por tipo de movimiento"""
    rows = db.query(
        LedgerEntry.transaction_type, func.sum(LedgerEntry.points_change)
    ).filter(LedgerEntry.user_id == user_id).group_by(LedgerEntry.transaction_type).all()
    return {tx_type: int(total or 0) for tx_type, total in rows}


# =============================================================================
# ===================== AJUSTES MANUALES Y CANJES =============================
# =============================================================================

def adjust_points(db: Session, user_id: int, delta: int, reason: str, admin_id: int) -> LedgerEntry:
    """
    Ajuste manual de un admin. Es la ÚNICA vía que puede bajar un saldo
    por debajo de cero, y siempre queda registrada con motivo y autor.
      delta > 0 → bonus_points
      delta < 0 → penalty
    """
    if not delta:
        raise ValidationError("Adjustment delta must be non-zero")
    if not reason or not reason.strip():
        raise ValidationError("Adjustment reason is required")

    admin = get_profile(db, admin_id)
    if admin.role != UserRole.admin.value:
        raise InvalidState(f"User {admin_id} is not an admin")

    tx_type = TransactionType.bonus_points if delta > 0 else TransactionType.penalty
    entry = append_entry(
        db, user_id, None, None, tx_type, delta,
        {"reason": reason.strip(), "admin_id": admin_id},
    )
    logger.warning(
        f"🛠️ Ajuste manual {delta:+d} a usuario {user_id} por admin {admin_id}: {reason.strip()}"
    )
    return entry


def redeem_points(db: Session, user_id: int, amount: int, reward: str) -> LedgerEntry:
    """Canjea puntos por una recompensa. No permite quedarse en negativo."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"Redemption amount must be a positive integer, got {amount!r}")
    if not reward or not reward.strip():
        raise ValidationError("Reward name is required")

    entry = append_entry(
        db, user_id, None, None, TransactionType.redemption, -amount,
        {"reward": reward.strip()},
        min_balance=0,
    )
    logger.info(f"🎁 Usuario {user_id} canjeó {amount} puntos por '{reward.strip()}'")
    return entry
