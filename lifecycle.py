"""
=============================================================================
LIFECYCLE.PY — Ciclo de vida de una recogida (pickup)
=============================================================================
Máquina de estados:

  pending → assigned → in_progress → collected → processed → completed
     └──────────┴───────────┴────────────┴───────────┴──→ cancelled

  completed y cancelled son terminales.

Dos eventos mueven puntos:

  on_pickup_created(record)
    1. Confianza de verificación (oráculo inyectado)
    2. Puntos iniciales = categoría × confianza
    3. Guardar score y puntos en el pickup ANTES del asiento
    4. Asiento pickup_created
    5. Si es su primera recogida → insignia "First Pickup"

  on_pickup_status_changed(new_record, old_record)
    Solo actúa en el paso "→ completed". Es idempotente: si el evento llega
    dos veces, la segunda no hace nada (completion_processed_at).
    1. Bonus por peso real
    2. Asiento pickup_completed
    3. Racha (días consecutivos)
    4. Evaluar insignias

Cada evento = una transacción. Si algo falla, no queda nada a medias.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

import verification
from achievements import award_badge, evaluate_and_award_badges, FIRST_PICKUP_BADGE
from errors import EngineError, NotFound, InvalidState, ValidationError
from ledger import append_entry, get_balance, get_profile, lock_profile
from models import Pickup, PickupStatus, TransactionType, UserRole
from schemas import HandlerResult
from scoring import (
    compute_initial_points, compute_weight_bonus, validate_category, validate_weight
)

logger = logging.getLogger("wastechain.lifecycle")


# =============================================================================
# ===================== MÁQUINA DE ESTADOS ====================================
# =============================================================================

ALLOWED_TRANSITIONS = {
    PickupStatus.pending.value: {PickupStatus.assigned.value, PickupStatus.cancelled.value},
    PickupStatus.assigned.value: {PickupStatus.in_progress.value, PickupStatus.cancelled.value},
    PickupStatus.in_progress.value: {PickupStatus.collected.value, PickupStatus.cancelled.value},
    PickupStatus.collected.value: {PickupStatus.processed.value, PickupStatus.cancelled.value},
    PickupStatus.processed.value: {PickupStatus.completed.value, PickupStatus.cancelled.value},
    PickupStatus.completed.value: set(),
    PickupStatus.cancelled.value: set(),
}

TIMESTAMP_FIELDS = {
    PickupStatus.assigned.value: "assigned_at",
    PickupStatus.in_progress.value: "started_at",
    PickupStatus.collected.value: "collected_at",
    PickupStatus.processed.value: "processed_at",
    PickupStatus.completed.value: "completed_at",
    PickupStatus.cancelled.value: "cancelled_at",
}

# Estados en los que el peso real ya se conoce
WEIGHED_STATES = {
    PickupStatus.collected.value,
    PickupStatus.processed.value,
    PickupStatus.completed.value,
}


def _status_value(status) -> str:
    value = status.value if isinstance(status, PickupStatus) else status
    if value not in ALLOWED_TRANSITIONS:
        raise ValidationError(f"Unknown pickup status: {status!r}")
    return value


def can_transition(old_status: str, new_status: str) -> bool:
    return _status_value(new_status) in ALLOWED_TRANSITIONS[_status_value(old_status)]


def is_terminal(status: str) -> bool:
    return not ALLOWED_TRANSITIONS[_status_value(status)]


def pickup_snapshot(pickup: Pickup) -> dict:
    """Foto del pickup con la forma de un registro de webhook"""
    return {
        "id": pickup.id,
        "user_id": pickup.user_id,
        "collector_id": pickup.collector_id,
        "waste_category": pickup.waste_category,
        "estimated_weight": pickup.estimated_weight,
        "actual_weight": pickup.actual_weight,
        "status": pickup.status,
        "ai_verification_score": pickup.ai_verification_score,
        "points_awarded": pickup.points_awarded,
    }


def _load_pickup(db: Session, pickup_id) -> Pickup:
    if pickup_id is None:
        raise ValidationError("Pickup record has no id")
    pickup = db.query(Pickup).filter(Pickup.id == pickup_id).first()
    if pickup is None:
        raise NotFound(f"Pickup {pickup_id} not found")
    return pickup


def create_pickup(
    db: Session,
    user_id: int,
    waste_category: str,
    estimated_weight: Optional[float] = None,
    pickup_address: Optional[str] = None,
    notes: Optional[str] = None,
) -> Pickup:
    """Inserta un pickup en estado pending (lo crea un hogar)"""
    category = validate_category(waste_category)
    weight = validate_weight(estimated_weight, "estimated_weight")

    profile = get_profile(db, user_id)
    if profile.role != UserRole.household.value:
        raise InvalidState(f"Only household users can request pickups (user {user_id} is {profile.role})")

    pickup = Pickup(
        user_id=user_id,
        waste_category=category,
        estimated_weight=weight,
        status=PickupStatus.pending.value,
        pickup_address=pickup_address,
        notes=notes,
    )
    db.add(pickup)
    db.flush()
    return pickup


def transition_pickup(
    db: Session,
    pickup_id: int,
    new_status,
    actual_weight: Optional[float] = None,
    collector_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> tuple[dict, dict]:
    """
    Mueve un pickup al siguiente estado.

    Retorna (registro_nuevo, registro_anterior), listos para
    on_pickup_status_changed. No hace commit.
    """
    now = now or datetime.utcnow()
    target = _status_value(new_status)
    pickup = _load_pickup(db, pickup_id)
    old_record = pickup_snapshot(pickup)

    if not can_transition(pickup.status, target):
        raise InvalidState(f"Pickup {pickup_id} cannot go from {pickup.status} to {target}")

    if collector_id is not None:
        collector = get_profile(db, collector_id)
        if collector.role != UserRole.collector.value:
            raise InvalidState(f"User {collector_id} is not a collector")
        pickup.collector_id = collector_id
    if target == PickupStatus.assigned.value and pickup.collector_id is None:
        raise ValidationError("A collector is required to assign a pickup")

    if actual_weight is not None:
        if target not in WEIGHED_STATES:
            raise ValidationError(f"Actual weight cannot be recorded while {target}")
        pickup.actual_weight = validate_weight(actual_weight, "actual_weight")
    if target == PickupStatus.collected.value and pickup.actual_weight is None:
        raise ValidationError("Actual weight is required when a pickup is collected")

    pickup.status = target
    setattr(pickup, TIMESTAMP_FIELDS[target], now)
    db.flush()

    logger.info(f"🚛 Pickup {pickup_id}: {old_record['status']} → {target}")
    return pickup_snapshot(pickup), old_record


# =============================================================================
# ===================== RACHAS ================================================
# =============================================================================

def next_streak(current: int, last_pickup_date: Optional[datetime], now: datetime) -> int:
    """
    Lógica:
      - Última recogida ayer           → racha +1
      - Última hace más de 1 día       → racha = 1
      - Nunca había completado ninguna → racha = 1
      - Ya completó otra hoy           → se queda igual
    """
    if last_pickup_date is None:
        return 1
    gap = (now.date() - last_pickup_date.date()).days
    if gap == 1:
        return (current or 0) + 1
    if gap > 1:
        return 1
    return max(current or 0, 1)


# =============================================================================
# ===================== HANDLERS ==============================================
# =============================================================================

def _run_event(db: Session, event: str, pickup_id, process) -> HandlerResult:
    """
    Ejecuta un evento como UNA transacción.
      - Éxito          → commit
      - EngineError    → rollback + resultado de error (para monitorización)
      - Otra excepción → rollback y se propaga
    """
    try:
        result = process()
        db.commit()
    except EngineError as e:
        db.rollback()
        logger.error(f"❌ {event} falló para pickup {pickup_id}: [{e.code}] {e.message}")
        return HandlerResult.failure(pickup_id, e)
    except Exception:
        db.rollback()
        logger.exception(f"💥 Error inesperado en {event} para pickup {pickup_id}")
        raise
    return result


def on_pickup_created(
    db: Session,
    pickup_record: dict,
    oracle: Optional[verification.VerificationOracle] = None,
) -> HandlerResult:
    """
    Se llama UNA vez cuando se inserta un pickup.
    No es idempotente: un evento de creación duplicado es un fallo del
    dispatcher y se reporta como invalid_state.
    """
    oracle = oracle or verification.default_oracle
    pickup_id = pickup_record.get("id")

    def process() -> HandlerResult:
        pickup = _load_pickup(db, pickup_id)
        if pickup.ai_verification_score is not None:
            raise InvalidState(f"Pickup {pickup_id} was already scored")

        category = validate_category(pickup.waste_category)
        get_profile(db, pickup.user_id)

        confidence = verification.check_confidence(oracle.score(pickup))
        points = compute_initial_points(category, confidence)

        # El pickup se actualiza ANTES de que el asiento lo referencie
        pickup.ai_verification_score = confidence
        pickup.points_awarded = points
        db.flush()

        append_entry(
            db, pickup.user_id, pickup.id, None, TransactionType.pickup_created, points,
            {
                "waste_category": category,
                "estimated_weight": pickup.estimated_weight,
                "ai_score": confidence,
            },
        )

        other_pickups = db.query(Pickup).filter(
            Pickup.user_id == pickup.user_id,
            Pickup.id != pickup.id,
            Pickup.status != PickupStatus.cancelled.value
        ).count()

        badge_names = []
        if other_pickups == 0 and award_badge(db, pickup.user_id, FIRST_PICKUP_BADGE):
            badge_names.append(FIRST_PICKUP_BADGE)

        new_balance = get_balance(db, pickup.user_id)
        logger.info(
            f"♻️ Pickup {pickup.id} procesado. Score IA: {confidence:.2f}, "
            f"puntos: {points}, saldo: {new_balance}"
        )
        return HandlerResult(
            success=True,
            pickup_id=pickup.id,
            ai_score=confidence,
            points_awarded=points,
            new_balance=new_balance,
            badges_awarded=len(badge_names),
            badge_names=badge_names,
        )

    return _run_event(db, "on_pickup_created", pickup_id, process)


def on_pickup_status_changed(
    db: Session,
    new_record: dict,
    old_record: Optional[dict],
    now: Optional[datetime] = None,
) -> HandlerResult:
    """
    Se llama en CADA actualización de un pickup.
    Solo el paso "→ completed" tiene efectos; el resto se ignora.
    """
    pickup_id = new_record.get("id")
    new_status = new_record.get("status")
    old_status = (old_record or {}).get("status")

    if new_status != PickupStatus.completed.value or old_status == PickupStatus.completed.value:
        return HandlerResult(success=True, pickup_id=pickup_id, message="No processing needed")

    now = now or datetime.utcnow()

    def process() -> HandlerResult:
        pickup = _load_pickup(db, pickup_id)
        if pickup.completion_processed_at is not None:
            logger.info(f"🔁 Completado de pickup {pickup_id} ya procesado, se ignora")
            return HandlerResult(success=True, pickup_id=pickup_id, message="Completion already processed")
        if pickup.status != PickupStatus.completed.value:
            raise InvalidState(f"Pickup {pickup_id} is {pickup.status}, not completed")

        get_profile(db, pickup.user_id)

        # 1-2. Bonus por peso real
        weight_bonus = compute_weight_bonus(pickup.actual_weight)
        pickup.points_awarded = (pickup.points_awarded or 0) + weight_bonus
        pickup.completion_processed_at = now
        db.flush()

        append_entry(
            db, pickup.user_id, pickup.id, None, TransactionType.pickup_completed, weight_bonus,
            {
                "waste_category": pickup.waste_category,
                "actual_weight": pickup.actual_weight,
                "weight_bonus": weight_bonus,
                "completion_timestamp": now.isoformat(),
            },
        )

        # 3. Racha (sobre la fila fresca: otro completado pudo confirmarse entre medias)
        profile = lock_profile(db, pickup.user_id)
        streak = next_streak(profile.weekly_streak, profile.last_pickup_date, now)
        profile.weekly_streak = streak
        profile.best_streak = max(profile.best_streak or 0, streak)
        profile.last_pickup_date = now
        profile.total_pickups = (profile.total_pickups or 0) + 1

        # 4. Insignias
        badge_names = evaluate_and_award_badges(db, pickup.user_id)

        new_balance = get_balance(db, pickup.user_id)
        logger.info(
            f"✅ Pickup {pickup.id} completado. Bonus peso: {weight_bonus}, "
            f"racha: {streak}, insignias: {len(badge_names)}"
        )
        return HandlerResult(
            success=True,
            pickup_id=pickup.id,
            points_awarded=pickup.points_awarded,
            weight_bonus=weight_bonus,
            new_balance=new_balance,
            new_streak=streak,
            badges_awarded=len(badge_names),
            badge_names=badge_names,
        )

    return _run_event(db, "on_pickup_status_changed", pickup_id, process)
