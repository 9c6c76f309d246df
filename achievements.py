"""
=============================================================================
ACHIEVEMENTS.PY — Evaluador de Insignias (logros)
=============================================================================
Gestiona:
  - El catálogo de insignias (se siembra al arrancar)
  - Las reglas de desbloqueo (tabla declarativa)
  - La concesión de insignias: UserBadge + asiento de +50 en el ledger

Las reglas NO son una cadena de if/else. Cada regla es un dato:
  {"kind": "milestone", "threshold": 10}
  {"kind": "category", "waste_category": "plastic", "measure": "weight", "threshold": 50}
y todas se evalúan igual: valor_actual(regla) >= umbral.
Añadir una insignia nueva de un tipo existente = añadir una línea al catálogo.

Todas las cifras cuentan SOLO recogidas completadas.
"""

import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import NotFound, ConcurrencyConflict
from ledger import append_entry, get_profile
from models import (
    Badge, UserBadge, Pickup, PickupStatus, TransactionType, BadgeCategory
)
from scoring import compute_badge_bonus

logger = logging.getLogger("wastechain.achievements")

FIRST_PICKUP_BADGE = "First Pickup"


# =============================================================================
# ===================== CATÁLOGO ==============================================
# =============================================================================

BADGE_DEFINITIONS = [
    # ── Bienvenida (la concede el handler de creación, no el evaluador) ──
    {"name": FIRST_PICKUP_BADGE, "description": "Solicita tu primera recogida", "icon": "🌱",
     "category": BadgeCategory.onboarding, "rule": None},

    # ── Hitos de recogidas completadas ──
    {"name": "Eco Warrior", "description": "Completa 10 recogidas", "icon": "🛡️",
     "category": BadgeCategory.milestone, "rule": {"kind": "milestone", "threshold": 10}},
    {"name": "Green Champion", "description": "Completa 50 recogidas", "icon": "🏅",
     "category": BadgeCategory.milestone, "rule": {"kind": "milestone", "threshold": 50}},
    {"name": "Recycling Master", "description": "Completa 100 recogidas", "icon": "👑",
     "category": BadgeCategory.milestone, "rule": {"kind": "milestone", "threshold": 100}},

    # ── Rachas ──
    {"name": "Weekly Streak", "description": "7 días seguidos completando recogidas", "icon": "🔥",
     "category": BadgeCategory.streak, "rule": {"kind": "streak", "threshold": 7}},

    # ── Por categoría ──
    {"name": "Plastic Fighter", "description": "Recicla 50 kg de plástico", "icon": "🧴",
     "category": BadgeCategory.category,
     "rule": {"kind": "category", "waste_category": "plastic", "measure": "weight", "threshold": 50}},
    {"name": "Paper Saver", "description": "Recicla 100 kg de papel", "icon": "📰",
     "category": BadgeCategory.category,
     "rule": {"kind": "category", "waste_category": "paper", "measure": "weight", "threshold": 100}},
    {"name": "E-Waste Expert", "description": "Completa 20 recogidas de electrónica", "icon": "🔌",
     "category": BadgeCategory.category,
     "rule": {"kind": "category", "waste_category": "electronic", "measure": "count", "threshold": 20}},
]

BADGE_RULES = [d for d in BADGE_DEFINITIONS if d["rule"]]


def seed_badges(db: Session):
    """
    Inserta las insignias en la BD si no existen.
    Se ejecuta al arrancar la aplicación.
    """
    for badge_def in BADGE_DEFINITIONS:
        existing = db.query(Badge).filter(Badge.name == badge_def["name"]).first()
        if not existing:
            rule = badge_def["rule"] or {}
            db.add(Badge(
                name=badge_def["name"],
                description=badge_def["description"],
                icon=badge_def["icon"],
                category=badge_def["category"].value,
                threshold=rule.get("threshold"),
                points_reward=compute_badge_bonus(),
            ))
    db.commit()
    logger.info(f"✅ {len(BADGE_DEFINITIONS)} insignias verificadas en BD")


# =============================================================================
# ===================== ESTADÍSTICAS ==========================================
# =============================================================================

def get_user_stats(db: Session, user_id: int) -> dict:
    """
    Todo lo que miran las reglas, en una sola consulta agregada.

    Retorna:
      {
        "completed_pickups": 12,
        "streak": 3,
        "total_weight": 61.5,
        "categories": {"plastic": {"count": 4, "weight": 22.0}, ...}
      }
    """
    # Lo pendiente de la sesión (estado del pickup, racha) debe verse en la consulta
    db.flush()
    profile = get_profile(db, user_id)

    rows = db.query(
        Pickup.waste_category,
        func.count(Pickup.id),
        func.coalesce(func.sum(Pickup.actual_weight), 0.0),
    ).filter(
        Pickup.user_id == user_id,
        Pickup.status == PickupStatus.completed.value
    ).group_by(Pickup.waste_category).all()

    categories = {
        category: {"count": int(count), "weight": float(weight)}
        for category, count, weight in rows
    }
    return {
        "completed_pickups": sum(c["count"] for c in categories.values()),
        "streak": profile.weekly_streak or 0,
        "total_weight": sum(c["weight"] for c in categories.values()),
        "categories": categories,
    }


def _category_value(rule: dict, stats: dict) -> float:
    totals = stats["categories"].get(rule["waste_category"], {"count": 0, "weight": 0.0})
    return totals[rule["measure"]]


# Cómo se mide cada tipo de regla
RULE_METRICS = {
    "milestone": lambda rule, stats: stats["completed_pickups"],
    "streak": lambda rule, stats: stats["streak"],
    "category": _category_value,
}


def rule_value(rule: dict, stats: dict) -> float:
    return RULE_METRICS[rule["kind"]](rule, stats)


def rule_met(rule: dict, stats: dict) -> bool:
    return rule_value(rule, stats) >= rule["threshold"]


# =============================================================================
# ===================== CONCESIÓN =============================================
# =============================================================================

def award_badge(db: Session, user_id: int, badge_name: str) -> Optional[Badge]:
    """
    Concede una insignia a un usuario (como mucho UNA vez).

    Pasos:
      1. Crear el UserBadge
      2. Asiento badge_earned con el bonus fijo

    Retorna la insignia si es nueva, None si ya la tenía.
    """
    badge = db.query(Badge).filter(Badge.name == badge_name).first()
    if badge is None:
        raise NotFound(f"Badge {badge_name!r} not found in catalog")

    existing = db.query(UserBadge).filter(
        UserBadge.user_id == user_id,
        UserBadge.badge_id == badge.id
    ).first()
    if existing:
        return None

    db.add(UserBadge(user_id=user_id, badge_id=badge.id))
    try:
        db.flush()
    except IntegrityError as e:
        raise ConcurrencyConflict(f"Badge {badge_name!r} awarded concurrently to user {user_id}") from e

    append_entry(
        db, user_id, None, badge.id, TransactionType.badge_earned,
        compute_badge_bonus(), {"badge_name": badge.name},
    )
    logger.info(f"🏆 Usuario {user_id} desbloqueó: {badge.name}")
    return badge


def evaluate_and_award_badges(db: Session, user_id: int) -> list[str]:
    """
    Evalúa TODAS las reglas contra el estado acumulado del usuario.
    Retorna los nombres de las insignias recién desbloqueadas.

    Evaluar dos veces sin cambios no concede nada la segunda vez.
    """
    stats = get_user_stats(db, user_id)

    held = set(
        name for (name,) in db.query(Badge.name).join(
            UserBadge, UserBadge.badge_id == Badge.id
        ).filter(UserBadge.user_id == user_id).all()
    )

    newly_awarded = []
    for badge_def in BADGE_RULES:
        if badge_def["name"] in held:
            continue
        if rule_met(badge_def["rule"], stats):
            if award_badge(db, user_id, badge_def["name"]):
                newly_awarded.append(badge_def["name"])

    return newly_awarded


def get_badge_progress(db: Session, user_id: int) -> list[dict]:
    """Progreso de cada insignia: valor actual, umbral y si ya está ganada"""
    stats = get_user_stats(db, user_id)
    earned = {
        ub.badge.name: ub.earned_at
        for ub in db.query(UserBadge).filter(UserBadge.user_id == user_id).all()
        if ub.badge
    }

    result = []
    for badge_def in BADGE_DEFINITIONS:
        rule = badge_def["rule"]
        result.append({
            "name": badge_def["name"],
            "description": badge_def["description"],
            "icon": badge_def["icon"],
            "category": badge_def["category"].value,
            "current": rule_value(rule, stats) if rule else None,
            "threshold": rule["threshold"] if rule else None,
            "earned": badge_def["name"] in earned,
            "earned_at": earned.get(badge_def["name"]),
        })
    return result
