"""
=============================================================================
SCORING.PY — Calculadora de Puntos y Recompensas
=============================================================================
Funciones PURAS: sin base de datos, sin I/O, sin aleatoriedad.

  - Puntos iniciales  → categoría × confianza de la verificación IA
  - Bonus por peso    → 2 puntos por kg real recogido (al completar)
  - Bonus de insignia → 50 puntos fijos por insignia nueva

Nota: los puntos iniciales NO dependen del peso estimado, solo de la
categoría. El peso solo cuenta al completar, con el peso REAL.
"""

import math
from typing import Optional

from errors import ValidationError
from models import WasteCategory
from verification import check_confidence

# ─────────────────────────────────────────────────────────────────────────────
# TABLAS DE PUNTOS
# ─────────────────────────────────────────────────────────────────────────────

# Puntos base por categoría de residuo
CATEGORY_POINTS = {
    WasteCategory.organic.value: 10,
    WasteCategory.plastic.value: 15,
    WasteCategory.paper.value: 12,
    WasteCategory.electronic.value: 25,
    WasteCategory.hazardous.value: 30,
    WasteCategory.metal.value: 20,
    WasteCategory.glass.value: 15,
    WasteCategory.textile.value: 18,
}

WEIGHT_BONUS_PER_KG = 2
BADGE_BONUS = 50

# Impacto ambiental por kg de residuo desviado del vertedero
CO2_SAVED_PER_KG = 2.3      # kg de CO2
ENERGY_SAVED_PER_KG = 15    # kWh


def round_half_up(value: float) -> int:
    """Redondeo "de toda la vida": 24.5 → 25 (round() de Python daría 24)"""
    return int(math.floor(value + 0.5))


def validate_category(category: str) -> str:
    """Devuelve la categoría normalizada o lanza ValidationError"""
    value = category.value if isinstance(category, WasteCategory) else category
    if value not in CATEGORY_POINTS:
        raise ValidationError(f"Unknown waste category: {category!r}")
    return value


def validate_weight(weight_kg: Optional[float], field: str = "weight") -> Optional[float]:
    if weight_kg is None:
        return None
    if isinstance(weight_kg, bool) or not isinstance(weight_kg, (int, float)):
        raise ValidationError(f"{field} must be a number, got {weight_kg!r}")
    if math.isnan(weight_kg) or weight_kg < 0:
        raise ValidationError(f"{field} must be a non-negative number, got {weight_kg!r}")
    return float(weight_kg)


# =============================================================================
# ===================== CÁLCULOS ==============================================
# =============================================================================

def compute_initial_points(category: str, verification_confidence: float) -> int:
    """
    Puntos al CREAR un pickup.

    Fórmula: round(puntos_base × confianza)
      compute_initial_points("hazardous", 1.0) → 30
      compute_initial_points("organic", 0.6)   → 6

    Como la confianza está en [0, 1], el resultado nunca es negativo
    ni supera los puntos base de la categoría.
    """
    base_points = CATEGORY_POINTS[validate_category(category)]
    confidence = check_confidence(verification_confidence)
    return round_half_up(base_points * confidence)


def compute_weight_bonus(actual_weight_kg: Optional[float]) -> int:
    """
    Bonus al COMPLETAR un pickup: 2 puntos por kg real.
      compute_weight_bonus(12.3) → 25
      compute_weight_bonus(0)    → 0
      compute_weight_bonus(None) → 0
    """
    weight = validate_weight(actual_weight_kg, "actual_weight")
    if not weight:
        return 0
    return round_half_up(weight * WEIGHT_BONUS_PER_KG)


def compute_badge_bonus() -> int:
    """Puntos extra por cada insignia desbloqueada"""
    return BADGE_BONUS


def estimate_environmental_impact(weight_kg: float) -> dict:
    """CO2 y energía ahorrados por los kg reciclados"""
    weight = weight_kg or 0
    return {
        "weight_kg": round(weight, 1),
        "carbon_saved_kg": round(weight * CO2_SAVED_PER_KG, 1),
        "energy_saved_kwh": round(weight * ENERGY_SAVED_PER_KG, 1),
    }
