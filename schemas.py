"""
=============================================================================
SCHEMAS.PY — Esquemas de Validación (Pydantic)
=============================================================================
  - Models (SQLAlchemy) → definen las TABLAS de la BD
  - Schemas (Pydantic)  → definen qué DATOS acepta/devuelve la API

Convención de nombres:
  XxxCreate   → para crear algo nuevo (POST)
  XxxUpdate   → para actualizar algo (PATCH)
  XxxResponse → lo que devuelve la API (GET)
  XxxPayload  → lo que envía el dispatcher de eventos (webhooks)
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from models import WasteCategory, PickupStatus


# =============================================================================
# ===================== RESULTADO DE LOS HANDLERS =============================
# =============================================================================

class HandlerResult(BaseModel):
    """
    Lo que devuelve cada handler de evento.
    Lo consumen el log y la monitorización, no el usuario final.
    """
    success: bool
    pickup_id: Optional[int] = None
    message: Optional[str] = None
    ai_score: Optional[float] = None
    points_awarded: Optional[int] = None
    weight_bonus: Optional[int] = None
    new_balance: Optional[int] = None
    new_streak: Optional[int] = None
    badges_awarded: int = 0
    badge_names: list[str] = []
    error_code: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False

    @classmethod
    def failure(cls, pickup_id: Optional[int], error) -> "HandlerResult":
        return cls(
            success=False,
            pickup_id=pickup_id,
            error_code=error.code,
            error=error.message,
            retryable=error.retryable,
        )


# =============================================================================
# ===================== WEBHOOKS ==============================================
# =============================================================================

class PickupRecord(BaseModel):
    """Fila de la tabla pickups tal como la envía el trigger"""
    id: int
    user_id: Optional[int] = None
    collector_id: Optional[int] = None
    waste_category: Optional[str] = None
    estimated_weight: Optional[float] = None
    actual_weight: Optional[float] = None
    status: Optional[str] = None
    points_awarded: Optional[int] = None
    model_config = {"extra": "allow"}

class PickupCreatedPayload(BaseModel):
    type: str = "INSERT"
    table: str = "pickups"
    record: PickupRecord

class PickupUpdatedPayload(BaseModel):
    type: str = "UPDATE"
    table: str = "pickups"
    record: PickupRecord
    old_record: Optional[PickupRecord] = None


# =============================================================================
# ===================== PICKUPS ===============================================
# =============================================================================

class PickupCreate(BaseModel):
    waste_category: WasteCategory
    estimated_weight: Optional[float] = Field(default=None, ge=0)
    pickup_address: Optional[str] = Field(default=None, max_length=300)
    notes: Optional[str] = None

class PickupStatusUpdate(BaseModel):
    status: PickupStatus
    actual_weight: Optional[float] = Field(default=None, ge=0)
    collector_id: Optional[int] = None

class PickupResponse(BaseModel):
    id: int
    user_id: int
    collector_id: Optional[int]
    waste_category: str
    estimated_weight: Optional[float]
    actual_weight: Optional[float]
    status: str
    ai_verification_score: Optional[float]
    points_awarded: int
    created_at: datetime
    completed_at: Optional[datetime]
    model_config = {"from_attributes": True}

class PickupEventResponse(BaseModel):
    """Pickup + resultado del handler que disparó"""
    pickup: PickupResponse
    result: HandlerResult


# =============================================================================
# ===================== PUNTOS Y LEDGER =======================================
# =============================================================================

class PointsResponse(BaseModel):
    user_id: int
    green_points: int
    weekly_streak: int
    best_streak: int
    total_pickups: int
    last_pickup_date: Optional[datetime]

class LedgerEntryResponse(BaseModel):
    id: int
    user_id: int
    pickup_id: Optional[int]
    badge_id: Optional[int]
    transaction_type: str
    points_change: int
    balance_after: int
    transaction_data: Optional[dict[str, Any]]
    created_at: datetime
    model_config = {"from_attributes": True}

class LedgerAuditResponse(BaseModel):
    user_id: int
    entries: int
    ledger_sum: int
    profile_balance: int
    consistent: bool
    first_broken_entry_id: Optional[int] = None

class AdjustmentCreate(BaseModel):
    """Ajuste manual de un admin (positivo = bonus, negativo = penalización)"""
    points: int
    reason: str = Field(min_length=3, max_length=300)

class RedemptionCreate(BaseModel):
    points: int = Field(gt=0)
    reward: str = Field(min_length=1, max_length=100)


# =============================================================================
# ===================== INSIGNIAS Y STATS =====================================
# =============================================================================

class BadgeResponse(BaseModel):
    id: int
    name: str
    description: str
    icon: str
    category: str
    threshold: Optional[float]
    points_reward: int
    model_config = {"from_attributes": True}

class BadgeProgressResponse(BaseModel):
    name: str
    description: str
    icon: str
    category: str
    current: Optional[float] = None
    threshold: Optional[float] = None
    earned: bool
    earned_at: Optional[datetime] = None

class ImpactResponse(BaseModel):
    weight_kg: float
    carbon_saved_kg: float
    energy_saved_kwh: float

class UserStatsResponse(BaseModel):
    user_id: int
    green_points: int
    completed_pickups: int
    weekly_streak: int
    categories: dict[str, dict[str, float]]
    points_by_type: dict[str, int]
    impact: ImpactResponse
