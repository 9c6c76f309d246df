"""
=============================================================================
MODELS.PY — Modelos (Tablas) del motor de puntos verdes
=============================================================================
Cada clase aquí = una tabla en la base de datos.

RELACIONES:
  PROFILE
  ├── pickups[] (solicitudes de recogida que creó)
  ├── ledger_entries[] (libro mayor: cada movimiento de puntos)
  └── user_badges[] ──→ badge (insignias ganadas)

Reglas de oro:
  - profiles.green_points es una CACHÉ. La verdad está en ledger_entries.
  - ledger_entries es append-only: nunca se actualiza ni se borra una fila.
  - pickups nunca se borran (solo se insertan y se actualizan).
"""

from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Float, Text, DateTime, ForeignKey, JSON,
    UniqueConstraint, event
)
from sqlalchemy.orm import relationship
from database import Base
import enum

from errors import InvalidState


# =============================================================================
# ===================== ENUMS (Tipos predefinidos) ============================
# =============================================================================

class UserRole(str, enum.Enum):
    """Rol de la cuenta"""
    household = "household"  # 🏠 Genera residuos, gana puntos
    collector = "collector"  # 🚛 Recoge los residuos
    company = "company"      # 🏭 Consume datos EPR
    admin = "admin"          # 🛠️ Ajustes manuales

class WasteCategory(str, enum.Enum):
    """Categoría del residuo"""
    organic = "organic"
    plastic = "plastic"
    paper = "paper"
    electronic = "electronic"
    hazardous = "hazardous"
    metal = "metal"
    glass = "glass"
    textile = "textile"

class PickupStatus(str, enum.Enum):
    """
    Estados del ciclo de vida de una recogida.
    pending → assigned → in_progress → collected → processed → completed
    cancelled es alcanzable desde cualquier estado no terminal.
    """
    pending = "pending"
    assigned = "assigned"
    in_progress = "in_progress"
    collected = "collected"
    processed = "processed"
    completed = "completed"
    cancelled = "cancelled"

class TransactionType(str, enum.Enum):
    """Tipo de movimiento del ledger"""
    pickup_created = "pickup_created"      # Puntos iniciales (score IA)
    pickup_completed = "pickup_completed"  # Bonus por peso real
    badge_earned = "badge_earned"          # Bonus por insignia
    bonus_points = "bonus_points"          # Ajuste manual positivo (admin)
    penalty = "penalty"                    # Ajuste manual negativo (admin)
    redemption = "redemption"              # Canje de puntos

class BadgeCategory(str, enum.Enum):
    onboarding = "onboarding"
    milestone = "milestone"
    streak = "streak"
    category = "category"


# =============================================================================
# ===================== TABLA 1: PROFILES =====================================
# =============================================================================

class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # ── Datos básicos ──
    full_name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=True, index=True)
    role = Column(String(20), default=UserRole.household.value, nullable=False)
    city = Column(String(100), nullable=True)

    # ── Gamificación ──
    green_points = Column(Integer, default=0, nullable=False)
    # green_points → caché de SUM(ledger_entries.points_change)
    weekly_streak = Column(Integer, default=0, nullable=False)
    # weekly_streak → días consecutivos con al menos una recogida completada
    best_streak = Column(Integer, default=0, nullable=False)
    total_pickups = Column(Integer, default=0, nullable=False)
    # total_pickups → recogidas COMPLETADAS
    last_pickup_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    # ── Relaciones ──
    pickups = relationship("Pickup", back_populates="user", foreign_keys="Pickup.user_id")
    ledger_entries = relationship("LedgerEntry", back_populates="user", order_by="LedgerEntry.id")
    user_badges = relationship("UserBadge", back_populates="user")


# =============================================================================
# ===================== TABLA 2: PICKUPS ======================================
# =============================================================================

class Pickup(Base):
    __tablename__ = "pickups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    collector_id = Column(Integer, ForeignKey("profiles.id"), nullable=True)

    waste_category = Column(String(20), nullable=False)
    estimated_weight = Column(Float, nullable=True)
    actual_weight = Column(Float, nullable=True)
    # actual_weight → NULL hasta que el estado llega a "collected"

    status = Column(String(20), default=PickupStatus.pending.value, nullable=False, index=True)

    ai_verification_score = Column(Float, nullable=True)
    # ai_verification_score → 0.0 a 1.0, se asigna UNA vez al crear
    points_awarded = Column(Integer, default=0, nullable=False)
    # points_awarded → nunca decrece: inicial al crear, + bonus al completar

    pickup_address = Column(String(300), nullable=True)
    notes = Column(Text, nullable=True)

    # ── Timestamps por transición ──
    created_at = Column(DateTime, default=datetime.utcnow)
    assigned_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    collected_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    completion_processed_at = Column(DateTime, nullable=True)
    # completion_processed_at → cuándo se aplicaron los efectos de "completed".
    # Si no es NULL, un evento de completado repetido no hace nada.

    user = relationship("Profile", back_populates="pickups", foreign_keys=[user_id])
    collector = relationship("Profile", foreign_keys=[collector_id])


# =============================================================================
# ===================== TABLA 3: LEDGER_ENTRIES ===============================
# =============================================================================
# Libro mayor inmutable. Ordenado por id (= orden de creación), la suma
# acumulada de points_change reproduce exactamente balance_after.

class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    pickup_id = Column(Integer, ForeignKey("pickups.id"), nullable=True)
    badge_id = Column(Integer, ForeignKey("badges.id"), nullable=True)

    transaction_type = Column(String(30), nullable=False)
    points_change = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    transaction_data = Column(JSON, nullable=True)
    # transaction_data → {"waste_category": "plastic", "ai_score": 0.8, ...}

    created_at = Column(DateTime, default=datetime.utcnow)

    # ── Un pickup no puede acreditarse dos veces por el mismo paso ──
    # (pickup_id NULL no choca: las insignias no llevan pickup)
    __table_args__ = (
        UniqueConstraint('pickup_id', 'transaction_type', name='uq_ledger_pickup_type'),
    )

    user = relationship("Profile", back_populates="ledger_entries")
    pickup = relationship("Pickup")
    badge = relationship("Badge")


@event.listens_for(LedgerEntry, "before_update")
def _ledger_entry_is_immutable(mapper, connection, target):
    raise InvalidState(f"Ledger entry {target.id} is immutable")


@event.listens_for(LedgerEntry, "before_delete")
def _ledger_entry_cannot_be_deleted(mapper, connection, target):
    raise InvalidState(f"Ledger entry {target.id} cannot be deleted")


# =============================================================================
# ===================== TABLA 4: BADGES =======================================
# =============================================================================
# Catálogo estático de insignias (se siembra al arrancar).

class Badge(Base):
    __tablename__ = "badges"

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String(100), unique=True, nullable=False)
    # name → "Eco Warrior", "Plastic Fighter"...
    description = Column(String(300), nullable=False)
    icon = Column(String(10), default="🏆")
    category = Column(String(20), default=BadgeCategory.milestone.value)
    threshold = Column(Float, nullable=True)
    # threshold → 10 recogidas, 50 kg, 7 días... (NULL para "First Pickup")
    points_reward = Column(Integer, default=50)


# =============================================================================
# ===================== TABLA 5: USER_BADGES ==================================
# =============================================================================
# Insignias ganadas por cada usuario. Como máximo una por (usuario, insignia).

class UserBadge(Base):
    __tablename__ = "user_badges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    badge_id = Column(Integer, ForeignKey("badges.id"), nullable=False)

    earned_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'badge_id', name='uq_user_badge'),
    )

    user = relationship("Profile", back_populates="user_badges")
    badge = relationship("Badge")
