"""
=============================================================================
MAIN.PY — La API de WasteChain (puntos verdes)
=============================================================================
Organización por secciones:
  1. WEBHOOKS     → Eventos de la BD (pickup creado / actualizado)
  2. PICKUPS      → Crear recogidas y moverlas por su ciclo de vida
  3. PUNTOS       → Saldo, ledger, canjes
  4. INSIGNIAS    → Catálogo y progreso
  5. ADMIN        → Ajustes manuales y auditoría del ledger

El dashboard, los mapas, los informes PDF y el login viven en otros
servicios: esta API solo expone el motor de puntos.
"""

import os
import logging
import traceback
from datetime import datetime
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends, HTTPException, status, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from database import get_db, init_db, SessionLocal
from models import Profile, Pickup, Badge, UserRole, PickupStatus
from schemas import (
    HandlerResult, PickupCreatedPayload, PickupUpdatedPayload,
    PickupCreate, PickupStatusUpdate, PickupResponse, PickupEventResponse,
    PointsResponse, LedgerEntryResponse, LedgerAuditResponse,
    AdjustmentCreate, RedemptionCreate, BadgeResponse, BadgeProgressResponse,
    UserStatsResponse, ImpactResponse
)
from auth import get_current_user, require_roles, verify_service_role
from errors import EngineError
from achievements import seed_badges, get_badge_progress, get_user_stats
from ledger import list_entries, verify_ledger, adjust_points, redeem_points, ledger_totals_by_type
from lifecycle import (
    create_pickup, transition_pickup, pickup_snapshot,
    on_pickup_created, on_pickup_status_changed
)
from scoring import estimate_environmental_impact
import scheduler as ledger_scheduler

# ─────────────────────────────────────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s"
)
logger = logging.getLogger("wastechain.api")

# Código de error del motor → código HTTP
STATUS_BY_ERROR_CODE = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "validation_error": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "invalid_state": status.HTTP_409_CONFLICT,
    "concurrency_conflict": status.HTTP_409_CONFLICT,
}

# Reintentos de un handler despachado desde un endpoint de usuario
EVENT_MAX_RETRIES = int(os.getenv("EVENT_MAX_RETRIES", "3"))


# ─────────────────────────────────────────────────────────────────────────────
# LIFESPAN (Arranque y apagado)
# ─────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Arranque:
      1. Inicializar BD (crear tablas)
      2. Sembrar el catálogo de insignias
      3. Arrancar la auditoría nocturna del ledger

    Apagado:
      - Parar el scheduler
    """
    logger.info("🚀 Arrancando WasteChain...")

    init_db()
    logger.info("✅ Base de datos inicializada")

    db = SessionLocal()
    try:
        seed_badges(db)
    finally:
        db.close()

    if ledger_scheduler.LEDGER_AUDIT_ENABLED:
        ledger_scheduler.create_scheduler()
        ledger_scheduler.start_scheduler()
    else:
        logger.warning("⚠️ Auditoría del ledger desactivada (LEDGER_AUDIT_ENABLED)")

    logger.info("🎉 WasteChain operativo")

    yield

    logger.info("🛑 Apagando WasteChain...")
    ledger_scheduler.stop_scheduler()
    logger.info("👋 Apagado completo")


# ─────────────────────────────────────────────────────────────────────────────
# APLICACIÓN FASTAPI
# ─────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="WasteChain Green Points API",
    description="Ledger de puntos verdes y gamificación de las recogidas de residuos",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─────────────────────────────────────────────────────────────────────────────
# GLOBAL ERROR HANDLERS
# ─────────────────────────────────────────────────────────────────────────────

@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    """Errores del motor que llegan a un endpoint → JSON con su código"""
    logger.warning(f"⚠️ {exc.code} en {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=STATUS_BY_ERROR_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST),
        content=exc.to_dict()
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Captura errores no manejados y devuelve detalles útiles"""
    error_msg = str(exc)
    error_trace = traceback.format_exc()
    logger.error(f"❌ Error no manejado en {request.url}: {error_msg}\n{error_trace}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": error_msg,
            "type": type(exc).__name__,
            "path": str(request.url)
        }
    )


def _result_status(result: HandlerResult) -> int:
    if result.success:
        return status.HTTP_200_OK
    return STATUS_BY_ERROR_CODE.get(result.error_code, status.HTTP_400_BAD_REQUEST)


def _result_response(result: HandlerResult) -> JSONResponse:
    """Resultado de un handler → respuesta para el dispatcher"""
    return JSONResponse(status_code=_result_status(result), content=result.model_dump())


def _dispatch(event: str, handler) -> HandlerResult:
    """
    Despacho en proceso (endpoints de usuario).
    Aquí no hay dispatcher externo que reintente: si el fallo es
    reintentable, se repite el handler hasta EVENT_MAX_RETRIES veces.
    """
    for attempt in range(1, EVENT_MAX_RETRIES + 1):
        result = handler()
        if result.success or not result.retryable:
            return result
        logger.warning(
            f"🔁 {event} pickup {result.pickup_id}: {result.error_code} "
            f"(intento {attempt}/{EVENT_MAX_RETRIES})"
        )
    return result


def _event_response(pickup: Pickup, result: HandlerResult) -> JSONResponse:
    """Pickup + resultado; el código HTTP refleja si el handler falló"""
    body = PickupEventResponse(pickup=PickupResponse.model_validate(pickup), result=result)
    return JSONResponse(status_code=_result_status(result), content=body.model_dump(mode="json"))


# =============================================================================
# ===================== HEALTH CHECK ==========================================
# =============================================================================

@app.get("/", tags=["Health"])
def health_check():
    """Verifica que la API está viva"""
    return {
        "status": "ok",
        "app": "WasteChain Green Points",
        "version": "1.0.0",
        "timestamp": datetime.utcnow().isoformat()
    }


# =============================================================================
# ===================== SECCIÓN 1: WEBHOOKS ===================================
# =============================================================================
# Los llama el trigger de la BD (entrega "al menos una vez").
# 409 con retryable=true → el dispatcher debe reintentar el mismo evento.

@app.post("/webhooks/pickup-created", tags=["Webhooks"])
def webhook_pickup_created(
    payload: PickupCreatedPayload,
    _service: dict = Depends(verify_service_role),
    db: Session = Depends(get_db)
):
    """Un pickup se acaba de insertar → score IA + puntos iniciales"""
    logger.info(f"📨 Webhook INSERT pickup {payload.record.id}")
    result = on_pickup_created(db, payload.record.model_dump())
    return _result_response(result)


@app.post("/webhooks/pickup-updated", tags=["Webhooks"])
def webhook_pickup_updated(
    payload: PickupUpdatedPayload,
    _service: dict = Depends(verify_service_role),
    db: Session = Depends(get_db)
):
    """Un pickup cambió → solo actúa si acaba de pasar a completed"""
    old_record = payload.old_record.model_dump() if payload.old_record else None
    result = on_pickup_status_changed(db, payload.record.model_dump(), old_record)
    return _result_response(result)


# =============================================================================
# ===================== SECCIÓN 2: PICKUPS ====================================
# =============================================================================

@app.post("/pickups", response_model=PickupEventResponse, tags=["Pickups"])
def request_pickup(
    data: PickupCreate,
    user: Profile = Depends(require_roles(UserRole.household.value)),
    db: Session = Depends(get_db)
):
    """
    Un hogar solicita una recogida.

    Flujo:
      1. Insertar el pickup (pending) y confirmar
      2. Despachar on_pickup_created (su propia transacción)

    Si el handler falla, el pickup ya existe: la respuesta lleva el
    código del error (409/404/422) y el resultado del handler.
    """
    pickup = create_pickup(
        db, user.id, data.waste_category.value, data.estimated_weight,
        data.pickup_address, data.notes
    )
    db.commit()
    db.refresh(pickup)

    record = pickup_snapshot(pickup)
    result = _dispatch("on_pickup_created", lambda: on_pickup_created(db, record))
    db.refresh(pickup)

    return _event_response(pickup, result)


@app.patch("/pickups/{pickup_id}/status", response_model=PickupEventResponse, tags=["Pickups"])
def update_pickup_status(
    pickup_id: int,
    data: PickupStatusUpdate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Mueve un pickup por su ciclo de vida.

    Permisos:
      - household → solo cancelar sus propios pickups
      - collector → los pickups que tiene asignados (o asignarse uno libre)
      - admin     → cualquiera
    """
    pickup = db.query(Pickup).filter(Pickup.id == pickup_id).first()
    if not pickup:
        raise HTTPException(status_code=404, detail="Pickup not found")

    collector_id = data.collector_id
    if user.role == UserRole.household.value:
        if pickup.user_id != user.id or data.status != PickupStatus.cancelled:
            raise HTTPException(status_code=403, detail="Households can only cancel their own pickups")
    elif user.role == UserRole.collector.value:
        if data.status == PickupStatus.assigned:
            if pickup.collector_id not in (None, user.id):
                raise HTTPException(status_code=403, detail="Pickup is assigned to another collector")
            collector_id = user.id
        elif pickup.collector_id != user.id:
            raise HTTPException(status_code=403, detail="Pickup is not assigned to you")
        else:
            collector_id = None
    elif user.role != UserRole.admin.value:
        raise HTTPException(status_code=403, detail="Not allowed to change pickup status")

    new_record, old_record = transition_pickup(
        db, pickup_id, data.status, data.actual_weight, collector_id
    )
    db.commit()

    result = _dispatch(
        "on_pickup_status_changed",
        lambda: on_pickup_status_changed(db, new_record, old_record)
    )
    db.refresh(pickup)

    return _event_response(pickup, result)


@app.get("/pickups", response_model=list[PickupResponse], tags=["Pickups"])
def list_pickups(
    status_filter: Optional[PickupStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Lista pickups según el rol: los propios, los asignados o todos"""
    query = db.query(Pickup)
    if user.role == UserRole.household.value:
        query = query.filter(Pickup.user_id == user.id)
    elif user.role == UserRole.collector.value:
        query = query.filter(Pickup.collector_id == user.id)
    if status_filter:
        query = query.filter(Pickup.status == status_filter.value)
    return query.order_by(Pickup.created_at.desc(), Pickup.id.desc()).limit(limit).all()


# =============================================================================
# ===================== SECCIÓN 3: PUNTOS =====================================
# =============================================================================

@app.get("/me/points", response_model=PointsResponse, tags=["Points"])
def get_my_points(user: Profile = Depends(get_current_user)):
    """Saldo de puntos verdes y racha actual"""
    return PointsResponse(
        user_id=user.id,
        green_points=user.green_points,
        weekly_streak=user.weekly_streak,
        best_streak=user.best_streak,
        total_pickups=user.total_pickups,
        last_pickup_date=user.last_pickup_date,
    )


@app.get("/me/ledger", response_model=list[LedgerEntryResponse], tags=["Points"])
def get_my_ledger(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    transaction_type: Optional[str] = None,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Movimientos de puntos del usuario, en orden de creación"""
    return list_entries(db, user.id, limit, offset, transaction_type)


@app.post("/me/redeem", response_model=LedgerEntryResponse, tags=["Points"])
def redeem_my_points(
    data: RedemptionCreate,
    user: Profile = Depends(require_roles(UserRole.household.value)),
    db: Session = Depends(get_db)
):
    """Canjea puntos por una recompensa"""
    entry = redeem_points(db, user.id, data.points, data.reward)
    db.commit()
    db.refresh(entry)
    return entry


@app.get("/me/stats", response_model=UserStatsResponse, tags=["Points"])
def get_my_stats(user: Profile = Depends(get_current_user), db: Session = Depends(get_db)):
    """Recogidas completadas por categoría, puntos por tipo e impacto ambiental"""
    stats = get_user_stats(db, user.id)
    return UserStatsResponse(
        user_id=user.id,
        green_points=user.green_points,
        completed_pickups=stats["completed_pickups"],
        weekly_streak=stats["streak"],
        categories=stats["categories"],
        points_by_type=ledger_totals_by_type(db, user.id),
        impact=ImpactResponse(**estimate_environmental_impact(stats["total_weight"])),
    )


# =============================================================================
# ===================== SECCIÓN 4: INSIGNIAS ==================================
# =============================================================================

@app.get("/badges", response_model=list[BadgeResponse], tags=["Badges"])
def list_badges(db: Session = Depends(get_db)):
    """Catálogo completo de insignias"""
    return db.query(Badge).order_by(Badge.id).all()


@app.get("/me/badges", response_model=list[BadgeProgressResponse], tags=["Badges"])
def get_my_badges(user: Profile = Depends(get_current_user), db: Session = Depends(get_db)):
    """Todas las insignias: ganadas, bloqueadas y cuánto falta"""
    return get_badge_progress(db, user.id)


# =============================================================================
# ===================== SECCIÓN 5: ADMIN ======================================
# =============================================================================

@app.post("/admin/users/{user_id}/adjust", response_model=LedgerEntryResponse, tags=["Admin"])
def admin_adjust_points(
    user_id: int,
    data: AdjustmentCreate,
    admin: Profile = Depends(require_roles(UserRole.admin.value)),
    db: Session = Depends(get_db)
):
    """Ajuste manual de puntos (queda registrado con motivo y autor)"""
    entry = adjust_points(db, user_id, data.points, data.reason, admin.id)
    db.commit()
    db.refresh(entry)
    return entry


@app.get("/admin/users/{user_id}/ledger/verify", response_model=LedgerAuditResponse, tags=["Admin"])
def admin_verify_ledger(
    user_id: int,
    admin: Profile = Depends(require_roles(UserRole.admin.value)),
    db: Session = Depends(get_db)
):
    """Comprueba que el saldo del usuario cuadra con su ledger"""
    return verify_ledger(db, user_id)


@app.post("/admin/ledger/audit", tags=["Admin"])
def admin_audit_all(
    admin: Profile = Depends(require_roles(UserRole.admin.value)),
    db: Session = Depends(get_db)
):
    """Lanza ahora la auditoría que el scheduler hace cada noche"""
    return ledger_scheduler.audit_all_ledgers(db)
