"""
=============================================================================
SCHEDULER.PY — Auditoría nocturna del ledger
=============================================================================
El motor de puntos NO tiene bucles ni tareas en segundo plano: cada evento
se procesa cuando llega. Lo que sí corre aquí es MONITORIZACIÓN:

  - Cada noche (LEDGER_AUDIT_HOUR, UTC) se recorre cada perfil y se comprueba
    que green_points == suma del ledger y que balance_after es continuo.
  - Si algo no cuadra → WARNING en el log (lo recoge la monitorización).

Usa APScheduler con CronTrigger.
"""

import os
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
import pytz

from database import SessionLocal
from ledger import verify_ledger
from models import Profile

logger = logging.getLogger("wastechain.scheduler")

LEDGER_AUDIT_ENABLED = os.getenv("LEDGER_AUDIT_ENABLED", "true").lower() in ("1", "true", "yes")
LEDGER_AUDIT_HOUR = int(os.getenv("LEDGER_AUDIT_HOUR", "3"))

scheduler: AsyncIOScheduler = None


def audit_all_ledgers(db=None) -> dict:
    """
    Audita el ledger de todos los perfiles.

    Retorna:
      {"checked": 120, "inconsistent": [17, 42]}
    """
    own_session = db is None
    db = db or SessionLocal()

    try:
        inconsistent = []
        user_ids = [user_id for (user_id,) in db.query(Profile.id).order_by(Profile.id).all()]
        for user_id in user_ids:
            audit = verify_ledger(db, user_id)
            if not audit["consistent"]:
                inconsistent.append(user_id)

        if inconsistent:
            logger.warning(f"⚠️ Auditoría: {len(inconsistent)} ledgers inconsistentes: {inconsistent}")
        else:
            logger.info(f"📒 Auditoría: {len(user_ids)} ledgers correctos")
        return {"checked": len(user_ids), "inconsistent": inconsistent}

    finally:
        if own_session:
            db.close()


async def nightly_ledger_audit():
    """Job del scheduler"""
    try:
        audit_all_ledgers()
    except Exception as e:
        logger.error(f"❌ Error en la auditoría del ledger: {e}")


# =============================================================================
# ===================== INICIALIZAR SCHEDULER =================================
# =============================================================================

def create_scheduler() -> AsyncIOScheduler:
    """Crea y configura el scheduler con la auditoría nocturna"""
    global scheduler

    scheduler = AsyncIOScheduler(timezone=pytz.utc)

    scheduler.add_job(
        nightly_ledger_audit,
        CronTrigger(hour=LEDGER_AUDIT_HOUR, minute=0, timezone=pytz.utc),
        id="nightly_ledger_audit",
        name="Auditoría nocturna del ledger",
        replace_existing=True
    )

    logger.info(f"⏰ Scheduler configurado: auditoría del ledger a las {LEDGER_AUDIT_HOUR:02d}:00 UTC")
    return scheduler


def start_scheduler():
    """Arranca el scheduler"""
    global scheduler
    if scheduler and not scheduler.running:
        scheduler.start()
        logger.info("⏰ Scheduler arrancado")


def stop_scheduler():
    """Para el scheduler"""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("⏰ Scheduler parado")
