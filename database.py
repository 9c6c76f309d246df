"""
=============================================================================
DATABASE.PY — Configuración de la Base de Datos
=============================================================================
Este archivo configura la conexión a la base de datos del ledger.

En DESARROLLO (tu PC): usa SQLite (un archivo .db)
En PRODUCCIÓN: usa PostgreSQL (la misma BD que alimenta los webhooks)

¿Cómo sabe cuál usar?
→ Si existe la variable de entorno DATABASE_URL, usa esa URL.
→ Si no existe, usa SQLite local.

Tablas lógicas que viven aquí:
  profiles, pickups, ledger_entries, badges, user_badges
"""

import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

# ─────────────────────────────────────────────────────────────────────────────
# CONEXIÓN
# ─────────────────────────────────────────────────────────────────────────────

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./wastechain.db")

# Los proveedores dan la URL con "postgres://" pero SQLAlchemy necesita "postgresql://"
# Usamos psycopg (v3) como driver, así que la URL debe ser "postgresql+psycopg://"
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+psycopg://", 1)
elif DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+psycopg://", 1)

# ─────────────────────────────────────────────────────────────────────────────
# ENGINE
# ─────────────────────────────────────────────────────────────────────────────
# connect_args={"check_same_thread": False} → solo para SQLite.
# SQLite en memoria ("sqlite://") necesita StaticPool: cada conexión nueva
# sería una BD vacía distinta.

engine_args = {}
if DATABASE_URL.startswith("sqlite"):
    engine_args["connect_args"] = {"check_same_thread": False}
    if DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
        engine_args["poolclass"] = StaticPool

engine = create_engine(DATABASE_URL, echo=False, **engine_args)

# ─────────────────────────────────────────────────────────────────────────────
# SESSION
# ─────────────────────────────────────────────────────────────────────────────
# autoflush=False → nada se escribe hasta que el handler hace flush/commit.
# Cada evento del ciclo de vida de un pickup = una sesión = una transacción.

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """
    Dependencia de FastAPI: abre una sesión y la cierra al terminar.

      @app.get("/algo")
      def mi_endpoint(db: Session = Depends(get_db)):
          ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Crea todas las tablas si no existen. Se llama al arrancar."""
    # Importar los modelos registra las tablas en Base.metadata
    import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
