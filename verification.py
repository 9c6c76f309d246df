"""
=============================================================================
VERIFICATION.PY — Oráculo de verificación IA
=============================================================================
Cuando se crea un pickup, un sistema externo "mira" las fotos y devuelve
una confianza entre 0.0 y 1.0. Ese sistema no existe todavía: hoy es un
sorteo uniforme entre 0.6 y 1.0.

Por eso el motor NO llama a random directamente: recibe un oráculo.
  - RandomVerificationOracle → el stub de producción
  - FixedVerificationOracle  → siempre el mismo valor (tests, reprocesos)

Configuración:
  VERIFICATION_ORACLE=random  → sorteo (por defecto)
  VERIFICATION_ORACLE=0.85    → valor fijo
"""

import os
import random
import logging
from abc import ABC, abstractmethod

from errors import ValidationError

logger = logging.getLogger("wastechain.verification")

MIN_CONFIDENCE = 0.6
MAX_CONFIDENCE = 1.0


class VerificationOracle(ABC):
    """Interfaz: devuelve la confianza de verificación de un pickup"""

    @abstractmethod
    def score(self, pickup) -> float:
        ...


class RandomVerificationOracle(VerificationOracle):
    """Simula la verificación IA con un valor uniforme en [0.6, 1.0]"""

    def __init__(self, low: float = MIN_CONFIDENCE, high: float = MAX_CONFIDENCE, rng=None):
        self.low = low
        self.high = high
        self.rng = rng or random.Random()

    def score(self, pickup) -> float:
        return self.rng.uniform(self.low, self.high)


class FixedVerificationOracle(VerificationOracle):
    """Siempre devuelve la misma confianza"""

    def __init__(self, value: float):
        self.value = check_confidence(value)

    def score(self, pickup) -> float:
        return self.value


def check_confidence(value) -> float:
    """Valida que la confianza esté en [0, 1]"""
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Verification confidence must be a number, got {value!r}")
    if not 0.0 <= confidence <= 1.0:
        raise ValidationError(f"Verification confidence must be within [0, 1], got {confidence}")
    return confidence


def oracle_from_env() -> VerificationOracle:
    """Construye el oráculo según VERIFICATION_ORACLE"""
    setting = os.getenv("VERIFICATION_ORACLE", "random").strip().lower()
    if setting == "random":
        return RandomVerificationOracle()
    oracle = FixedVerificationOracle(setting)
    logger.info(f"🔎 Oráculo de verificación fijo: {oracle.value}")
    return oracle


default_oracle: VerificationOracle = oracle_from_env()
