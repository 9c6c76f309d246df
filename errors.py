"""
=============================================================================
ERRORS.PY — Taxonomía de errores del motor de puntos
=============================================================================
  NotFound            → usuario/pickup/insignia inexistente (terminal)
  InvalidState        → saldo negativo no permitido, transición ilegal (terminal)
  ConcurrencyConflict → otra escritura ganó la carrera (reintentar el evento)
  ValidationError     → categoría/peso/score mal formados (terminal)

Cualquier otra excepción NO se captura: sube hasta quien invocó el handler.
"""


class EngineError(Exception):
    """Base de todos los errores del motor"""
    code = "engine_error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "detail": self.message, "retryable": self.retryable}


class NotFound(EngineError):
    code = "not_found"


class InvalidState(EngineError):
    code = "invalid_state"


class ConcurrencyConflict(EngineError):
    code = "concurrency_conflict"
    retryable = True


class ValidationError(EngineError):
    code = "validation_error"
