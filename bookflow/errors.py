# bookflow/errors.py


class BookflowError(Exception):
    """Base de todos los errores del dominio."""


class AcquisitionFailure(BookflowError):
    """La fuente no se pudo leer o no devolvió contenido."""


class GenerationFailure(BookflowError):
    """Un proveedor de texto falló o no está configurado para el agente."""


class PersistenceFailure(BookflowError):
    """El almacén de contenido rechazó una escritura o lectura."""


class ValidationFailure(BookflowError):
    """Parámetros de entrada inválidos."""


class ConflictError(BookflowError):
    """Ya hay un workflow activo en este orchestrator."""


class WorkflowInterrupted(BookflowError):
    """
    Señal interna: el usuario pidió saltar el capítulo o cancelar el run.
    `reason` es "skip" o "cancel".
    """

    def __init__(self, reason: str, detail: str | None = None):
        super().__init__(detail or reason)
        self.reason = reason
        self.detail = detail
