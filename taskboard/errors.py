"""Error taxonomy shared by the store layer, the timer engine and the API."""

from typing import Optional


class TaskboardError(Exception):
    """Base error. Message falls back to "Error al <action>"."""

    status_code = 500

    def __init__(self, message: Optional[str] = None, action: str = "procesar la solicitud"):
        self.action = action
        self.message = message or f"Error al {action}"
        super().__init__(self.message)


class NotFoundError(TaskboardError):
    status_code = 404


class ConflictError(TaskboardError):
    status_code = 409


class ValidationError(TaskboardError):
    status_code = 422


class StoreError(TaskboardError):
    status_code = 500
