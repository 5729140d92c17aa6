"""
Application error types.

Services raise these; the handlers registered in `register_error_handlers`
turn them into `{"error": ...}` JSON for API paths and error pages otherwise.
Messages are user-facing and therefore in Spanish.
"""
from __future__ import annotations

import logging

from flask import Flask, g, jsonify, render_template, request
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 400
    default_message = "Solicitud inválida"

    def __init__(self, message: str | None = None, *, details: list[str] | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details or []


class ValidationError(AppError):
    status_code = 400
    default_message = "Datos inválidos"

    @classmethod
    def from_errors(cls, errors: list[str]) -> "ValidationError":
        return cls(errors[0], details=errors)


class UnauthorizedError(AppError):
    status_code = 401
    default_message = "No autorizado"


class ForbiddenError(AppError):
    status_code = 403
    default_message = "No tienes permisos para realizar esta acción"


class DealerPendingError(ForbiddenError):
    default_message = "Tu cuenta de automotora está pendiente de aprobación"


class DealerInactiveError(ForbiddenError):
    def __init__(self, status: str) -> None:
        self.dealer_status = status
        if status == "SUSPENDED":
            message = "Tu cuenta de automotora está suspendida"
        else:
            message = "Tu cuenta de automotora fue rechazada"
        super().__init__(message)


class NotFoundError(AppError):
    status_code = 404
    default_message = "No encontrado"


class ConflictError(AppError):
    status_code = 409
    default_message = "El recurso ya existe"


class RateLimitedError(AppError):
    status_code = 429
    default_message = "Demasiados intentos. Espera 5 minutos."


def wants_json() -> bool:
    return request.path.startswith("/api/") or request.is_json


def _render(status: int, message: str, details: list[str] | None = None):
    if wants_json():
        body: dict = {"error": message}
        if details:
            body["details"] = details
        return jsonify(body), status
    template = f"errors/{status}.html" if status in (400, 403, 404, 500) else "errors/400.html"
    return render_template(template, message=message), status


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(AppError)
    def _app_error(e: AppError):  # type: ignore[no-redef]
        if e.status_code >= 403:
            app.logger.info(
                "%s on %s %s: %s (request_id=%s)",
                type(e).__name__,
                request.method,
                request.path,
                e.message,
                getattr(g, "request_id", None),
            )
        return _render(e.status_code, e.message, e.details)

    @app.errorhandler(IntegrityError)
    def _integrity_error(e: IntegrityError):  # type: ignore[no-redef]
        s = getattr(g, "db_session", None)
        if s is not None:
            s.rollback()
        app.logger.warning("IntegrityError (request_id=%s): %s", getattr(g, "request_id", None), e.orig)
        return _render(409, ConflictError.default_message)

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):  # type: ignore[no-redef]
        if e.code == 403:
            missing = getattr(g, "missing_permission", None)
            if missing:
                app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        messages = {
            400: "Solicitud inválida",
            403: "No tienes permisos para realizar esta acción",
            404: "Página no encontrada",
            405: "Método no permitido",
            413: "El archivo es demasiado grande",
        }
        return _render(e.code or 500, messages.get(e.code or 500, e.description or "Error"))

    @app.errorhandler(Exception)
    def _unhandled(e: Exception):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return _render(500, "Error interno del servidor")
