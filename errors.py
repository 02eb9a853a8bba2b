"""Error taxonomy shared by every blueprint.

Service functions raise a ``RewardsError`` subclass; the handlers registered
by ``register_error_handlers`` turn it into the JSON envelope the clients
already understand::

    {"success": false, "code": "insufficient_funds", "message": "...", ...}
"""

import os

from flask import jsonify
from werkzeug.exceptions import HTTPException

from extensions import db


class RewardsError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        return {"success": False, "code": self.code, "message": self.message, **self.extra}


class NotFoundError(RewardsError):
    status_code = 404
    code = "not_found"


class InvalidInputError(RewardsError):
    status_code = 400
    code = "invalid_input"


class InvalidStateError(RewardsError):
    status_code = 400
    code = "invalid_state"


class ConflictError(RewardsError):
    status_code = 409
    code = "conflict"


class AlreadyProcessedError(RewardsError):
    status_code = 409
    code = "already_processed"


class InsufficientFundsError(RewardsError):
    status_code = 400
    code = "insufficient_funds"


class PreconditionFailedError(RewardsError):
    status_code = 400
    code = "precondition_failed"


class UpstreamError(RewardsError):
    status_code = 502
    code = "upstream_error"


class InternalError(RewardsError):
    status_code = 500
    code = "internal"


def _is_production() -> bool:
    return os.getenv("FLASK_ENV") == "production" or bool(os.getenv("RENDER"))


def register_error_handlers(app) -> None:
    @app.errorhandler(RewardsError)
    def _handle_rewards_error(err: RewardsError):
        db.session.rollback()
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(HTTPException)
    def _handle_http_error(err: HTTPException):
        code = "not_found" if err.code == 404 else (err.name or "error").lower().replace(" ", "_")
        message = "Route not found" if err.code == 404 else err.description
        return jsonify({"success": False, "code": code, "message": message}), err.code

    @app.errorhandler(Exception)
    def _handle_unexpected(err: Exception):
        db.session.rollback()
        app.logger.exception("Unhandled error")
        message = "Something went wrong!" if _is_production() else str(err)
        return jsonify({"success": False, "code": InternalError.code, "message": message}), 500
