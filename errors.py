"""Domain errors and their JSON rendering."""

from __future__ import annotations

import logging

from flask import Flask, jsonify

logger = logging.getLogger(__name__)


class PortalError(Exception):
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(PortalError):
    status_code = 400


class Forbidden(PortalError):
    status_code = 403


class NotFound(PortalError):
    status_code = 404


class Conflict(PortalError):
    status_code = 409


class AIUnavailable(PortalError):
    """The generative-AI provider is not configured or keeps failing."""
    status_code = 503


class UpstreamError(PortalError):
    """A remote page or the AI model returned something unusable."""
    status_code = 502


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(PortalError)
    def _handle_portal_error(exc: PortalError):
        if exc.status_code >= 500:
            logger.warning("%s: %s", type(exc).__name__, exc.message)
        return jsonify({"error": exc.message}), exc.status_code
