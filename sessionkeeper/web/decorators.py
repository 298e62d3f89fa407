"""Decorators that keep status routes tidy."""
from __future__ import annotations

from functools import wraps
from typing import Any, Callable

from flask import current_app, jsonify

JsonResult = tuple[Any, int] | tuple[Any, int, dict[str, Any]] | Any


def json_endpoint(func: Callable[..., JsonResult]) -> Callable[..., Any]:
    """Ensure JSON responses with standard error handling."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        try:
            result = func(*args, **kwargs)
        except LookupError as exc:
            return jsonify({"error": str(exc)}), 404
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        except Exception as exc:  # pragma: no cover - log unexpected errors
            current_app.logger.exception("Unhandled error in status endpoint", exc_info=exc)
            return jsonify({"error": "Internal server error"}), 500

        if isinstance(result, tuple):
            payload = result[0]
            status = result[1]
            headers = result[2] if len(result) > 2 else None
            response = jsonify(payload)
            if headers:
                for key, value in headers.items():
                    response.headers[key] = value
            return response, status
        return jsonify(result)

    return wrapper
