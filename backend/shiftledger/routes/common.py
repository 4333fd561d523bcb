# Overview: Shared helpers for API routes (error mapping, body parsing).

from flask import jsonify, request

from ..errors import LedgerError, ValidationError


def error_response(exc: LedgerError):
    """JSON body and HTTP status for a ledger error."""
    return jsonify(exc.to_dict()), exc.http_status


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def require_fields(data: dict, *fields: str) -> None:
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"{', '.join(missing)} required", {"missing": missing})
