from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import current_app, g, request

from app.ebr.db import db_session
from app.ebr.errors import ValidationError
from app.ebr.utils import json_body

from .service import consume_signature, require_valid_signature

PayloadBuilder = Callable[[dict, dict], dict]
UserGetter = Callable[[dict], str]


def require_signature(
    *,
    action: str,
    make_payload: PayloadBuilder,
    expected_user: UserGetter,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Protect a view with an electronic signature.

    `make_payload(body, view_args)` rebuilds the payload the client signed;
    `expected_user(body)` names who must have signed it. Verification and
    single-use consumption share the view's session, so a failed action
    leaves the signature unconsumed.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            body = json_body()
            signature_id = body.get("signatureId") or request.args.get("signatureId")
            if not signature_id:
                current_app.logger.warning("Missing signatureId (request_id=%s)", getattr(g, "request_id", None))
                raise ValidationError("signatureId is required")

            s = db_session()
            require_valid_signature(
                s,
                signature_id=str(signature_id),
                expected_user_id=str(expected_user(body) or ""),
                expected_payload=make_payload(body, kwargs),
                max_age_seconds=current_app.config.get("SIGNATURE_MAX_AGE_SECONDS") or None,
            )
            if current_app.config.get("SIGNATURE_SINGLE_USE", True):
                consume_signature(s, signature_id=str(signature_id), action=action)
            g.signature_id = str(signature_id)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
