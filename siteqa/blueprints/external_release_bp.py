"""
External Release Blueprint: unauthenticated release links.

Endpoints:
    GET    /api/v1/external/release/<secret>
           Returns: 200 with the external evidence package;
                    404 unknown link, 410 used or expired link.

    POST   /api/v1/external/release/<secret>
           Body: { "released_by_name": "...", "released_by_org": "...",
                   "notes": "..." }
           Returns: 200 with the released checkpoint;
                    404 unknown, 409 already used, 410 expired.

The JWT middleware and the project access checker never run here: the
secret in the path is the whole authorization. Error bodies are generic.
"""

import logging

from flask import Blueprint

from siteqa.blueprints import json_body, ok, register_error_handlers, require_fields
from siteqa.services import release_token_service

logger = logging.getLogger(__name__)

external_release_bp = Blueprint("external_release", __name__, url_prefix="/api/v1/external")
register_error_handlers(external_release_bp, public=True)


@external_release_bp.route("/release/<secret>", methods=["GET"])
def resolve(secret: str):
    return ok(release_token_service.resolve(secret))


@external_release_bp.route("/release/<secret>", methods=["POST"])
def consume(secret: str):
    data = json_body()
    err = require_fields(data, "released_by_name")
    if err:
        return err
    result = release_token_service.consume_and_release(
        secret,
        released_by_name=data["released_by_name"],
        released_by_org=data.get("released_by_org"),
        notes=data.get("notes"),
    )
    return ok({
        "released": True,
        "checkpoint": {
            "id": result["checkpoint"]["id"],
            "status": result["checkpoint"]["status"],
            "released_at": result["checkpoint"]["released_at"],
            "released_by_name": result["checkpoint"]["released_by_name"],
        },
    })
