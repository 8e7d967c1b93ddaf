"""OpenAPI metadata and customization utilities.

Enriches the generated schema with:
- a bearer security scheme (user-scoped policies read the JWT)
- tags metadata
- the shared 429 rejection body and ``X-RateLimit-*`` headers
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

from admission.schemas.rate_limit import RateLimitExceededResponse

RATE_LIMIT_HEADERS = {
    "X-RateLimit-Limit": "Requests allowed per window.",
    "X-RateLimit-Remaining": "Requests left in the current window.",
    "X-RateLimit-Reset": "ISO-8601 UTC timestamp when the window ends.",
}


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation to add rate limit documentation."""

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema

        schema = original_openapi()

        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes.setdefault(
            "BearerAuth",
            {
                "type": "http",
                "scheme": "bearer",
                "bearerFormat": "JWT",
                "description": "Optional. Selects the per-user bucket for user-scoped policies.",
            },
        )

        schemas = components.setdefault("schemas", {})
        schemas.setdefault(
            "RateLimitExceeded",
            RateLimitExceededResponse.model_json_schema(by_alias=True),
        )

        component_headers = components.setdefault("headers", {})
        for name, description in RATE_LIMIT_HEADERS.items():
            component_headers.setdefault(
                name, {"description": description, "schema": {"type": "string"}}
            )
        component_headers.setdefault(
            "Retry-After",
            {"description": "Seconds to wait before retrying.", "schema": {"type": "integer"}},
        )

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        desired_tags = [
            {
                "name": "Rate Limit",
                "description": "Quota introspection and policy listing.",
            },
            {
                "name": "Health",
                "description": "Liveness and metrics.",
            },
        ]
        for tag in desired_tags:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        app.openapi_schema = schema
        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
