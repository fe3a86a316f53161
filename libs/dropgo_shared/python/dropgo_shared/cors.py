from __future__ import annotations

from fastapi.middleware.cors import CORSMiddleware

# Next.js dev server of the web client.
DEV_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


def parse_origins(allowed: str | None) -> list[str]:
    return [o.strip().rstrip("/") for o in (allowed or "").split(",") if o.strip()]


def configure_cors(app, allowed: str | None):
    origins = parse_origins(allowed) or list(DEV_ORIGINS)
    # Browsers reject credentialed responses for a wildcard origin.
    allow_credentials = "*" not in origins
    if not allow_credentials:
        origins = ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
