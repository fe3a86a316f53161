import os
from collections.abc import Callable
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse


def add_standard_health(app: FastAPI, probe: Optional[Callable[[], None]] = None, env_key: str = "ENV"):
    """
    Register GET /health.

    ``probe`` is called on every request; if it raises, the endpoint answers
    503 with ``status: degraded`` so load balancers stop routing to us.
    """

    @app.get("/health")
    def _health():
        body = {
            "status": "ok",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
        }
        if probe is None:
            return body
        try:
            probe()
            body["database"] = "ok"
            return body
        except Exception as e:
            body["status"] = "degraded"
            body["database"] = type(e).__name__
            return JSONResponse(status_code=503, content=body)
