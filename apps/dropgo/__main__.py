"""
Run the DropGo API with uvicorn.

Example:
  DROPGO_RELOAD=true python -m apps.dropgo
"""
import os

import uvicorn


def main() -> None:
    reload = os.getenv("DROPGO_RELOAD", "false").lower() == "true"
    host = os.getenv("DROPGO_HOST", "0.0.0.0")
    port = int(os.getenv("DROPGO_PORT", "8000"))
    uvicorn.run(
        "apps.dropgo.app.main:app",
        host=host,
        port=port,
        reload=reload,
        reload_dirs=["apps", "libs"] if reload else None,
    )


if __name__ == "__main__":
    main()
