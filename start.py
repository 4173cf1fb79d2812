from __future__ import annotations

import os

import uvicorn


def main() -> None:
    host = os.environ.get("HOST") or "0.0.0.0"
    port = int(os.environ.get("PORT") or "8080")
    uvicorn.run("app.main:app", host=host, port=port, log_level=(os.environ.get("LOG_LEVEL") or "info").lower())


if __name__ == "__main__":
    main()
