from __future__ import annotations

import os

import uvicorn

APP_PATH = "quality_review.web.main:app"


def server_options() -> dict[str, object]:
    """Host, port and reload flag, taken from ``HOST``/``PORT``/``ENVIRONMENT``."""
    return {
        "host": os.getenv("HOST", "0.0.0.0"),
        "port": int(os.getenv("PORT", "8000")),
        "reload": os.getenv("ENVIRONMENT", "development").lower() == "development",
    }


def main() -> None:
    uvicorn.run(APP_PATH, **server_options())


if __name__ == "__main__":
    main()
