"""Run the demo service: ``python -m ratewall``."""

import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "ratewall.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        # Logging is configured by the app factory.
        log_config=None,
    )


if __name__ == "__main__":
    main()
