import os

import uvicorn

from funnel_backend.logging_config import configure_logging


def main() -> None:
    """
    Uvicorn launcher.
    - Reads PORT from env, defaults to 5000 for local dev.
    - Logging configured before Uvicorn starts so workers inherit it.
    """

    configure_logging()

    port = int(os.environ.get("PORT", 5000))

    uvicorn.run(
        "funnel_backend.main:app",
        host="0.0.0.0",
        port=port,
        reload=False,
        log_config=None,      # keep our logging_config
        use_colors=False,
    )


if __name__ == "__main__":
    main()
