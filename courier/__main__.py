"""Serve the delivery API: ``python -m courier``."""

import uvicorn

from courier.api.main import create_app
from courier.core.config import get_settings

def main() -> None:
    settings = get_settings()
    uvicorn.run(
        create_app(settings=settings),
        host=settings.HOST,
        port=settings.PORT,
        log_config=None,
    )

if __name__ == "__main__":
    main()
