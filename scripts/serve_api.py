from __future__ import annotations

import uvicorn

from flockcast.apps.api.main import create_app
from flockcast.core.config import get_settings
from flockcast.core.logging import configure_logging


def main() -> None:
    # Serves the ops API; the app lifespan owns the tenant router and cache.
    configure_logging()
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port, log_config=None)


if __name__ == "__main__":
    main()
