from __future__ import annotations

import uvicorn

from posguard.apps.api.main import create_app
from posguard.core.config import get_settings


def main() -> None:
    # Serve the elevation API with env-driven settings; services are built in the lifespan.
    settings = get_settings()
    app = create_app(settings=settings)
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
