from __future__ import annotations

import uvicorn

from opsgate.apps.api.main import create_app
from opsgate.core.config import get_settings


def main() -> None:
    # Run the gateway with env-driven settings for local and container deployments.
    settings = get_settings()
    app = create_app(settings=settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
