from __future__ import annotations

import uvicorn

from publishgate.apps.api.main import create_app
from publishgate.core.config import get_settings


def main() -> None:
    # Serve the admin API without governed-action executors; embedders register their own.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port, log_config=None)


if __name__ == "__main__":
    main()
