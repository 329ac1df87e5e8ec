from __future__ import annotations

import uvicorn

from relay.core.settings import get_settings


def main() -> None:
    settings = get_settings()

    # Imported late so a bad .env fails above with a settings error, not an import error
    from apps.api.main import app  # noqa: WPS433

    uvicorn.run(app, host=settings.app_host, port=settings.app_port, reload=False)


if __name__ == "__main__":
    main()
