from __future__ import annotations

import os
from pathlib import Path

import uvicorn


def main() -> None:
    # Relative paths such as data/ resolve against the project root
    os.chdir(Path(__file__).resolve().parent)

    # Imported after chdir so the engine sees the right data dir
    from apps.api.main import app  # noqa: WPS433
    from chathub.core.settings import get_settings  # noqa: WPS433

    settings = get_settings()
    uvicorn.run(app, host=settings.app_host, port=settings.app_port, reload=False, timeout_keep_alive=75)


if __name__ == "__main__":
    main()
