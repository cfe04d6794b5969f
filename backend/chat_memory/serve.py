from __future__ import annotations

import uvicorn

from chat_memory.core.config import get_settings


def main() -> None:
    """Run the chat memory HTTP host with uvicorn."""

    settings = get_settings()
    config = uvicorn.Config(
        "chat_memory.main:app",
        host=settings.app_host,
        port=settings.app_port,
        log_level=settings.log_level.lower(),
    )
    uvicorn.Server(config).run()


if __name__ == "__main__":
    main()
