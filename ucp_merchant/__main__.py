"""Run the merchant server with uvicorn."""

import uvicorn

from ucp_merchant.infrastructure.config import settings


def main() -> None:
    uvicorn.run(
        "ucp_merchant.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
