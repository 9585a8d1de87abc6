"""Run the loan engine API with uvicorn."""

import uvicorn

from loan_engine.config import get_settings
from loan_engine.logging_config import setup_logging


def main() -> None:
    settings = get_settings()
    setup_logging(settings.log_level, json_format=settings.log_json)
    uvicorn.run(
        "loan_engine.api.app:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )


if __name__ == "__main__":
    main()
