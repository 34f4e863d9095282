import uvicorn

from mail_gateway.api import create_app
from mail_gateway.config import load_settings
from mail_gateway.gateway import Gateway
from mail_gateway.logger import configure_logging


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings.log_level)
    if not settings.api_secret:
        raise SystemExit("API_SECRET is not configured; refusing to start.")

    # The app's default lifespan starts and stops the gateway inside uvicorn's loop
    app = create_app(Gateway(settings))

    uvicorn.run(app, host=settings.host, port=settings.port)
