import uvicorn

from bulk_mail_service.api import create_app_from_settings
from bulk_mail_service.config_loader import load_settings
from bulk_mail_service.logger import configure_logging


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings["log_level"])
    # The core is started by the app lifespan so that uvicorn owns the event loop
    app = create_app_from_settings(settings)
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
