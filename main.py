import uvicorn

from timecapsule.api import create_app, service_lifespan
from timecapsule.config import configure_logging, load_settings
from timecapsule.core import TimeCapsuleService


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings.get("log_level"))
    # Build the service now; uvicorn owns the event loop, so it starts in the lifespan
    service = TimeCapsuleService.from_settings(settings)
    app = create_app(service, api_token=settings.get("api_token"), lifespan=service_lifespan(service))

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
