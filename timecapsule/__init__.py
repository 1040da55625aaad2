"""Scheduled file delivery service.

Owners upload a file and pick a recipient and an instant; once the instant
passes the service emails the recipient an access link that resolves to a
time-limited download URL.

- Guarded status transitions (pending, sent, failed) safe under overlapping runs
- Manual, change-driven and periodic dispatch triggers with a settle delay
- Local (HMAC-signed links) or S3 object storage
- SMTP or Resend mail transports
- Prometheus metrics, FastAPI REST API and a click command line

Example:
    Serving the API::

        from timecapsule.config import load_settings
        from timecapsule.core import TimeCapsuleService
        from timecapsule.api import create_app, service_lifespan

        service = TimeCapsuleService.from_settings(load_settings())
        app = create_app(service, api_token="secret", lifespan=service_lifespan(service))
"""

__version__ = "0.3.0"
