"""
Entry point for the License Booth transform service.

Creates the FastAPI application instance and starts the Uvicorn ASGI
server when executed directly::

    python main.py
    uvicorn main:fastapi_application --host 0.0.0.0 --port 8000
"""

import uvicorn

import configuration
import license_booth.server_factory

fastapi_application = license_booth.server_factory.create_application()

if __name__ == "__main__":
    application_configuration = configuration.ApplicationConfiguration()

    uvicorn.run(
        "main:fastapi_application",
        host=application_configuration.application_host,
        port=application_configuration.application_port,
        log_config=None,
    )
