import logging
import sys

from flask import Flask, request


def configure_logging(service: str) -> logging.Logger:
    """Per-service stderr logging, with werkzeug request lines kept at INFO."""
    logging.basicConfig(
        level=logging.INFO,
        format=f"%(asctime)s [%(levelname)s] [{service}] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    logging.getLogger("werkzeug").setLevel(logging.INFO)
    return logging.getLogger(service)


def install_request_logging(app: Flask, logger: logging.Logger) -> None:
    @app.before_request
    def log_request():
        logger.info("==> Incoming %s %s | Content-Type: %s | Content-Length: %s | Remote: %s",
                    request.method, request.path,
                    request.content_type or "N/A",
                    request.content_length or 0,
                    request.remote_addr)
        if request.args:
            logger.info("    Query params: %s", dict(request.args))
        if request.is_json:
            logger.info("    JSON body: %s", request.get_json(silent=True))

    @app.after_request
    def log_response(response):
        logger.info("<== Response %s %s | Status: %s | Content-Type: %s | Content-Length: %s",
                    request.method, request.path,
                    response.status_code,
                    response.content_type or "N/A",
                    response.content_length or 0)
        return response
