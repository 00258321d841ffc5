#!/usr/bin/env python3
"""Start the control plane: settings from env / STOREPLANE_CONFIG_PATH, recover in-progress stores, serve HTTP."""
import atexit
import logging
import os
import sys

sys.path.insert(0, os.environ.get("APP_ROOT", os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from storeplane.core.gateway.app import build_control_plane, create_app
from storeplane.core.gateway.config import load_settings
from storeplane.core.log import configure_logging

settings = load_settings()
configure_logging(settings.log_level)
control_plane = build_control_plane(settings=settings)
atexit.register(control_plane.shutdown)
app = create_app(control_plane, start_background=True)

if __name__ == "__main__":
    logging.getLogger("storeplane.gateway").info(
        "control plane listening host=%s port=%s provisioner=%s", settings.host, settings.port, settings.provisioner,
    )
    app.run(host=settings.host, port=settings.port, threaded=True)
