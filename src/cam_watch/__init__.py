"""CamWatch package exposing factory helpers for the camera monitoring daemon."""

from typing import Any

from .version import APP_VERSION


def create_daemon(*args: Any, **kwargs: Any):
    from .daemon import Daemon

    return Daemon(*args, **kwargs)


__all__ = ["create_daemon", "APP_VERSION"]
