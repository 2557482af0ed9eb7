"""Middleware modules for the Cordline API."""

from cordline.middleware.request_id import REQUEST_ID_HEADER, RequestIDMiddleware

__all__ = ["RequestIDMiddleware", "REQUEST_ID_HEADER"]
