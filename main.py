"""ASGI entry point.

Hosts such as Vercel import this module and serve the ``app`` object
directly; locally, ``novelreader serve`` does the same through uvicorn.
"""

from novelreader.main import app as app  # noqa: F401
