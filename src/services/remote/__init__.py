"""Remote session backends.

The session store only depends on RemoteSessionBackend; HttpSessionBackend
is the REST implementation wired up from the ``remote`` config section.
"""

from src.services.remote.base import RemoteSessionBackend
from src.services.remote.http_backend import HttpSessionBackend

__all__ = ["RemoteSessionBackend", "HttpSessionBackend"]
