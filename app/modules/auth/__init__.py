from .hosts import (
    HostCreate,
    HostRead,
    auth_backend,
    get_jwt_strategy,
    host_auth,
    optional_host,
)

__all__ = [
    "HostCreate",
    "HostRead",
    "auth_backend",
    "get_jwt_strategy",
    "host_auth",
    "optional_host",
]
