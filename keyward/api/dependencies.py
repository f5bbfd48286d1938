"""FastAPI dependencies that turn credential headers into a tenant id.

Public keys travel in the ``ApiKey`` header, secret keys in ``ApiSecret``.
Failures surface as ``ServiceError`` via ``Result.unwrap`` so the registered
handlers render them as problem details.
"""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Header

from keyward.service.keys import required_key_class
from keyward.service.runtime import Runtime, get_runtime
from keyward.storage.models import KeyClass


def require_public_key(
    api_key: Optional[str] = Header(None, alias="ApiKey"),
    runtime: Runtime = Depends(get_runtime),
) -> str:
    return runtime.validator.validate_public_key(api_key).unwrap()


def require_secret_key(
    api_secret: Optional[str] = Header(None, alias="ApiSecret"),
    runtime: Runtime = Depends(get_runtime),
) -> str:
    return runtime.validator.validate_secret_key(api_secret).unwrap()


def require_scope(scope: str) -> Callable[..., str]:
    """Dependency factory: validate whichever header the scope's key class uses."""

    def dependency(
        api_key: Optional[str] = Header(None, alias="ApiKey"),
        api_secret: Optional[str] = Header(None, alias="ApiSecret"),
        runtime: Runtime = Depends(get_runtime),
    ) -> str:
        presented = api_secret if required_key_class(scope) is KeyClass.SECRET else api_key
        return runtime.validator.authorize(presented, scope).unwrap()

    return dependency
