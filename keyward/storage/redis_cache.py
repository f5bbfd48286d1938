from __future__ import annotations

import contextlib
import json
from datetime import timedelta
from typing import Iterator, Optional

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from keyward.logging import get_logger
from keyward.storage.common import deserialize_datetime, serialize_datetime
from keyward.storage.errors import ConstraintViolation, StorageUnavailable
from keyward.storage.models import SigninToken

logger = get_logger(__name__)


class RedisCache:
    """Redis-backed sign-in token store.

    Records outlive their expiry by ``retain_after_expiry`` so a late
    verification still reports the token as expired rather than unknown.
    Consumption uses GETDEL, so two verifiers cannot both succeed.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds
    KEY_PREFIX = "signin:token"

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        retain_after_expiry: timedelta = timedelta(days=1),
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self.retain_after_expiry = retain_after_expiry
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @contextlib.contextmanager
    def _guard(self, op: str) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.warning("redis_unavailable", op=op, error=str(exc))
            raise StorageUnavailable(f"{op} failed: redis unavailable", {"op": op}) from exc

    def _key(self, tenant_id: str, token_id: str) -> str:
        return f"{self.KEY_PREFIX}:{tenant_id}:{token_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        with self._guard("verify_connection"):
            self.client.ping()

    def close(self) -> None:
        self.client.close()

    def save_signin_token(self, token: SigninToken) -> None:
        payload = json.dumps(
            {
                "token_id": token.token_id,
                "tenant_id": token.tenant_id,
                "user_id": token.user_id,
                "purpose": token.purpose,
                "issued_at": serialize_datetime(token.issued_at),
                "expires_at": serialize_datetime(token.expires_at),
                "key_id": token.key_id,
            }
        )
        lifetime = (token.expires_at - token.issued_at) + self.retain_after_expiry
        with self._guard("save_signin_token"):
            stored = self.client.set(
                self._key(token.tenant_id, token.token_id),
                payload,
                ex=max(1, int(lifetime.total_seconds())),
                nx=True,
            )
        if not stored:
            raise ConstraintViolation("token id already exists", {"token_id": token.token_id})

    def get_signin_token(self, tenant_id: str, token_id: str) -> Optional[SigninToken]:
        with self._guard("get_signin_token"):
            raw = self.client.get(self._key(tenant_id, token_id))
        return self._decode(raw)

    def consume_signin_token(self, tenant_id: str, token_id: str) -> Optional[SigninToken]:
        with self._guard("consume_signin_token"):
            raw = self.client.getdel(self._key(tenant_id, token_id))
        return self._decode(raw)

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[SigninToken]:
        if not raw:
            return None
        data = json.loads(raw)
        return SigninToken(
            token_id=data["token_id"],
            tenant_id=data["tenant_id"],
            user_id=data["user_id"],
            purpose=data["purpose"],
            issued_at=deserialize_datetime(data["issued_at"]),
            expires_at=deserialize_datetime(data["expires_at"]),
            key_id=int(data["key_id"]),
        )
