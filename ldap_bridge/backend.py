from __future__ import annotations
from typing import AsyncIterator, Protocol
from contextlib import AbstractAsyncContextManager, asynccontextmanager
import asyncio
import logging
from ldap3 import Server, Connection, NONE, SIMPLE, SUBTREE, DEREF_NEVER
from ldap3.core.exceptions import LDAPException
from .exceptions import BackendError

logger = logging.getLogger(__name__)


class BackendSession(Protocol):
    async def bind(self, user: str, password: str | bytes) -> bool: ...

    async def search(
        self, base: str, search_filter: str, attributes: list[str]
    ) -> list[str]: ...


class Backend(Protocol):
    def connect(self) -> AbstractAsyncContextManager[BackendSession]: ...


class LDAPSession:
    """
    One connection to the upstream directory.

    ldap3 calls block, so every operation runs in a worker thread and only
    the awaiting request is stalled by a slow backend.
    """

    def __init__(self, connection: Connection) -> None:
        self._connection = connection

    def _bind(self, user: str, password: str | bytes) -> bool:
        conn = self._connection
        if conn.rebind(user=user, password=password, authentication=SIMPLE):
            return True
        logger.error(
            "LDAP bind failed for %s: %s", user, conn.result["description"]
        )
        return False

    async def bind(self, user: str, password: str | bytes) -> bool:
        try:
            return await asyncio.to_thread(self._bind, user, password)
        except LDAPException as e:
            raise BackendError(f"bind as {user!r} failed: {e}") from e

    def _search(
        self, base: str, search_filter: str, attributes: list[str]
    ) -> list[str]:
        conn = self._connection
        conn.search(
            search_base=base,
            search_filter=search_filter,
            search_scope=SUBTREE,
            dereference_aliases=DEREF_NEVER,
            attributes=attributes,
            size_limit=0,
            time_limit=0,
            types_only=False,
        )
        if conn.result["result"] != 0:
            raise BackendError(
                f"search {search_filter!r} under {base!r} failed: "
                f"{conn.result['description']}"
            )
        return [
            entry["dn"]
            for entry in conn.response or ()
            if entry.get("type") == "searchResEntry"
        ]

    async def search(
        self, base: str, search_filter: str, attributes: list[str]
    ) -> list[str]:
        """
        Subtree search with no size or time limit, returns matched DNs
        """
        try:
            return await asyncio.to_thread(
                self._search, base, search_filter, attributes
            )
        except LDAPException as e:
            raise BackendError(f"search {search_filter!r} failed: {e}") from e


class LDAPBackend:
    def __init__(self, url: str) -> None:
        self.url = url

    def _open(self) -> Connection:
        try:
            server = Server(self.url, get_info=NONE)
            connection = Connection(server, raise_exceptions=False)
            connection.open()
        except LDAPException as e:
            raise BackendError(f"can not connect to {self.url!r}: {e}") from e
        return connection

    @staticmethod
    def _close(connection: Connection) -> None:
        try:
            connection.unbind()
        except LDAPException as e:
            logger.warning("error closing backend connection: %s", e)

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[LDAPSession]:
        """
        Open a fresh connection, it is closed when the block exits
        """
        connection = await asyncio.to_thread(self._open)
        try:
            yield LDAPSession(connection)
        finally:
            await asyncio.to_thread(self._close, connection)
