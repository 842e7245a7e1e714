from __future__ import annotations
from unittest import IsolatedAsyncioTestCase

from ldap3 import Server, Connection, MOCK_SYNC

from .backend import LDAPBackend
from .bridge import BindAttempt, ResultCode, authenticate
from .exceptions import BackendError
from .test_bridge import ALICE_DN, CONFIG

BOB_DN = "uid=bob,cn=users,dc=example,dc=com"


class MockLDAPBackend(LDAPBackend):
    """LDAPBackend talking to an in-memory ldap3 directory"""

    def __init__(self):
        super().__init__("ldap://mock.example.com")
        self.server = Server("mock.example.com")
        self.opened = 0
        conn = Connection(self.server, client_strategy=MOCK_SYNC)
        conn.strategy.add_entry(
            CONFIG.bind_dn, {"cn": "admin", "userPassword": "root"}
        )
        conn.strategy.add_entry(CONFIG.user_dn, {"cn": "users"})
        conn.strategy.add_entry(
            ALICE_DN,
            {
                "uid": "alice",
                "cn": "alice",
                "userPassword": "pw",
                "memberOf": CONFIG.search_group,
            },
        )
        conn.strategy.add_entry(
            BOB_DN, {"uid": "bob", "cn": "bob", "userPassword": "pw"}
        )

    def _open(self) -> Connection:
        self.opened += 1
        connection = Connection(
            self.server, client_strategy=MOCK_SYNC, raise_exceptions=False
        )
        connection.open()
        return connection


class LDAPSessionTest(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = MockLDAPBackend()

    async def test_bind(self):
        async with self.backend.connect() as session:
            self.assertTrue(await session.bind(ALICE_DN, "pw"))

    async def test_bind_wrong_password(self):
        async with self.backend.connect() as session:
            with self.assertLogs("ldap_bridge.backend", "ERROR"):
                self.assertFalse(await session.bind(ALICE_DN, "nope"))

    async def test_search(self):
        async with self.backend.connect() as session:
            self.assertTrue(await session.bind(CONFIG.bind_dn, "root"))
            found = await session.search(
                CONFIG.user_dn, "(uid=bob)", ["cn"]
            )
        self.assertEqual(found, [BOB_DN])


class AuthenticateWithLDAPTest(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = MockLDAPBackend()

    async def test_member(self):
        outcome = await authenticate(
            CONFIG, self.backend, BindAttempt("uid=alice", "pw")
        )
        self.assertEqual(outcome.result_code, ResultCode.success)
        self.assertEqual(self.backend.opened, 1)

    async def test_not_member(self):
        outcome = await authenticate(
            CONFIG, self.backend, BindAttempt("uid=bob", "pw")
        )
        self.assertEqual(outcome.result_code, ResultCode.invalidCredentials)

    async def test_privileged(self):
        outcome = await authenticate(
            CONFIG, self.backend, BindAttempt(CONFIG.bind_dn, "root")
        )
        self.assertEqual(outcome.result_code, ResultCode.success)


class UnreachableBackendTest(IsolatedAsyncioTestCase):
    async def test_connect_refused(self):
        backend = LDAPBackend("ldap://127.0.0.1:1")
        with self.assertRaises(BackendError):
            async with backend.connect():
                pass

    async def test_authenticate_refused(self):
        backend = LDAPBackend("ldap://127.0.0.1:1")
        with self.assertLogs("ldap_bridge.bridge", "ERROR"):
            outcome = await authenticate(
                CONFIG, backend, BindAttempt("uid=alice", "pw")
            )
        self.assertEqual(outcome.result_code, ResultCode.invalidCredentials)
