from __future__ import annotations
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import TestCase

from pydantic import ValidationError

from .config import Config, ListenAddress, load_config

CONFIG_JSON = """{
    "LdapServer": "ldap://ipa.example.com:389",
    "LdapBindUser": "admin",
    "BindDN": "uid=admin,cn=users,dc=example,dc=com",
    "UserDN": "cn=users,dc=example,dc=com",
    "SearchGroup": "cn=ipmi,cn=groups,dc=example,dc=com",
    "ServerAddress": "0.0.0.0:10389",
    "Comment": "unknown keys are ignored"
}"""


class LoadConfigTest(TestCase):
    def setUp(self):
        self._tmp = TemporaryDirectory()
        self.path = Path(self._tmp.name) / "config.json"

    def tearDown(self):
        self._tmp.cleanup()

    def test_load(self):
        self.path.write_text(CONFIG_JSON)
        config = load_config(str(self.path))
        self.assertEqual(config.ldap_server, "ldap://ipa.example.com:389")
        self.assertEqual(config.ldap_bind_user, "admin")
        self.assertEqual(config.bind_dn, "uid=admin,cn=users,dc=example,dc=com")
        self.assertEqual(config.user_dn, "cn=users,dc=example,dc=com")
        self.assertEqual(
            config.search_group, "cn=ipmi,cn=groups,dc=example,dc=com"
        )
        self.assertEqual(config.server_address, "0.0.0.0:10389")

    def test_missing_file(self):
        with self.assertLogs("ldap_bridge.config", "ERROR"):
            config = load_config(str(self.path))
        self.assertEqual(config, Config())

    def test_malformed_file(self):
        self.path.write_text("{not json")
        with self.assertLogs("ldap_bridge.config", "ERROR"):
            config = load_config(str(self.path))
        self.assertEqual(config.ldap_server, "")

    def test_frozen(self):
        config = Config(bind_dn="cn=admin")
        with self.assertRaises(ValidationError):
            config.bind_dn = "cn=other"


class ListenAddressTest(TestCase):
    def test_host_and_port(self):
        config = Config(server_address="127.0.0.1:10389")
        self.assertEqual(
            config.listen_address(), ListenAddress("127.0.0.1", 10389)
        )

    def test_port_only(self):
        config = Config(server_address=":10389")
        self.assertEqual(config.listen_address(), ListenAddress(None, 10389))

    def test_empty(self):
        self.assertEqual(Config().listen_address(), ListenAddress(None, 389))

    def test_ipv6(self):
        config = Config(server_address="[::1]:10389")
        self.assertEqual(config.listen_address(), ListenAddress("::1", 10389))
