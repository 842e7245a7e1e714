from __future__ import annotations
from typing import NamedTuple
import logging
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_LDAP_PORT = 389


class ListenAddress(NamedTuple):
    host: str | None  # None means all interfaces
    port: int


class Config(BaseModel, strict=True, frozen=True, populate_by_name=True):
    ldap_server: str = Field(
        "", alias="LdapServer", examples=["ldap://dc.example.com:389"]
    )
    # short name, compared against usernames found in search filters
    ldap_bind_user: str = Field("", alias="LdapBindUser", examples=["admin"])
    bind_dn: str = Field(
        "", alias="BindDN", examples=["cn=admin,dc=example,dc=com"]
    )
    user_dn: str = Field(
        "", alias="UserDN", examples=["cn=users,dc=example,dc=com"]
    )
    search_group: str = Field(
        "",
        alias="SearchGroup",
        examples=["cn=ipmi,cn=groups,dc=example,dc=com"],
    )
    server_address: str = Field(
        "", alias="ServerAddress", examples=["0.0.0.0:10389"]
    )

    def listen_address(self) -> ListenAddress:
        host, sep, port = self.server_address.rpartition(":")
        if not sep:
            host, port = port, ""
        host = host.strip("[]")
        return ListenAddress(
            host=host or None, port=int(port) if port else DEFAULT_LDAP_PORT
        )


def load_config(path: str) -> Config:
    """
    Read configuration from a JSON file.

    Errors are logged and an empty configuration is returned, every backend
    operation will fail against it.
    """
    try:
        with open(path) as f:
            data = f.read()
    except OSError as e:
        logger.error("Error reading config file: %s (%s)", path, e)
        return Config()
    try:
        return Config.model_validate_json(data)
    except ValidationError as e:
        logger.error("Error parsing config file %s: %s", path, e)
        return Config()
