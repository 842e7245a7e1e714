from __future__ import annotations
from typing import NamedTuple
from enum import IntEnum
import logging
from .backend import Backend
from .config import Config
from .exceptions import BackendError, MalformedFilterError

logger = logging.getLogger(__name__)

# the one attribute FreeIPA and Supermicro BMC clients look for
PERMISSION_ATTRIBUTE = "permission"
PERMISSION_MARKER = "H=4"  # administrator


class ResultCode(IntEnum):
    success = 0
    operationsError = 1
    protocolError = 2
    authMethodNotSupported = 7
    invalidCredentials = 49
    unwillingToPerform = 53


class BindAttempt(NamedTuple):
    identity: str
    secret: str | bytes


class BindOutcome(NamedTuple):
    result_code: ResultCode
    diagnostic: str = ""

    @property
    def success(self) -> bool:
        return self.result_code == ResultCode.success


class SearchEntry(NamedTuple):
    dn: str
    attributes: dict[str, list[str]]


class SearchDone(NamedTuple):
    result_code: ResultCode
    diagnostic: str = ""


SUCCESS = BindOutcome(ResultCode.success)
INVALID_CREDENTIALS = BindOutcome(ResultCode.invalidCredentials)


def qualify_identity(config: Config, identity: str) -> str:
    if identity == config.bind_dn:
        return identity
    return f"{identity},{config.user_dn}"


def group_filter(config: Config, identity: str) -> str:
    return f"(&({identity})(memberOf={config.search_group}))"


async def authenticate(
    config: Config, backend: Backend, attempt: BindAttempt
) -> BindOutcome:
    """
    Bind against the backend and, for everyone but the privileged bind
    identity, require membership in the configured search group.

    A failed bind returns right away, the group search is only issued for
    credentials the backend accepted. Backend failures of any kind are
    reported to the client as invalid credentials.
    """
    identity, secret = attempt
    logger.debug("Bind request start User=%s", identity)
    bind_dn = qualify_identity(config, identity)
    privileged = bind_dn == config.bind_dn
    try:
        async with backend.connect() as session:
            if not await session.bind(bind_dn, secret):
                logger.error("Bind failed User=%s", identity)
                return BindOutcome(
                    ResultCode.invalidCredentials, "invalid credentials"
                )
            if privileged:
                return SUCCESS
            matches = await session.search(
                config.user_dn, group_filter(config, identity), ["cn"]
            )
    except BackendError as e:
        logger.error("Backend error for User=%s: %s", identity, e)
        return INVALID_CREDENTIALS
    if len(matches) != 1:
        logger.error(
            "User does not exist or group not matched User=%s (%d matches)",
            identity,
            len(matches),
        )
        return INVALID_CREDENTIALS
    return SUCCESS


def extract_username(filter_string: str) -> str:
    """
    Username from the first `cn=` assertion of a search filter.

    >>> extract_username("(&(cn=alice)(memberOf=g))")
    'alice'

    This is not a filter parser, it only understands the query shape sent
    by the FreeIPA and Supermicro clients.
    """
    _, marker, rest = filter_string.partition("cn=")
    if not marker:
        raise MalformedFilterError(filter_string)
    username, _, _ = rest.partition(")")
    return username


def handle_search(
    config: Config, filter_string: str
) -> list[SearchEntry | SearchDone]:
    """
    Answer a search without asking the backend: every user except the
    privileged one gets a fabricated entry carrying the permission marker.

    Raises `MalformedFilterError` when no username can be found.
    """
    username = extract_username(filter_string)
    if username == config.ldap_bind_user:
        return [SearchDone(ResultCode.invalidCredentials)]
    return [
        SearchEntry(
            dn=f"uid={username}",
            attributes={PERMISSION_ATTRIBUTE: [PERMISSION_MARKER]},
        ),
        SearchDone(ResultCode.success),
    ]
